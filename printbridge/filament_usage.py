"""Estimate filament mass consumed by a print job from its G-code."""

from __future__ import annotations

import io
import logging
import math
import re
import zipfile
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Iterable, List, Optional, Tuple

from .errors import NoGcodeEntry, Unavailable
from .remote_files import RemoteFileLocator

log = logging.getLogger(__name__)


class Provenance(str, Enum):
    """Which strategy produced a mass figure."""
    PENDING = "pending"
    COMMENT = "comment"
    INTEGRATED = "integrated"
    UNAVAILABLE = "unavailable"
    ERROR = "error"


DEFAULT_DENSITY_G_CM3 = 1.24
DEFAULT_DIAMETER_MM = 1.75
ARCHIVE_EXTENSION = ".3mf"
GCODE_EXTENSION = ".gcode"

COMMENT_TOTAL_MARKERS: Tuple[str, ...] = (
    "total filament weight",
    "filament used [g]",
    "total filament used",
)

_NUMBER_RE = re.compile(r"-?\d+(?:\.\d+)?")
_HEADER_VALUE_RE = r"^\s*;\s*{key}\s*[:=]\s*([^\n]*)$"
_COMMAND_RE = re.compile(r"^([GM])(\d+)(?![\d.])(.*)$")
_WORD_RE = re.compile(r"([A-Z])\s*(-?\d*\.?\d+)")


@dataclass(frozen=True)
class UsageResult:
    mass_grams: float
    provenance: Provenance


@dataclass(frozen=True)
class PrintUsageEstimate:
    """Filament estimate for one print, tagged with how it was obtained."""
    file_reference: str
    mass_grams: float = 0.0
    provenance: Provenance = Provenance.PENDING
    resolved_path: str = ""
    computed_at: datetime = field(default_factory=lambda: datetime.now(timezone.utc))

    @classmethod
    def pending(cls, file_reference: str) -> "PrintUsageEstimate":
        return cls(file_reference=file_reference)

    @classmethod
    def failed(cls, file_reference: str, provenance: Provenance = Provenance.ERROR) -> "PrintUsageEstimate":
        return cls(file_reference=file_reference, mass_grams=0.0, provenance=provenance)

    @property
    def is_pending(self) -> bool:
        return self.provenance is Provenance.PENDING

    def to_payload(self) -> dict:
        return {
            "fileReference": self.file_reference,
            "massGrams": self.mass_grams,
            "provenance": self.provenance.value,
            "resolvedPath": self.resolved_path,
            "computedAt": self.computed_at.isoformat().replace("+00:00", "Z"),
        }


def _isArchive(*names: str) -> bool:
    return any(name and name.strip().lower().endswith(ARCHIVE_EXTENSION) for name in names)


def extract_gcode_text(file_bytes: bytes, file_name_hint: str = "", resolved_path: str = "") -> str:
    """Return the G-code text of a job file, unpacking 3MF archives."""
    if not _isArchive(file_name_hint, resolved_path):
        return file_bytes.decode("utf-8", errors="replace")

    try:
        with zipfile.ZipFile(io.BytesIO(file_bytes)) as archive:
            entries = [
                info.filename
                for info in archive.infolist()
                if not info.is_dir() and info.filename.lower().endswith(GCODE_EXTENSION)
            ]
            if not entries:
                raise NoGcodeEntry(f"No {GCODE_EXTENSION} entry in {file_name_hint or resolved_path}")
            entries.sort(key=lambda name: (not name.startswith("Metadata/"), name))
            log.debug("[usage] Reading %s from archive", entries[0])
            return archive.read(entries[0]).decode("utf-8", errors="replace")
    except zipfile.BadZipFile as error:
        raise NoGcodeEntry(f"Corrupt archive {file_name_hint or resolved_path}: {error}") from error


def mass_from_comments(lines: Iterable[str]) -> Optional[float]:
    """Sum the slicer's own filament totals from the first matching comment."""
    for rawLine in lines:
        line = rawLine.strip()
        if not line.startswith(";"):
            continue
        lowered = line.lower()
        if not any(marker in lowered for marker in COMMENT_TOTAL_MARKERS):
            continue
        _, separator, rightHandSide = line.partition("=")
        source = rightHandSide if separator else line
        total = sum(float(token) for token in _NUMBER_RE.findall(source))
        if total > 0:
            return total
    return None


def _headerValue(text: str, key: str) -> Optional[float]:
    match = re.search(_HEADER_VALUE_RE.format(key=re.escape(key)), text, re.IGNORECASE | re.MULTILINE)
    if not match:
        return None
    number = _NUMBER_RE.search(match.group(1).split(",")[0])
    if not number:
        return None
    return float(number.group(0))


def integrate_extrusion(lines: Iterable[str]) -> float:
    """Return the total filament length (mm) pushed by the E axis."""
    relative = False
    position = 0.0
    extruded = 0.0

    for rawLine in lines:
        line = rawLine.split(";", 1)[0].strip().upper()
        match = _COMMAND_RE.match(line)
        if not match:
            continue
        command = f"{match.group(1)}{int(match.group(2))}"
        rest = match.group(3)
        if command == "M82":
            relative = False
        elif command == "M83":
            relative = True
        elif command == "G92":
            words = dict(_WORD_RE.findall(rest))
            if "E" in words:
                position = float(words["E"])
            elif not words:
                position = 0.0
        elif command in ("G0", "G1", "G2", "G3"):
            words = dict(_WORD_RE.findall(rest))
            if "E" not in words:
                continue
            value = float(words["E"])
            if relative:
                extruded += max(0.0, value)
            else:
                extruded += max(0.0, value - position)
                position = value
    return extruded


def mass_from_extrusion(text: str) -> Optional[float]:
    """Convert integrated extrusion into grams using header filament settings."""
    density = _headerValue(text, "filament_density")
    diameter = _headerValue(text, "filament_diameter")
    if density is None or density <= 0:
        density = DEFAULT_DENSITY_G_CM3
    if diameter is None or diameter <= 0:
        diameter = DEFAULT_DIAMETER_MM
    if not density > 0 or not diameter > 0:
        raise Unavailable("Filament density and diameter must be positive")

    length = integrate_extrusion(text.splitlines())
    if length <= 0:
        return None
    area = math.pi * (diameter / 2.0) ** 2
    volumeMm3 = length * area
    return volumeMm3 / 1000.0 * density


def estimate_from_text(text: str) -> UsageResult:
    lines: List[str] = text.splitlines()
    commentMass = round(mass_from_comments(lines) or 0.0, 2)
    if commentMass > 0:
        return UsageResult(commentMass, Provenance.COMMENT)

    try:
        integrated = mass_from_extrusion(text)
    except Unavailable as error:
        log.info("[usage] Extrusion integration unavailable: %s", error)
        integrated = None
    integrated = round(integrated or 0.0, 2)
    if integrated > 0:
        return UsageResult(integrated, Provenance.INTEGRATED)

    return UsageResult(0.0, Provenance.UNAVAILABLE)


def estimate_filament_usage(file_bytes: bytes, file_name_hint: str = "", resolved_path: str = "") -> UsageResult:
    """Estimate filament mass in grams for raw job-file bytes.

    Raises NoGcodeEntry when an archive has no G-code inside.
    """
    text = extract_gcode_text(file_bytes, file_name_hint, resolved_path)
    return estimate_from_text(text)


class FilamentEstimator:
    """Fetch a job file from the printer and estimate its filament mass."""

    def __init__(self, locator: RemoteFileLocator) -> None:
        self._locator = locator

    def estimate(self, file_reference: str) -> PrintUsageEstimate:
        retrieved = self._locator.fetch(file_reference)
        result = estimate_filament_usage(retrieved.data, file_reference, retrieved.resolved_path)
        log.info(
            "[usage] %s: %.2f g (%s) from %s",
            file_reference,
            result.mass_grams,
            result.provenance.value,
            retrieved.resolved_path,
        )
        return PrintUsageEstimate(
            file_reference=file_reference,
            mass_grams=result.mass_grams,
            provenance=result.provenance,
            resolved_path=retrieved.resolved_path,
        )
