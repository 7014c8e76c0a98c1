"""Merge partial printer telemetry and classify it into a normalized status."""

from __future__ import annotations

import copy
import json
import logging
import threading
from dataclasses import dataclass, field
from typing import Any, Dict, FrozenSet, Iterable, List, Mapping, Optional, Tuple

from .errors import MalformedTelemetry

log = logging.getLogger(__name__)


STATE_OFFLINE = "offline"
STATE_IDLE = "idle"
STATE_PRINTING = "printing"
STATE_PAUSED = "paused"
STATE_ERROR = "error"

# Upstream gcode_state tokens (upper-cased) mapped to machine states.
# Any other token, including PREPARE and SLICING, leaves the printer offline.
GCODE_STATE_MAP: Dict[str, str] = {
    "RUNNING": STATE_PRINTING,
    "PAUSE": STATE_PAUSED,
    "FAILED": STATE_ERROR,
    "IDLE": STATE_IDLE,
    "FINISH": STATE_IDLE,
}

# The AMS sub-tree only ever arrives as a complete unit.
REPLACE_WHOLESALE_KEYS: FrozenSet[str] = frozenset({"ams"})

NO_ACTIVE_TRAY = 255
TRAYS_PER_UNIT = 4
_HEX_DIGITS = frozenset("0123456789ABCDEF")


@dataclass(frozen=True)
class Tray:
    """One filament slot of the AMS."""

    slot: int
    material: str = ""
    color_hex: str = ""
    brand: str = ""
    name: str = ""
    remaining_percent: int = 0
    temp_min: int = 0
    temp_max: int = 0

    def to_payload(self) -> Dict[str, Any]:
        return {
            "slot": self.slot,
            "material": self.material,
            "colorHex": self.color_hex,
            "brand": self.brand,
            "name": self.name,
            "remainingPercent": self.remaining_percent,
            "tempMin": self.temp_min,
            "tempMax": self.temp_max,
        }


@dataclass(frozen=True)
class AmsSnapshot:
    """Multi-material unit state as last reported."""

    humidity: int = 0
    active_slot: int = -1
    trays: Tuple[Tray, ...] = ()

    def to_payload(self) -> Dict[str, Any]:
        return {
            "humidity": self.humidity,
            "activeSlot": self.active_slot,
            "trays": [tray.to_payload() for tray in self.trays],
        }


@dataclass(frozen=True)
class MachineStatus:
    """Normalized printer status derived from one accumulated snapshot."""

    state: str = STATE_OFFLINE
    nozzle_temp: float = 0.0
    nozzle_target: float = 0.0
    bed_temp: float = 0.0
    bed_target: float = 0.0
    chamber_temp: float = 0.0
    chamber_target: float = 0.0
    progress: int = 0
    remaining_minutes: int = 0
    current_file: str = ""
    current_layer: int = 0
    total_layers: int = 0
    fan_speed: int = 0
    errors: Tuple[str, ...] = ()
    ams: AmsSnapshot = field(default_factory=AmsSnapshot)

    @property
    def is_printing(self) -> bool:
        return self.state == STATE_PRINTING

    def to_payload(self) -> Dict[str, Any]:
        """Render the camelCase body used by the inventory API."""
        return {
            "state": self.state,
            "nozzleTemp": self.nozzle_temp,
            "nozzleTarget": self.nozzle_target,
            "bedTemp": self.bed_temp,
            "bedTarget": self.bed_target,
            "chamberTemp": self.chamber_temp,
            "chamberTarget": self.chamber_target,
            "progress": self.progress,
            "remainingMinutes": self.remaining_minutes,
            "currentFile": self.current_file,
            "currentLayer": self.current_layer,
            "totalLayers": self.total_layers,
            "fanSpeed": self.fan_speed,
            "errors": list(self.errors),
            "ams": self.ams.to_payload(),
        }


def deep_merge(
    base: Mapping[str, Any],
    incoming: Mapping[str, Any],
    replace_keys: Iterable[str] = REPLACE_WHOLESALE_KEYS,
) -> Dict[str, Any]:
    """Overlay *incoming* onto *base* recursively and return a new dict.

    Keys listed in *replace_keys* are taken from *incoming* as a whole at any
    depth instead of being merged. Neither argument is mutated.
    """
    replaceSet = frozenset(replace_keys)
    merged: Dict[str, Any] = copy.deepcopy(dict(base))
    for key, value in incoming.items():
        existing = merged.get(key)
        if (
            key not in replaceSet
            and isinstance(existing, Mapping)
            and isinstance(value, Mapping)
        ):
            merged[key] = deep_merge(existing, value, replaceSet)
        else:
            merged[key] = copy.deepcopy(value)
    return merged


def parse_telemetry(payload: Any) -> Dict[str, Any]:
    """Decode one MQTT payload into a JSON object."""
    if isinstance(payload, Mapping):
        return dict(payload)
    if isinstance(payload, (bytes, bytearray)):
        try:
            payload = bytes(payload).decode("utf-8")
        except UnicodeDecodeError as error:
            raise MalformedTelemetry(f"Telemetry is not UTF-8: {error}") from error
    if not isinstance(payload, str):
        raise MalformedTelemetry(f"Unsupported telemetry payload type: {type(payload).__name__}")
    try:
        decoded = json.loads(payload)
    except json.JSONDecodeError as error:
        raise MalformedTelemetry(f"Bad JSON payload: {error}") from error
    if not isinstance(decoded, dict):
        raise MalformedTelemetry("Telemetry payload is not a JSON object")
    return decoded


class TelemetryAccumulator:
    """Accumulates partial telemetry messages into one raw snapshot."""

    def __init__(self, replace_keys: Iterable[str] = REPLACE_WHOLESALE_KEYS) -> None:
        self._replace_keys = frozenset(replace_keys)
        self._snapshot: Dict[str, Any] = {}
        self._message_count = 0
        self._lock = threading.Lock()

    def merge(self, partial: Mapping[str, Any]) -> Dict[str, Any]:
        """Merge *partial* and return a copy of the new accumulated snapshot."""
        with self._lock:
            self._snapshot = deep_merge(self._snapshot, partial, self._replace_keys)
            self._message_count += 1
            if self._message_count == 1:
                log.debug("[telemetry] First snapshot received (%d top-level keys)", len(self._snapshot))
            return copy.deepcopy(self._snapshot)


def _coerceFloat(value: Any, default: float = 0.0) -> float:
    # bool is a subclass of int, reject it explicitly
    if type(value) is bool:
        return default
    if isinstance(value, (int, float)):
        numeric = float(value)
    elif isinstance(value, str):
        candidate = value.strip()
        if not candidate:
            return default
        try:
            numeric = float(candidate)
        except ValueError:
            return default
    else:
        return default
    if numeric != numeric or numeric in (float("inf"), float("-inf")):
        return default
    return numeric


def _coerceInt(value: Any, default: int = 0) -> int:
    numeric = _coerceFloat(value, float(default))
    return int(round(numeric))


def _coerceString(value: Any) -> str:
    if value is None or type(value) is bool:
        return ""
    if isinstance(value, str):
        return value.strip()
    if isinstance(value, (int, float)):
        return str(value)
    return ""


def normalize_color(value: Any) -> str:
    """Return a 6-digit upper-case hex color or an empty string."""
    color = _coerceString(value).lstrip("#").upper()
    if len(color) > 6:
        color = color[:-2]
    if len(color) != 6 or not set(color) <= _HEX_DIGITS:
        return ""
    return color


def _formatHmsEntry(entry: Any) -> str:
    if isinstance(entry, Mapping):
        attr = entry.get("attr")
        code = entry.get("code")
        if isinstance(attr, int) and isinstance(code, int) and not isinstance(attr, bool):
            return "%04X_%04X_%04X_%04X" % (
                (attr >> 16) & 0xFFFF,
                attr & 0xFFFF,
                (code >> 16) & 0xFFFF,
                code & 0xFFFF,
            )
        for key in ("code", "hms_code", "error_code"):
            candidate = _coerceString(entry.get(key))
            if candidate:
                return candidate
    if isinstance(entry, str):
        return entry.strip()
    return str(entry)


def _extractErrors(printData: Mapping[str, Any]) -> Tuple[str, ...]:
    hms = printData.get("hms")
    if not isinstance(hms, list):
        return ()
    errors: List[str] = []
    for entry in hms:
        code = _formatHmsEntry(entry)
        if code:
            errors.append(code)
    return tuple(errors)


def _deriveState(printData: Mapping[str, Any], errors: Tuple[str, ...]) -> str:
    if errors:
        return STATE_ERROR
    token = _coerceString(printData.get("gcode_state")).upper()
    return GCODE_STATE_MAP.get(token, STATE_OFFLINE)


def _fanPercent(value: Any) -> int:
    return max(0, min(100, int(round(_coerceFloat(value)))))


def _parseTray(unitId: int, tray: Mapping[str, Any]) -> Tray:
    trayId = _coerceInt(tray.get("id"), -1)
    slot = unitId * TRAYS_PER_UNIT + trayId if unitId >= 0 and trayId >= 0 else -1
    return Tray(
        slot=slot,
        material=_coerceString(tray.get("tray_type")),
        color_hex=normalize_color(tray.get("tray_color")),
        brand=_coerceString(tray.get("tray_sub_brands")),
        name=_coerceString(tray.get("tray_id_name")),
        remaining_percent=_coerceInt(tray.get("remain")),
        temp_min=_coerceInt(tray.get("nozzle_temp_min")),
        temp_max=_coerceInt(tray.get("nozzle_temp_max")),
    )


def _parseAms(printData: Mapping[str, Any]) -> AmsSnapshot:
    ams = printData.get("ams")
    if not isinstance(ams, Mapping):
        return AmsSnapshot()

    activeSlot = _coerceInt(ams.get("tray_now"), -1)
    if activeSlot == NO_ACTIVE_TRAY or activeSlot < 0:
        activeSlot = -1

    units = ams.get("ams")
    if not isinstance(units, list):
        units = []

    humidity = 0
    trays: List[Tray] = []
    for index, unit in enumerate(units):
        if not isinstance(unit, Mapping):
            continue
        if index == 0:
            humidity = _coerceInt(unit.get("humidity"))
        unitId = _coerceInt(unit.get("id"), index)
        unitTrays = unit.get("tray")
        if not isinstance(unitTrays, list):
            continue
        for tray in unitTrays:
            if isinstance(tray, Mapping):
                trays.append(_parseTray(unitId, tray))

    return AmsSnapshot(humidity=humidity, active_slot=activeSlot, trays=tuple(trays))


def classify(accumulated: Mapping[str, Any]) -> MachineStatus:
    """Derive a MachineStatus from an accumulated snapshot. Never raises."""
    if not isinstance(accumulated, Mapping):
        return MachineStatus()
    printData = accumulated.get("print", accumulated)
    if not isinstance(printData, Mapping):
        return MachineStatus()

    errors = _extractErrors(printData)
    progress = _coerceInt(printData.get("mc_percent"))
    return MachineStatus(
        state=_deriveState(printData, errors),
        nozzle_temp=_coerceFloat(printData.get("nozzle_temper")),
        nozzle_target=_coerceFloat(printData.get("nozzle_target_temper")),
        bed_temp=_coerceFloat(printData.get("bed_temper")),
        bed_target=_coerceFloat(printData.get("bed_target_temper")),
        chamber_temp=_coerceFloat(printData.get("chamber_temper")),
        chamber_target=_coerceFloat(printData.get("chamber_target_temper")),
        progress=max(0, min(100, progress)),
        remaining_minutes=max(0, _coerceInt(printData.get("mc_remaining_time"))),
        current_file=_coerceString(printData.get("gcode_file")),
        current_layer=_coerceInt(printData.get("layer_num")),
        total_layers=_coerceInt(printData.get("total_layer_num")),
        fan_speed=_fanPercent(printData.get("cooling_fan_speed")),
        errors=errors,
        ams=_parseAms(printData),
    )
