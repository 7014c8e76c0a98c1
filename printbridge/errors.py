"""Exception taxonomy for the bridge."""

from __future__ import annotations

from typing import Iterable, List


class PrintBridgeError(Exception):
    """Base class for every error raised by printbridge."""


class NotFound(PrintBridgeError):
    """No remote path candidate yielded any content."""

    def __init__(self, attempted: Iterable[str]) -> None:
        self.attempted: List[str] = list(attempted)
        joined = ", ".join(self.attempted) if self.attempted else "<none>"
        super().__init__(f"Remote file not found; tried: {joined}")


class NoGcodeEntry(PrintBridgeError):
    """A 3MF archive did not contain a usable G-code entry."""


class Unavailable(PrintBridgeError):
    """The job file lacks the metadata needed to integrate extrusion."""


class TransportError(PrintBridgeError):
    """Connecting or authenticating to the printer failed."""


class MalformedTelemetry(PrintBridgeError):
    """A telemetry message could not be decoded into a JSON object."""
