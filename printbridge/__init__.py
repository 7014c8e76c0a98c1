"""LAN bridge that tracks filament usage of a Bambu printer and reports it to an inventory API."""

__version__ = "1.0.0"
