"""Configuration manager for the printer bridge."""

from __future__ import annotations

import json
import logging
import os
import threading
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Dict, Optional

from .status_reporter import DEFAULT_API_ENDPOINT

log = logging.getLogger(__name__)

# Default configuration directory
CONFIG_DIR = Path.home() / ".printbridge"
CONFIG_FILE = CONFIG_DIR / "config.json"

DEFAULT_POLL_INTERVAL_MS = 30000
MIN_POLL_INTERVAL_MS = 5000
PLACEHOLDER_MARKER = "_HERE"

ENV_OVERRIDES: Dict[str, str] = {
    "printerIp": "PRINTBRIDGE_PRINTER_IP",
    "accessCode": "PRINTBRIDGE_ACCESS_CODE",
    "serialNumber": "PRINTBRIDGE_SERIAL",
    "apiEndpoint": "PRINTBRIDGE_API_URL",
    "apiKey": "PRINTBRIDGE_API_KEY",
}


def is_placeholder(value: Any) -> bool:
    """True when *value* is empty or still holds a template placeholder."""
    text = str(value or "").strip()
    return not text or PLACEHOLDER_MARKER in text


def _asInt(value: Any, default: int) -> int:
    try:
        return int(float(str(value).strip()))
    except (TypeError, ValueError):
        return default


def _asBool(value: Any, default: bool) -> bool:
    if isinstance(value, bool):
        return value
    if value is None:
        return default
    text = str(value).strip().lower()
    if text in ("1", "true", "yes", "on"):
        return True
    if text in ("0", "false", "no", "off"):
        return False
    return default


@dataclass(frozen=True)
class BridgeConfig:
    """Resolved settings for one printer bridge."""

    printer_ip: str
    access_code: str
    serial_number: str
    api_endpoint: str = DEFAULT_API_ENDPOINT
    api_key: Optional[str] = None
    poll_interval_ms: int = DEFAULT_POLL_INTERVAL_MS
    mqtt_port: int = 8883
    ftps_port: int = 990
    ftps_timeout: float = 30.0
    publish_printer_config: bool = True

    @property
    def poll_interval_seconds(self) -> float:
        return max(MIN_POLL_INTERVAL_MS, self.poll_interval_ms) / 1000.0


class ConfigManager:
    """Loads bridge configuration from a JSON file with environment overrides."""

    def __init__(self, config_path: Optional[Path] = None) -> None:
        """
        Initialize the configuration manager.

        Args:
            config_path: Optional path to the config file. Defaults to
                $PRINTBRIDGE_CONFIG or ~/.printbridge/config.json
        """
        envPath = os.getenv("PRINTBRIDGE_CONFIG", "").strip()
        self.config_path = Path(config_path or envPath or CONFIG_FILE).expanduser()
        self._config: Dict[str, Any] = {}
        self.reload()

    def reload(self) -> None:
        """Load configuration from disk."""
        if not self.config_path.exists():
            log.info("Configuration file %s does not exist, using defaults", self.config_path)
            self._config = {}
            return

        try:
            with self.config_path.open("r", encoding="utf-8") as f:
                loaded = json.load(f)
        except (OSError, json.JSONDecodeError) as error:
            log.error(f"Failed to load configuration: {error}")
            self._config = {}
            return

        if isinstance(loaded, dict):
            self._config = loaded
        else:
            log.warning("Invalid config format, using defaults")
            self._config = {}

    def get(self, key: str, default: Any = None) -> Any:
        """
        Get a configuration value, preferring the environment override.

        Args:
            key: Configuration key (camelCase, as stored in config.json)
            default: Default value if key not found

        Returns:
            The configured value or default
        """
        envName = ENV_OVERRIDES.get(key)
        if envName:
            envValue = os.getenv(envName, "").strip()
            if envValue:
                return envValue
        value = self._config.get(key, default)
        if isinstance(value, str):
            value = value.strip()
        return value

    def is_configured(self) -> bool:
        return not any(
            is_placeholder(self.get(key)) for key in ("printerIp", "accessCode", "serialNumber")
        )

    def build(self) -> BridgeConfig:
        """Return the resolved BridgeConfig. Raises ValueError when incomplete."""
        if not self.is_configured():
            raise ValueError(
                f"{self.config_path} is not configured. Please set printerIp, accessCode, and serialNumber."
            )
        pollInterval = _asInt(self.get("pollIntervalMs"), DEFAULT_POLL_INTERVAL_MS)
        if pollInterval <= 0:
            pollInterval = DEFAULT_POLL_INTERVAL_MS
        apiKey = self.get("apiKey")
        return BridgeConfig(
            printer_ip=str(self.get("printerIp")),
            access_code=str(self.get("accessCode")),
            serial_number=str(self.get("serialNumber")),
            api_endpoint=str(self.get("apiEndpoint") or DEFAULT_API_ENDPOINT),
            api_key=str(apiKey) if apiKey else None,
            poll_interval_ms=max(MIN_POLL_INTERVAL_MS, pollInterval),
            ftps_timeout=float(_asInt(self.get("ftpsTimeout"), 30)),
            publish_printer_config=_asBool(self.get("publishPrinterConfig"), True),
        )


def wait_for_config(
    manager: ConfigManager,
    stop_event: Optional[threading.Event] = None,
    poll_seconds: float = 5.0,
) -> Optional[BridgeConfig]:
    """Reload *manager* until the printer settings are complete.

    Returns None when *stop_event* is set first.
    """
    stop_event = stop_event or threading.Event()
    warned = False
    while not stop_event.is_set():
        manager.reload()
        if manager.is_configured():
            return manager.build()
        if not warned:
            log.warning(
                "%s is not configured. Please set printerIp, accessCode, and serialNumber; waiting...",
                manager.config_path,
            )
            warned = True
        stop_event.wait(max(0.1, float(poll_seconds)))
    return None
