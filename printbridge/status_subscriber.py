"""MQTT telemetry subscription and periodic status forwarding for a Bambu printer."""

from __future__ import annotations

import json
import logging
import threading
import time
from typing import Any, Callable, Optional

import paho.mqtt.client as mqtt

from .config_manager import BridgeConfig
from .logutil import rateLimit
from .printflow.lifecycle import PrintLifecycleOrchestrator
from .remote_files import makeTlsContext
from .status_reporter import StatusReporter

log = logging.getLogger(__name__)

MQTT_USERNAME = "bblp"
REFRESH_REQUEST = {"pushing": {"command": "pushall"}}


def report_topic(serial_number: str) -> str:
    return f"device/{serial_number}/report"


def request_topic(serial_number: str) -> str:
    return f"device/{serial_number}/request"


class TelemetrySubscriber:
    """Subscribe to a printer's report topic and feed messages to a handler."""

    def __init__(
        self,
        config: BridgeConfig,
        on_message: Callable[[bytes], Any],
        *,
        keepalive: int = 30,
        client_factory: Optional[Callable[[], mqtt.Client]] = None,
    ) -> None:
        self.config = config
        self.on_message = on_message
        self.keepalive = keepalive
        self.report_topic = report_topic(config.serial_number)
        self.request_topic = request_topic(config.serial_number)
        self._connected = threading.Event()
        self._client = client_factory() if client_factory else self._build_client()
        self._client.on_connect = self._on_connect
        self._client.on_message = self._on_message
        self._client.on_disconnect = self._on_disconnect

    def _build_client(self) -> mqtt.Client:
        client = mqtt.Client(
            callback_api_version=mqtt.CallbackAPIVersion.VERSION2,
            client_id=f"printbridge-{self.config.serial_number[:8]}",
            protocol=mqtt.MQTTv311,
        )
        client.username_pw_set(MQTT_USERNAME, self.config.access_code)
        # Printers use self-signed certificates.
        client.tls_set_context(makeTlsContext(insecure=True))
        client.reconnect_delay_set(min_delay=3, max_delay=30)
        return client

    @property
    def connected(self) -> bool:
        return self._connected.is_set()

    def start(self) -> None:
        log.info(
            "[mqtt] Connecting to %s:%d for %s",
            self.config.printer_ip,
            self.config.mqtt_port,
            self.config.serial_number,
        )
        self._client.connect_async(self.config.printer_ip, self.config.mqtt_port, keepalive=self.keepalive)
        self._client.loop_start()

    def stop(self) -> None:
        try:
            self._client.disconnect()
        finally:
            self._client.loop_stop()
        self._connected.clear()
        log.info("[mqtt] Disconnected")

    def request_full_status(self) -> bool:
        """Ask the printer for a complete status report."""
        if not self.connected:
            return False
        info = self._client.publish(self.request_topic, json.dumps(REFRESH_REQUEST), qos=1)
        return info.rc == mqtt.MQTT_ERR_SUCCESS

    def _on_connect(self, client: mqtt.Client, userdata: Any, flags: Any, reason_code: Any, properties: Any = None) -> None:
        if getattr(reason_code, "is_failure", False):
            rateLimit("mqtt:connect", f"[mqtt] Connection refused: {reason_code}", logger=log)
            return
        log.info("[mqtt] Connected to printer")
        self._connected.set()
        result, _ = client.subscribe(self.report_topic)
        if result != mqtt.MQTT_ERR_SUCCESS:
            log.error("[mqtt] Subscribe to %s failed (rc=%s)", self.report_topic, result)
            return
        log.info("[mqtt] Subscribed to %s", self.report_topic)
        client.publish(self.request_topic, json.dumps(REFRESH_REQUEST), qos=1)
        log.info("[mqtt] Requested initial pushall")

    def _on_disconnect(self, client: mqtt.Client, userdata: Any, flags: Any = None, reason_code: Any = None, properties: Any = None) -> None:
        self._connected.clear()
        if getattr(reason_code, "is_failure", False):
            rateLimit("mqtt:disconnect", f"[mqtt] Connection lost ({reason_code}); reconnecting...", level="warning", logger=log)

    def _on_message(self, client: mqtt.Client, userdata: Any, message: mqtt.MQTTMessage) -> None:
        if message.topic != self.report_topic:
            return
        try:
            self.on_message(message.payload)
        except Exception as error:  # noqa: BLE001 - keep the network loop alive
            log.exception("[mqtt] Message handler failed: %s", error)


class StatusPushWorker:
    """Background worker that periodically refreshes and forwards printer status."""

    def __init__(
        self,
        config: BridgeConfig,
        orchestrator: PrintLifecycleOrchestrator,
        reporter: StatusReporter,
        request_refresh: Optional[Callable[[], Any]] = None,
    ) -> None:
        self.config = config
        self.orchestrator = orchestrator
        self.reporter = reporter
        self.request_refresh = request_refresh
        self.interval_seconds = config.poll_interval_seconds

        self._stop_event = threading.Event()
        self._thread: Optional[threading.Thread] = None

    def start(self) -> None:
        """Start the push worker thread."""
        if self._thread and self._thread.is_alive():
            log.debug("[push] Worker already running")
            return

        self._stop_event.clear()
        self._thread = threading.Thread(target=self._worker_loop, name="StatusPushWorker", daemon=True)
        self._thread.start()
        log.info("[push] Worker started (interval: %.1fs)", self.interval_seconds)

    def stop(self) -> None:
        """Stop the push worker thread."""
        self._stop_event.set()
        if self._thread and self._thread.is_alive():
            self._thread.join(timeout=5.0)
        self._thread = None
        log.info("[push] Worker stopped")

    def is_running(self) -> bool:
        return self._thread is not None and self._thread.is_alive()

    def _worker_loop(self) -> None:
        while not self._stop_event.is_set():
            # Sleep in small intervals to allow quick shutdown
            deadline = time.monotonic() + self.interval_seconds
            while not self._stop_event.is_set() and time.monotonic() < deadline:
                self._stop_event.wait(min(0.5, max(0.0, deadline - time.monotonic())))
            if self._stop_event.is_set():
                break
            try:
                self.push_once()
            except Exception as error:  # noqa: BLE001 - prevent thread crash
                log.error("[push] Unexpected error: %s", error)

    def push_once(self) -> bool:
        """Run one refresh-and-forward cycle. Returns True if status was sent."""
        if self.request_refresh is not None:
            try:
                self.request_refresh()
            except Exception as error:
                rateLimit("push:refresh", f"[push] Refresh request failed: {error}", logger=log)

        snapshot = self.orchestrator.snapshot()
        if snapshot is None:
            log.debug("[push] No telemetry yet; skipping status push")
            return False

        if self.config.publish_printer_config:
            self.reporter.put_printer_config(self.config.printer_ip, self.config.access_code)
        return self.reporter.put_printer_status(snapshot, self.config.serial_number)
