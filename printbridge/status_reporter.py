"""Status reporter module for sending printer status and usage records to the inventory API."""

from __future__ import annotations

import logging
from datetime import datetime, timezone
from typing import Any, Dict, Optional

import requests

from .logutil import rateLimit
from .printflow.lifecycle import PrintCompletionRecord, StatusSnapshot

DEFAULT_API_ENDPOINT = "https://filament-manager.jackanglim3.workers.dev"


class StatusReporter:
    """
    Reports printer state to the filament inventory API.

    Handles:
    - Periodic status snapshots (PUT /api/printer-status)
    - Print completion records (POST /api/print-completed)
    - Printer connection details (PUT /api/printer)

    Every call is fire-and-forget: failures are logged and reported through
    the boolean return value, never raised.
    """

    def __init__(
        self,
        base_url: str = DEFAULT_API_ENDPOINT,
        *,
        api_key: Optional[str] = None,
        timeout: float = 10.0,
        session: Optional[requests.Session] = None,
        logger: Optional[logging.Logger] = None,
    ) -> None:
        """
        Initialize status reporter.

        Args:
            base_url: Inventory API base URL
            api_key: Optional API key sent as X-API-Key
            timeout: Request timeout in seconds (default: 10)
            session: Optional requests session (module-level requests by default)
            logger: Optional logger instance
        """
        self.base_url = (base_url or DEFAULT_API_ENDPOINT).rstrip("/")
        self.api_key = api_key
        self.timeout = timeout
        self._http = session or requests
        self.log = logger or logging.getLogger(__name__)

    def _headers(self) -> Dict[str, str]:
        headers = {"Content-Type": "application/json"}
        if self.api_key:
            headers["X-API-Key"] = self.api_key
        return headers

    def _send(self, method: str, path: str, payload: Dict[str, Any]) -> bool:
        url = f"{self.base_url}{path}"
        try:
            response = self._http.request(
                method,
                url,
                json=payload,
                headers=self._headers(),
                timeout=self.timeout,
            )
        except requests.exceptions.Timeout:
            rateLimit(f"reporter:{path}", f"[reporter] {method} {path} timed out", logger=self.log)
            return False
        except requests.RequestException as error:
            rateLimit(
                f"reporter:{path}",
                f"[reporter] {method} {path} failed: {type(error).__name__}: {error}",
                logger=self.log,
            )
            return False

        if 200 <= response.status_code < 300:
            return True

        body = (response.text or "")[:300]
        rateLimit(
            f"reporter:{path}",
            f"[reporter] {method} {path} returned HTTP {response.status_code} {body}".rstrip(),
            level="warning",
            logger=self.log,
        )
        return False

    @staticmethod
    def build_status_payload(snapshot: StatusSnapshot, serial_number: str) -> Dict[str, Any]:
        payload = snapshot.status.to_payload()
        payload["raw"] = snapshot.raw
        payload["serialNumber"] = serial_number
        payload["updatedAt"] = datetime.now(timezone.utc).isoformat().replace("+00:00", "Z")
        if snapshot.estimate is not None:
            payload["usageEstimate"] = snapshot.estimate.to_payload()
        return payload

    def put_printer_status(self, snapshot: StatusSnapshot, serial_number: str) -> bool:
        payload = self.build_status_payload(snapshot, serial_number)
        sent = self._send("PUT", "/api/printer-status", payload)
        if sent:
            self.log.info(
                "[reporter] Status pushed: %s %d%%",
                snapshot.status.state,
                snapshot.status.progress,
            )
        return sent

    def post_print_completed(self, record: PrintCompletionRecord) -> bool:
        sent = self._send("POST", "/api/print-completed", record.to_payload())
        if sent:
            self.log.info(
                "[reporter] Completion sent: %s %.2f g",
                record.file_name,
                record.filament_used_grams,
            )
        return sent

    def put_printer_config(self, ip: str, access_code: str) -> bool:
        return self._send("PUT", "/api/printer", {"ip": ip, "token": access_code})
