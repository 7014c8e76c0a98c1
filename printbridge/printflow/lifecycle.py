"""Print lifecycle orchestration: telemetry in, filament usage records out."""

from __future__ import annotations

import copy
import logging
import threading
from dataclasses import dataclass, field, replace
from datetime import datetime, timezone
from typing import Any, Callable, Dict, List, Optional

from ..errors import MalformedTelemetry
from ..filament_usage import PrintUsageEstimate
from ..telemetry import MachineStatus, TelemetryAccumulator, classify, parse_telemetry
from .estimation import EstimationTask, PrintToken, run_estimation


log = logging.getLogger(__name__)


def _isoUtc(moment: datetime) -> str:
    return moment.astimezone(timezone.utc).isoformat().replace("+00:00", "Z")


@dataclass(frozen=True)
class PrintCompletionRecord:
    """Filament usage for one finished (or aborted) print."""
    file_name: str
    active_tray_slot: int
    filament_used_grams: float
    completed_at: datetime = field(default_factory=lambda: datetime.now(timezone.utc))

    def to_payload(self) -> Dict[str, Any]:
        return {
            "fileName": self.file_name,
            "activeTraySlot": self.active_tray_slot,
            "filamentUsedGrams": self.filament_used_grams,
            "completedAt": _isoUtc(self.completed_at),
        }


@dataclass(frozen=True)
class LiveEstimate:
    """The estimate slot of the print currently in progress."""
    token: PrintToken
    estimate: PrintUsageEstimate
    task: Optional[EstimationTask] = None


@dataclass(frozen=True)
class StatusSnapshot:
    """Read-only copy of the latest state, for periodic forwarding."""
    status: MachineStatus
    raw: Dict[str, Any]
    estimate: Optional[PrintUsageEstimate]
    received_at: datetime


class PrintLifecycleOrchestrator:
    """
    Drive filament estimation from printer telemetry.

    Every telemetry message is merged and classified in arrival order. On a
    transition into printing a background estimation is launched for the
    job file; on a transition out of printing the estimate is resolved and
    a PrintCompletionRecord is handed to ``on_completion``.

    Example usage:
        estimator = FilamentEstimator(RemoteFileLocator(ip, accessCode))
        orchestrator = PrintLifecycleOrchestrator(
            estimate=estimator.estimate,
            on_completion=reporter.post_print_completed,
        )
        orchestrator.handle_message(mqttPayload)
    """

    def __init__(
        self,
        estimate: Callable[[str], PrintUsageEstimate],
        on_completion: Callable[[PrintCompletionRecord], Any],
        *,
        accumulator: Optional[TelemetryAccumulator] = None,
        estimation_timeout: float = 120.0,
        logger: Optional[logging.Logger] = None,
    ) -> None:
        """
        Initialize the orchestrator.

        Args:
            estimate: Callable fetching and estimating a job file by name
            on_completion: Receives one record per finished print
            accumulator: Optional telemetry accumulator (a fresh one by default)
            estimation_timeout: Seconds completion waits for a running estimate
            logger: Optional custom logger
        """
        self._estimate = estimate
        self._on_completion = on_completion
        self._accumulator = accumulator or TelemetryAccumulator()
        self._estimation_timeout = max(1.0, float(estimation_timeout))
        self._log = logger or log

        self._lock = threading.Lock()
        self._status: Optional[MachineStatus] = None
        self._raw: Dict[str, Any] = {}
        self._received_at: Optional[datetime] = None
        self._live: Optional[LiveEstimate] = None
        self._completion_threads: List[threading.Thread] = []

        self.estimations_started = 0
        self.completions_emitted = 0

    # ------------------------------------------------------------------
    # Telemetry intake
    # ------------------------------------------------------------------

    def handle_message(self, payload: Any) -> Optional[MachineStatus]:
        """Process one telemetry message. Never raises."""
        try:
            partial = parse_telemetry(payload)
        except MalformedTelemetry as error:
            self._log.warning("[lifecycle] Dropping telemetry: %s", error)
            return None

        try:
            raw = self._accumulator.merge(partial)
            status = classify(raw)
            with self._lock:
                previous = self._status
                self._status = status
                self._raw = raw
                self._received_at = datetime.now(timezone.utc)
            self._apply_transition(previous, status)
            return status
        except Exception as error:  # noqa: BLE001 - telemetry loop must survive
            self._log.exception("[lifecycle] Failed to process telemetry: %s", error)
            return None

    def _apply_transition(self, previous: Optional[MachineStatus], status: MachineStatus) -> None:
        wasPrinting = previous is not None and previous.is_printing
        if status.is_printing and not wasPrinting:
            self._log.info(
                "[lifecycle] PRINT STARTED: file=%s (from %s)",
                status.current_file or "unknown",
                previous.state if previous else "startup",
            )
            self._start_estimation(status.current_file)
        elif wasPrinting and not status.is_printing:
            self._log.info(
                "[lifecycle] PRINT ENDED: file=%s state=%s",
                status.current_file or previous.current_file or "unknown",
                status.state,
            )
            self._begin_completion(previous, status)

    # ------------------------------------------------------------------
    # Estimation
    # ------------------------------------------------------------------

    def _start_estimation(self, file_name: str) -> None:
        if not file_name:
            with self._lock:
                self._live = None
            self._log.info("[lifecycle] No job file reported; skipping estimation")
            return

        token = PrintToken.next(file_name)
        task = EstimationTask(token, self._estimate, on_done=self._commit_estimate)
        with self._lock:
            stale = self._live
            self._live = LiveEstimate(token=token, estimate=PrintUsageEstimate.pending(file_name), task=task)
            self.estimations_started += 1
        if stale is not None and stale.task is not None and not stale.task.done():
            self._log.info(
                "[lifecycle] Estimation for %s still running; its result will be discarded",
                stale.token.file_name,
            )
        task.start()

    def _commit_estimate(self, token: PrintToken, result: PrintUsageEstimate) -> None:
        with self._lock:
            live = self._live
            if live is None or live.token != token:
                stale = True
            else:
                stale = False
                self._live = replace(live, estimate=result)
        if stale:
            self._log.info(
                "[lifecycle] Discarding stale estimate for %s (%.2f g)",
                token.file_name,
                result.mass_grams,
            )
        else:
            self._log.info(
                "[lifecycle] Estimate ready for %s: %.2f g (%s)",
                token.file_name,
                result.mass_grams,
                result.provenance.value,
            )

    # ------------------------------------------------------------------
    # Completion
    # ------------------------------------------------------------------

    def _begin_completion(self, previous: MachineStatus, status: MachineStatus) -> None:
        with self._lock:
            live = self._live
            self._live = None

        fileHint = status.current_file or previous.current_file or (live.token.file_name if live else "")
        activeSlot = status.ams.active_slot if status.ams.active_slot >= 0 else previous.ams.active_slot

        thread = threading.Thread(
            target=self._complete_print,
            args=(live, fileHint, activeSlot),
            name="PrintCompletion",
            daemon=True,
        )
        with self._lock:
            self._completion_threads = [t for t in self._completion_threads if t.is_alive()]
            self._completion_threads.append(thread)
        thread.start()

    def resolve_mass(self, live: Optional[LiveEstimate], file_hint: str) -> float:
        """Return the grams used by the print described by *live*."""
        result: Optional[PrintUsageEstimate] = None
        if live is not None:
            if live.task is not None:
                result = live.task.wait(self._estimation_timeout)
                if result is None:
                    self._log.warning(
                        "[lifecycle] Estimation for %s did not settle within %.0fs",
                        live.token.file_name,
                        self._estimation_timeout,
                    )
            elif not live.estimate.is_pending:
                result = live.estimate

        if result is not None and result.mass_grams > 0 and result.file_reference == file_hint:
            return result.mass_grams

        if not file_hint:
            return 0.0

        self._log.info("[lifecycle] Re-estimating %s at completion", file_hint)
        fallback = run_estimation(self._estimate, file_hint)
        return fallback.mass_grams if fallback.mass_grams > 0 else 0.0

    def _complete_print(self, live: Optional[LiveEstimate], file_hint: str, active_slot: int) -> None:
        try:
            mass = self.resolve_mass(live, file_hint)
            record = PrintCompletionRecord(
                file_name=file_hint,
                active_tray_slot=active_slot,
                filament_used_grams=mass,
            )
            with self._lock:
                self.completions_emitted += 1
            self._log.info(
                "[lifecycle] PRINT COMPLETED: file=%s slot=%d used=%.2f g",
                record.file_name or "unknown",
                record.active_tray_slot,
                record.filament_used_grams,
            )
            self._on_completion(record)
        except Exception as error:  # noqa: BLE001 - completion runs detached
            self._log.exception("[lifecycle] Completion handling failed: %s", error)

    def wait_for_completions(self, timeout: Optional[float] = None) -> bool:
        """Join outstanding completion threads. Returns False on timeout."""
        with self._lock:
            threads = list(self._completion_threads)
        for thread in threads:
            thread.join(timeout)
            if thread.is_alive():
                return False
        return True

    # ------------------------------------------------------------------
    # Read-only views
    # ------------------------------------------------------------------

    def current_estimate(self) -> Optional[PrintUsageEstimate]:
        with self._lock:
            return self._live.estimate if self._live else None

    def snapshot(self) -> Optional[StatusSnapshot]:
        """Return a copy of the latest status, or None before any telemetry."""
        with self._lock:
            if self._status is None or self._received_at is None:
                return None
            return StatusSnapshot(
                status=self._status,
                raw=copy.deepcopy(self._raw),
                estimate=self._live.estimate if self._live else None,
                received_at=self._received_at,
            )
