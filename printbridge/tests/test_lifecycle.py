"""Unit tests for PrintLifecycleOrchestrator."""

from __future__ import annotations

import json
import threading
import time
from typing import Any, Callable, Dict, List, Optional

import pytest

from printbridge.errors import NotFound
from printbridge.filament_usage import PrintUsageEstimate, Provenance
from printbridge.printflow.lifecycle import PrintCompletionRecord, PrintLifecycleOrchestrator


def message(**fields: Any) -> bytes:
    return json.dumps({"print": fields}).encode("utf-8")


def ams(tray_now: str) -> Dict[str, Any]:
    return {"tray_now": tray_now, "ams": [{"id": "0", "humidity": "4", "tray": [{"id": "0"}]}]}


class RecordingEstimator:
    """Estimator double that records calls and can block the next call per file."""

    def __init__(self, grams: float = 12.5, provenance: Provenance = Provenance.COMMENT) -> None:
        self.grams = grams
        self.provenance = provenance
        self.calls: List[str] = []
        self.gates: Dict[str, threading.Event] = {}
        self.failure: Optional[Exception] = None
        self._lock = threading.Lock()

    def block(self, file_name: str) -> threading.Event:
        gate = threading.Event()
        self.gates[file_name] = gate
        return gate

    def __call__(self, file_reference: str) -> PrintUsageEstimate:
        with self._lock:
            self.calls.append(file_reference)
        gate = self.gates.pop(file_reference, None)
        if gate is not None:
            gate.wait(5.0)
        if self.failure is not None:
            raise self.failure
        return PrintUsageEstimate(
            file_reference=file_reference,
            mass_grams=self.grams,
            provenance=self.provenance,
            resolved_path=f"/cache/{file_reference}",
        )


def wait_until(predicate: Callable[[], bool], timeout: float = 5.0) -> bool:
    deadline = time.monotonic() + timeout
    while time.monotonic() < deadline:
        if predicate():
            return True
        time.sleep(0.01)
    return predicate()


@pytest.fixture
def records() -> List[PrintCompletionRecord]:
    return []


@pytest.fixture
def estimator() -> RecordingEstimator:
    return RecordingEstimator()


@pytest.fixture
def orchestrator(estimator: RecordingEstimator, records: List[PrintCompletionRecord]) -> PrintLifecycleOrchestrator:
    return PrintLifecycleOrchestrator(estimate=estimator, on_completion=records.append, estimation_timeout=5.0)


class TestPrintLifecycle:
    """End-to-end print start and completion handling."""

    def test_single_print_produces_one_estimate_and_one_record(
        self,
        orchestrator: PrintLifecycleOrchestrator,
        estimator: RecordingEstimator,
        records: List[PrintCompletionRecord],
    ) -> None:
        """idle -> printing(A) -> printing(50%) -> idle emits exactly one record for A."""
        orchestrator.handle_message(message(gcode_state="IDLE"))
        orchestrator.handle_message(message(gcode_state="RUNNING", gcode_file="A.gcode", ams=ams("2")))
        orchestrator.handle_message(message(mc_percent=50))
        orchestrator.handle_message(message(gcode_state="IDLE"))

        assert orchestrator.wait_for_completions(timeout=5.0)
        assert orchestrator.estimations_started == 1
        assert estimator.calls == ["A.gcode"]
        assert len(records) == 1
        assert records[0].file_name == "A.gcode"
        assert records[0].filament_used_grams == 12.5
        assert records[0].active_tray_slot == 2
        assert orchestrator.current_estimate() is None

    def test_pending_placeholder_visible_while_estimating(
        self,
        orchestrator: PrintLifecycleOrchestrator,
        estimator: RecordingEstimator,
    ) -> None:
        """A pending estimate is published before the background work finishes."""
        gate = estimator.block("A.gcode")
        orchestrator.handle_message(message(gcode_state="RUNNING", gcode_file="A.gcode"))

        pending = orchestrator.current_estimate()
        assert pending is not None
        assert pending.provenance is Provenance.PENDING
        assert pending.file_reference == "A.gcode"

        gate.set()
        assert wait_until(lambda: orchestrator.current_estimate().provenance is Provenance.COMMENT)
        assert orchestrator.current_estimate().mass_grams == 12.5

    def test_stale_estimate_does_not_overwrite_newer_print(
        self,
        orchestrator: PrintLifecycleOrchestrator,
        estimator: RecordingEstimator,
        records: List[PrintCompletionRecord],
    ) -> None:
        """A slow estimate for an earlier print is discarded once a new print is live."""
        gateA = estimator.block("A.gcode")
        gateB = estimator.block("B.gcode")

        orchestrator.handle_message(message(gcode_state="RUNNING", gcode_file="A.gcode"))
        orchestrator.handle_message(message(gcode_state="FINISH"))
        orchestrator.handle_message(message(gcode_state="RUNNING", gcode_file="B.gcode"))

        gateA.set()
        assert wait_until(lambda: len(records) == 1)
        current = orchestrator.current_estimate()
        assert current is not None
        assert current.file_reference == "B.gcode"
        assert current.provenance is Provenance.PENDING

        gateB.set()
        assert wait_until(lambda: orchestrator.current_estimate().provenance is Provenance.COMMENT)
        assert orchestrator.current_estimate().file_reference == "B.gcode"
        assert records[0].file_name == "A.gcode"

    def test_failed_estimation_resolves_to_zero(
        self,
        orchestrator: PrintLifecycleOrchestrator,
        estimator: RecordingEstimator,
        records: List[PrintCompletionRecord],
    ) -> None:
        """Locate failures never escape; completion retries once and records 0 g."""
        estimator.failure = NotFound(["a", "/a"])

        orchestrator.handle_message(message(gcode_state="RUNNING", gcode_file="A.gcode"))
        assert wait_until(lambda: orchestrator.current_estimate().provenance is Provenance.ERROR)
        orchestrator.handle_message(message(gcode_state="FAILED"))

        assert orchestrator.wait_for_completions(timeout=5.0)
        assert estimator.calls == ["A.gcode", "A.gcode"]
        assert records[0].filament_used_grams == 0.0

    def test_zero_mass_triggers_fallback_estimation(
        self,
        records: List[PrintCompletionRecord],
    ) -> None:
        """An unavailable estimate is recomputed at completion."""
        estimator = RecordingEstimator(grams=0.0, provenance=Provenance.UNAVAILABLE)
        orchestrator = PrintLifecycleOrchestrator(estimate=estimator, on_completion=records.append)

        orchestrator.handle_message(message(gcode_state="RUNNING", gcode_file="A.gcode"))
        orchestrator.handle_message(message(gcode_state="IDLE"))

        assert orchestrator.wait_for_completions(timeout=5.0)
        assert estimator.calls == ["A.gcode", "A.gcode"]
        assert records[0].filament_used_grams == 0.0

    def test_print_without_file_name_skips_estimation(
        self,
        orchestrator: PrintLifecycleOrchestrator,
        estimator: RecordingEstimator,
        records: List[PrintCompletionRecord],
    ) -> None:
        """No job file means no estimate, but completion is still recorded."""
        orchestrator.handle_message(message(gcode_state="RUNNING"))
        assert orchestrator.current_estimate() is None
        orchestrator.handle_message(message(gcode_state="IDLE"))

        assert orchestrator.wait_for_completions(timeout=5.0)
        assert estimator.calls == []
        assert len(records) == 1
        assert records[0].file_name == ""
        assert records[0].filament_used_grams == 0.0

    def test_hms_error_ends_print(
        self,
        orchestrator: PrintLifecycleOrchestrator,
        records: List[PrintCompletionRecord],
    ) -> None:
        """An error reported mid-print counts as a printing -> error transition."""
        orchestrator.handle_message(message(gcode_state="RUNNING", gcode_file="A.gcode"))
        status = orchestrator.handle_message(message(hms=[{"attr": 50331904, "code": 131075}]))

        assert status is not None
        assert status.state == "error"
        assert orchestrator.wait_for_completions(timeout=5.0)
        assert len(records) == 1

    def test_pause_and_resume_starts_new_estimate(
        self,
        orchestrator: PrintLifecycleOrchestrator,
        estimator: RecordingEstimator,
        records: List[PrintCompletionRecord],
    ) -> None:
        """Pausing leaves printing, so resume counts as a new start."""
        orchestrator.handle_message(message(gcode_state="RUNNING", gcode_file="A.gcode"))
        orchestrator.handle_message(message(gcode_state="PAUSE"))
        orchestrator.handle_message(message(gcode_state="RUNNING"))

        assert orchestrator.wait_for_completions(timeout=5.0)
        assert orchestrator.estimations_started == 2
        assert len(records) == 1

    def test_preparation_is_not_a_print(
        self,
        orchestrator: PrintLifecycleOrchestrator,
        estimator: RecordingEstimator,
        records: List[PrintCompletionRecord],
    ) -> None:
        """A job that fails while preparing never starts or completes a print."""
        orchestrator.handle_message(message(gcode_state="IDLE"))
        status = orchestrator.handle_message(message(gcode_state="PREPARE", gcode_file="A.gcode"))
        orchestrator.handle_message(message(gcode_state="FAILED"))

        assert status is not None
        assert status.state == "offline"
        assert orchestrator.wait_for_completions(timeout=5.0)
        assert orchestrator.estimations_started == 0
        assert estimator.calls == []
        assert records == []

    def test_file_change_before_completion_re_estimates(
        self,
        orchestrator: PrintLifecycleOrchestrator,
        estimator: RecordingEstimator,
        records: List[PrintCompletionRecord],
    ) -> None:
        """An estimate for a different file than the finished one is recomputed."""
        orchestrator.handle_message(message(gcode_state="RUNNING", gcode_file="A.gcode"))
        assert wait_until(lambda: orchestrator.current_estimate().provenance is Provenance.COMMENT)

        estimator.grams = 20.0
        orchestrator.handle_message(message(gcode_file="B.gcode"))
        orchestrator.handle_message(message(gcode_state="FINISH"))

        assert orchestrator.wait_for_completions(timeout=5.0)
        assert estimator.calls == ["A.gcode", "B.gcode"]
        assert records[0].file_name == "B.gcode"
        assert records[0].filament_used_grams == 20.0

    def test_slow_estimate_falls_back_once(
        self,
        estimator: RecordingEstimator,
        records: List[PrintCompletionRecord],
    ) -> None:
        """A background estimate that outlives the wait is replaced by one synchronous run."""
        orchestrator = PrintLifecycleOrchestrator(
            estimate=estimator,
            on_completion=records.append,
            estimation_timeout=1.0,
        )
        gate = estimator.block("A.gcode")
        try:
            orchestrator.handle_message(message(gcode_state="RUNNING", gcode_file="A.gcode"))
            orchestrator.handle_message(message(gcode_state="IDLE"))

            assert orchestrator.wait_for_completions(timeout=5.0)
            assert estimator.calls == ["A.gcode", "A.gcode"]
            assert len(records) == 1
            assert records[0].filament_used_grams == 12.5
        finally:
            gate.set()


class TestTelemetryIntake:
    """Message parsing and snapshots."""

    def test_malformed_message_is_dropped(self, orchestrator: PrintLifecycleOrchestrator) -> None:
        """Bad JSON leaves the accumulated state untouched."""
        orchestrator.handle_message(message(gcode_state="IDLE", nozzle_temper=25))

        assert orchestrator.handle_message(b"{not json") is None

        snapshot = orchestrator.snapshot()
        assert snapshot is not None
        assert snapshot.raw == {"print": {"gcode_state": "IDLE", "nozzle_temper": 25}}

    def test_snapshot_is_none_before_telemetry(self, orchestrator: PrintLifecycleOrchestrator) -> None:
        assert orchestrator.snapshot() is None

    def test_snapshot_is_a_copy(self, orchestrator: PrintLifecycleOrchestrator) -> None:
        """Mutating a snapshot does not affect the orchestrator's state."""
        orchestrator.handle_message(message(gcode_state="IDLE"))

        snapshot = orchestrator.snapshot()
        snapshot.raw["print"]["gcode_state"] = "RUNNING"

        assert orchestrator.snapshot().raw["print"]["gcode_state"] == "IDLE"

    def test_completion_callback_failure_is_contained(self, estimator: RecordingEstimator) -> None:
        """A failing reporter does not break telemetry processing."""

        def explode(record: PrintCompletionRecord) -> None:
            raise RuntimeError("boom")

        orchestrator = PrintLifecycleOrchestrator(estimate=estimator, on_completion=explode)
        orchestrator.handle_message(message(gcode_state="RUNNING", gcode_file="A.gcode"))
        orchestrator.handle_message(message(gcode_state="IDLE"))
        assert orchestrator.wait_for_completions(timeout=5.0)

        status = orchestrator.handle_message(message(gcode_state="RUNNING", gcode_file="B.gcode"))
        assert status is not None
        assert status.is_printing


class TestCompletionRecord:
    """Payload rendering."""

    def test_to_payload_uses_camel_case(self) -> None:
        record = PrintCompletionRecord(file_name="A.gcode", active_tray_slot=1, filament_used_grams=3.5)

        payload = record.to_payload()

        assert payload["fileName"] == "A.gcode"
        assert payload["activeTraySlot"] == 1
        assert payload["filamentUsedGrams"] == 3.5
        assert payload["completedAt"].endswith("Z")
