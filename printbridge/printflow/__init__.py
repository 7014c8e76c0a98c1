"""Print lifecycle tracking: estimation on start, usage records on completion."""

from __future__ import annotations

from .estimation import EstimationTask, PrintToken, run_estimation
from .lifecycle import (
    LiveEstimate,
    PrintCompletionRecord,
    PrintLifecycleOrchestrator,
    StatusSnapshot,
)


__all__ = [
    "EstimationTask",
    "LiveEstimate",
    "PrintCompletionRecord",
    "PrintLifecycleOrchestrator",
    "PrintToken",
    "StatusSnapshot",
    "run_estimation",
]
