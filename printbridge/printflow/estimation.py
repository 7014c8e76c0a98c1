"""Background filament estimation handles."""

from __future__ import annotations

import itertools
import logging
import threading
from dataclasses import dataclass
from typing import Callable, Optional

from ..errors import PrintBridgeError, Unavailable
from ..filament_usage import PrintUsageEstimate, Provenance


log = logging.getLogger(__name__)

_TOKEN_COUNTER = itertools.count(1)


@dataclass(frozen=True)
class PrintToken:
    """Identity of one print; estimates are only accepted for a matching token."""
    sequence: int
    file_name: str

    @classmethod
    def next(cls, file_name: str) -> "PrintToken":
        return cls(sequence=next(_TOKEN_COUNTER), file_name=file_name)


def run_estimation(
    estimate: Callable[[str], PrintUsageEstimate],
    file_reference: str,
) -> PrintUsageEstimate:
    """Run *estimate* and convert every failure into a zero-mass estimate."""
    try:
        return estimate(file_reference)
    except Unavailable as error:
        log.info("[estimate] %s: %s", file_reference, error)
        return PrintUsageEstimate.failed(file_reference, Provenance.UNAVAILABLE)
    except PrintBridgeError as error:
        log.warning("[estimate] %s failed: %s", file_reference, error)
        return PrintUsageEstimate.failed(file_reference)
    except Exception as error:  # noqa: BLE001 - estimation must never escape
        log.exception("[estimate] Unexpected error estimating %s: %s", file_reference, error)
        return PrintUsageEstimate.failed(file_reference)


class EstimationTask:
    """
    Run one filament estimation on a daemon thread.

    The result is available through wait(); on_done is invoked with the
    token and the result once the estimation settles.
    """

    def __init__(
        self,
        token: PrintToken,
        estimate: Callable[[str], PrintUsageEstimate],
        on_done: Optional[Callable[[PrintToken, PrintUsageEstimate], None]] = None,
    ) -> None:
        self.token = token
        self._estimate = estimate
        self._on_done = on_done
        self._done = threading.Event()
        self._result: Optional[PrintUsageEstimate] = None
        self._thread = threading.Thread(
            target=self._run,
            name=f"FilamentEstimate-{token.sequence}",
            daemon=True,
        )

    def start(self) -> "EstimationTask":
        self._thread.start()
        return self

    def _run(self) -> None:
        result = run_estimation(self._estimate, self.token.file_name)
        self._result = result
        try:
            if self._on_done:
                self._on_done(self.token, result)
        except Exception as error:
            log.warning("[estimate] Completion callback failed: %s", error)
        finally:
            self._done.set()

    def done(self) -> bool:
        return self._done.is_set()

    def wait(self, timeout: Optional[float] = None) -> Optional[PrintUsageEstimate]:
        """Block until the estimate settles; None if *timeout* elapsed first."""
        if not self._done.wait(timeout):
            return None
        return self._result
