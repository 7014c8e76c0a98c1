"""Logging helpers for rate-limiting repeated messages."""

from __future__ import annotations

import logging
import threading
import time
from typing import Dict, Optional

_LOG = logging.getLogger(__name__)
_LAST_EVENT_TIMES: Dict[str, float] = {}
_LOCK = threading.Lock()


def rateLimit(
    key: str,
    message: str,
    *,
    level: str = "error",
    minSeconds: float = 60.0,
    logger: Optional[logging.Logger] = None,
) -> bool:
    """Log *message* with rate-limiting enforced per *key*.

    Returns True when the message was emitted.
    """

    now = time.monotonic()
    with _LOCK:
        lastTime = _LAST_EVENT_TIMES.get(key)
        if lastTime is not None and now - lastTime < max(0.1, float(minSeconds)):
            return False
        _LAST_EVENT_TIMES[key] = now

    target = logger or _LOG
    logMethod = getattr(target, level, None)
    if not callable(logMethod):
        logMethod = target.error
    logMethod(message)
    return True


def resetRateLimits() -> None:
    with _LOCK:
        _LAST_EVENT_TIMES.clear()

