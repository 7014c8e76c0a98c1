import sys
from pathlib import Path

import pytest

sys.path.insert(0, str(Path(__file__).resolve().parents[1]))

from printbridge.logutil import resetRateLimits


@pytest.fixture(autouse=True)
def freshRateLimits():
    resetRateLimits()
    yield
    resetRateLimits()
