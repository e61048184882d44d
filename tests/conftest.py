"""
Pytest configuration for the repocontext test suite.

Provides a clock frozen at a fixed instant so TTL and retention tests are
deterministic.
"""
import pytest

from repocontext.utils.clock import FixedClock

from helpers import NOW


@pytest.fixture
def clock():
    return FixedClock(NOW)
