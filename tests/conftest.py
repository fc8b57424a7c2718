from __future__ import annotations

import pytest

from objstore.common.config import get_settings
from objstore.common.retry import Retryer, RetryerOptions


@pytest.fixture(autouse=True)
def _clear_settings_cache():
    get_settings.cache_clear()  # type: ignore[attr-defined]
    yield
    get_settings.cache_clear()  # type: ignore[attr-defined]


@pytest.fixture
def retryer() -> Retryer:
    """Retryer which doesn't sleep between attempts."""
    return Retryer(RetryerOptions(max_retries=3, min_delay=0, max_delay=0))
