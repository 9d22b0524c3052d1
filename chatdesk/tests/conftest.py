from __future__ import annotations

import pytest

from chatdesk.apps.api.deps import reset_services
from chatdesk.apps.api.rate_limit import get_rate_limiter
from chatdesk.core.config import get_settings
from chatdesk.services.branding import default_brand_rules
from chatdesk.services.telemetry import reset_telemetry


@pytest.fixture(autouse=True)
def isolate_process_state(monkeypatch) -> None:
    # Keep tests off external services and free of state leaked by earlier tests.
    monkeypatch.setenv("LLM_PROVIDER", "fake")
    monkeypatch.setenv("ANSWER_CACHE_BACKEND", "memory")
    monkeypatch.setenv("RATE_LIMIT_BACKEND", "memory")
    get_settings.cache_clear()
    default_brand_rules.cache_clear()
    get_rate_limiter.cache_clear()
    reset_services()
    reset_telemetry()
    yield
    get_settings.cache_clear()
    default_brand_rules.cache_clear()
    get_rate_limiter.cache_clear()
    reset_services()
