from __future__ import annotations

import pytest

from tests.resilient_storage.support.fakes import FakeClock, FakeLogger


@pytest.fixture
def fake_logger() -> FakeLogger:
    """Provide a fresh structured logger test double per test."""
    return FakeLogger()


@pytest.fixture
def fake_clock(monkeypatch: pytest.MonkeyPatch) -> FakeClock:
    """Drive breaker and health timestamps from a controllable clock."""
    import resilient_storage.circuit_breaker.state as state_mod
    import resilient_storage.storage.health as health_mod

    clock = FakeClock()
    monkeypatch.setattr(state_mod, "_utcnow", clock.now)
    monkeypatch.setattr(health_mod, "_utcnow", clock.now)
    return clock
