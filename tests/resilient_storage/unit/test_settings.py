from __future__ import annotations

from typing import Any, cast

import pytest
from pydantic import ValidationError

from resilient_storage.settings import StorageSettings


def _build_settings(**overrides: object) -> StorageSettings:
    return StorageSettings(**cast(Any, overrides))


def test_storage_settings_defaults() -> None:
    settings = _build_settings()

    assert settings.health_check_interval_ms == 30_000
    assert settings.health_check_timeout_ms == 10_000
    assert settings.fallback_enabled is True
    assert settings.max_concurrent_probes == 8
    assert settings.health_history_size == 100
    assert settings.retry_attempts == 3
    assert settings.log_level == "INFO"
    assert settings.health_check_interval_seconds == 30.0
    assert settings.health_check_timeout_seconds == 10.0


def test_storage_settings_reads_prefixed_environment(
    monkeypatch: pytest.MonkeyPatch,
) -> None:
    monkeypatch.setenv("STORAGE_HEALTH_CHECK_INTERVAL_MS", "60000")
    monkeypatch.setenv("STORAGE_FALLBACK_ENABLED", "false")
    monkeypatch.setenv("STORAGE_LOG_LEVEL", " debug ")

    settings = StorageSettings()

    assert settings.health_check_interval_ms == 60_000
    assert settings.fallback_enabled is False
    assert settings.log_level == "DEBUG"


@pytest.mark.parametrize(
    ("field", "value"),
    [
        ("health_check_interval_ms", 4_999),
        ("health_check_interval_ms", 300_001),
        ("health_check_timeout_ms", 999),
        ("health_check_timeout_ms", 60_001),
        ("max_concurrent_probes", 0),
        ("health_history_size", 0),
        ("health_history_size", 10_001),
        ("retry_attempts", 11),
    ],
)
def test_storage_settings_rejects_out_of_range_values(field: str, value: int) -> None:
    with pytest.raises(ValidationError):
        _build_settings(**{field: value})


def test_storage_settings_rejects_invalid_retry_bounds() -> None:
    with pytest.raises(ValidationError):
        _build_settings(retry_min_seconds=3.0, retry_max_seconds=1.0)


def test_storage_settings_rejects_negative_retry_delay() -> None:
    with pytest.raises(ValidationError):
        _build_settings(retry_min_seconds=-1.0)
