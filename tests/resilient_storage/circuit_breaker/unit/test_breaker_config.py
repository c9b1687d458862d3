from __future__ import annotations

import pytest

from resilient_storage.circuit_breaker import (
    CircuitBreakerConfig,
    ConfigValidationError,
    load_circuit_breaker_config,
    validate_circuit_breaker_settings,
)

PREFIX = "TEST_CB_"


@pytest.fixture(autouse=True)
def _clear_prefixed_env(monkeypatch: pytest.MonkeyPatch) -> None:
    for key in (
        "FAILURE_THRESHOLD",
        "TIMEOUT_MS",
        "HALF_OPEN_MAX_CALLS",
        "SUCCESS_THRESHOLD",
        "MAX_HISTORY_SIZE",
        "ENABLED",
        "METRICS_ENABLED",
        "NAME",
    ):
        monkeypatch.delenv(f"{PREFIX}{key}", raising=False)


def test_defaults_when_environment_is_empty(fake_logger) -> None:
    config = load_circuit_breaker_config(PREFIX, logger=fake_logger)

    assert config == CircuitBreakerConfig()
    assert fake_logger.events == ["circuit_breaker.config.loaded"]


def test_reads_prefixed_environment(monkeypatch: pytest.MonkeyPatch, fake_logger) -> None:
    monkeypatch.setenv(f"{PREFIX}FAILURE_THRESHOLD", "7")
    monkeypatch.setenv(f"{PREFIX}TIMEOUT_MS", "60000")
    monkeypatch.setenv(f"{PREFIX}METRICS_ENABLED", "false")
    monkeypatch.setenv(f"{PREFIX}NAME", "s3-primary")

    config = load_circuit_breaker_config(PREFIX, logger=fake_logger)

    assert config.failure_threshold == 7
    assert config.timeout_ms == 60_000
    assert config.metrics_enabled is False
    assert config.name == "s3-primary"
    assert config.timeout_seconds == 60.0


def test_invalid_field_falls_back_to_default_and_keeps_valid_fields(
    monkeypatch: pytest.MonkeyPatch, fake_logger
) -> None:
    monkeypatch.setenv(f"{PREFIX}FAILURE_THRESHOLD", "0")
    monkeypatch.setenv(f"{PREFIX}SUCCESS_THRESHOLD", "4")

    config = load_circuit_breaker_config(PREFIX, logger=fake_logger)

    assert config.failure_threshold == 5
    assert config.success_threshold == 4
    [(level, fields)] = fake_logger.find("circuit_breaker.config.invalid_field")
    assert level == "warning"
    assert fields["field"] == "failure_threshold"


def test_validate_reports_one_error_per_invalid_field(
    monkeypatch: pytest.MonkeyPatch,
) -> None:
    monkeypatch.setenv(f"{PREFIX}TIMEOUT_MS", "10")
    monkeypatch.setenv(f"{PREFIX}ENABLED", "not-a-bool")

    settings, errors = validate_circuit_breaker_settings(
        PREFIX, {"max_history_size": 5000}
    )

    assert sorted(error.field for error in errors) == [
        "enabled",
        "max_history_size",
        "timeout_ms",
    ]
    assert all(isinstance(error, ConfigValidationError) for error in errors)
    assert settings.timeout_ms == 30_000
    assert settings.enabled is True
    assert settings.max_history_size == 100


def test_overrides_take_precedence_over_environment(
    monkeypatch: pytest.MonkeyPatch, fake_logger
) -> None:
    monkeypatch.setenv(f"{PREFIX}HALF_OPEN_MAX_CALLS", "9")

    config = load_circuit_breaker_config(
        PREFIX, overrides={"half_open_max_calls": 2}, logger=fake_logger
    )

    assert config.half_open_max_calls == 2


def test_unknown_override_is_reported_and_ignored(fake_logger) -> None:
    config = load_circuit_breaker_config(
        PREFIX, overrides={"bogus": 1}, logger=fake_logger
    )

    assert config == CircuitBreakerConfig()
    [(_, fields)] = fake_logger.find("circuit_breaker.config.invalid_field")
    assert fields["field"] == "bogus"


@pytest.mark.parametrize(
    ("field", "value"),
    [
        ("failure_threshold", 0),
        ("failure_threshold", 101),
        ("timeout_ms", 999),
        ("timeout_ms", 300_001),
        ("half_open_max_calls", 51),
        ("success_threshold", 21),
        ("max_history_size", 9),
        ("name", ""),
    ],
)
def test_direct_construction_rejects_out_of_range_values(field: str, value: object) -> None:
    with pytest.raises(ValueError, match=field):
        CircuitBreakerConfig(**{field: value})  # type: ignore[arg-type]


def test_summary_exposes_every_field() -> None:
    summary = CircuitBreakerConfig(name="svc").summary()

    assert summary["name"] == "svc"
    assert set(summary) == {
        "name",
        "enabled",
        "failure_threshold",
        "timeout_ms",
        "half_open_max_calls",
        "success_threshold",
        "max_history_size",
        "metrics_enabled",
    }
