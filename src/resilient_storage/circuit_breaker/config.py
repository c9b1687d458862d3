"""Circuit breaker configuration.

``CircuitBreakerConfig`` is the immutable record a breaker runs with.
``load_circuit_breaker_config`` builds one from prefixed environment variables
(``CIRCUIT_BREAKER_FAILURE_THRESHOLD`` and friends). Every field is validated
on its own: an invalid value is replaced by that field's default and reported
as a ``ConfigValidationError`` with a logged warning, so a bad variable never
stops a service from starting.
"""

from __future__ import annotations

from collections.abc import Mapping
from dataclasses import dataclass
from typing import Any

from pydantic import Field, ValidationError
from pydantic_settings import BaseSettings

from resilient_storage.circuit_breaker.exceptions import ConfigValidationError
from resilient_storage.logging import LoggerLike, get_logger, log_info, log_warning
from resilient_storage.settings import prefixed_settings_config

DEFAULT_ENV_PREFIX = "CIRCUIT_BREAKER_"

FAILURE_THRESHOLD_RANGE = (1, 100)
TIMEOUT_MS_RANGE = (1_000, 300_000)
HALF_OPEN_MAX_CALLS_RANGE = (1, 50)
SUCCESS_THRESHOLD_RANGE = (1, 20)
MAX_HISTORY_SIZE_RANGE = (10, 1_000)
NAME_MAX_LENGTH = 100

_logger = get_logger(__name__)


def _check_range(field_name: str, value: int, bounds: tuple[int, int]) -> None:
    low, high = bounds
    if not low <= value <= high:
        raise ValueError(f"{field_name} must be between {low} and {high}")


@dataclass(frozen=True, slots=True)
class CircuitBreakerConfig:
    """Circuit breaker configuration values.

    Attributes:
        name: Breaker name used in metrics, logs and errors.
        failure_threshold: Failures required while ``CLOSED`` before opening.
        timeout_ms: Milliseconds to wait while ``OPEN`` before a half-open trial.
        half_open_max_calls: Trial calls allowed in flight while ``HALF_OPEN``.
        success_threshold: Consecutive successes required to close again.
        max_history_size: Number of transitions kept in the history.
        enabled: When false, operations run unguarded.
        metrics_enabled: When false, per-call listener events are skipped.
    """

    name: str = "default"
    failure_threshold: int = 5
    timeout_ms: int = 30_000
    half_open_max_calls: int = 3
    success_threshold: int = 3
    max_history_size: int = 100
    enabled: bool = True
    metrics_enabled: bool = True

    def __post_init__(self) -> None:
        if not self.name or len(self.name) > NAME_MAX_LENGTH:
            raise ValueError(f"name must be 1 to {NAME_MAX_LENGTH} characters")
        _check_range("failure_threshold", self.failure_threshold, FAILURE_THRESHOLD_RANGE)
        _check_range("timeout_ms", self.timeout_ms, TIMEOUT_MS_RANGE)
        _check_range(
            "half_open_max_calls", self.half_open_max_calls, HALF_OPEN_MAX_CALLS_RANGE
        )
        _check_range("success_threshold", self.success_threshold, SUCCESS_THRESHOLD_RANGE)
        _check_range("max_history_size", self.max_history_size, MAX_HISTORY_SIZE_RANGE)

    @property
    def timeout_seconds(self) -> float:
        return self.timeout_ms / 1000

    def summary(self) -> dict[str, object]:
        """Return configuration values keyed for logging/debugging."""
        return {
            "name": self.name,
            "enabled": self.enabled,
            "failure_threshold": self.failure_threshold,
            "timeout_ms": self.timeout_ms,
            "half_open_max_calls": self.half_open_max_calls,
            "success_threshold": self.success_threshold,
            "max_history_size": self.max_history_size,
            "metrics_enabled": self.metrics_enabled,
        }


class CircuitBreakerSettings(BaseSettings):
    """Environment-backed circuit breaker settings."""

    model_config = prefixed_settings_config(DEFAULT_ENV_PREFIX)

    failure_threshold: int = Field(
        default=5, ge=FAILURE_THRESHOLD_RANGE[0], le=FAILURE_THRESHOLD_RANGE[1]
    )
    timeout_ms: int = Field(default=30_000, ge=TIMEOUT_MS_RANGE[0], le=TIMEOUT_MS_RANGE[1])
    half_open_max_calls: int = Field(
        default=3, ge=HALF_OPEN_MAX_CALLS_RANGE[0], le=HALF_OPEN_MAX_CALLS_RANGE[1]
    )
    success_threshold: int = Field(
        default=3, ge=SUCCESS_THRESHOLD_RANGE[0], le=SUCCESS_THRESHOLD_RANGE[1]
    )
    max_history_size: int = Field(
        default=100, ge=MAX_HISTORY_SIZE_RANGE[0], le=MAX_HISTORY_SIZE_RANGE[1]
    )
    enabled: bool = True
    metrics_enabled: bool = True
    name: str = Field(default="default", min_length=1, max_length=NAME_MAX_LENGTH)

    def to_config(self) -> CircuitBreakerConfig:
        """Build the immutable breaker config from validated settings."""
        return CircuitBreakerConfig(
            name=self.name,
            failure_threshold=self.failure_threshold,
            timeout_ms=self.timeout_ms,
            half_open_max_calls=self.half_open_max_calls,
            success_threshold=self.success_threshold,
            max_history_size=self.max_history_size,
            enabled=self.enabled,
            metrics_enabled=self.metrics_enabled,
        )


def _collect_field_errors(error: ValidationError) -> tuple[ConfigValidationError, ...]:
    field_errors: dict[str, ConfigValidationError] = {}
    for detail in error.errors():
        location = detail.get("loc", ())
        if not location:
            continue
        field_name = str(location[0])
        if field_name in field_errors:
            continue
        field_errors[field_name] = ConfigValidationError(
            field=field_name,
            value=detail.get("input"),
            message=str(detail.get("msg", "invalid value")),
        )
    return tuple(field_errors.values())


def validate_circuit_breaker_settings(
    prefix: str = DEFAULT_ENV_PREFIX,
    overrides: Mapping[str, object] | None = None,
) -> tuple[CircuitBreakerSettings, tuple[ConfigValidationError, ...]]:
    """Validate breaker settings field by field.

    Args:
        prefix: Environment variable prefix, for example ``"STORAGE_S3_CB_"``.
        overrides: Explicit values taking precedence over the environment.

    Returns:
        The validated settings and one ``ConfigValidationError`` per field that
        was replaced by its default.
    """
    values: dict[str, Any] = dict(overrides or {})
    try:
        return CircuitBreakerSettings(_env_prefix=prefix, **values), ()
    except ValidationError as exc:
        errors = _collect_field_errors(exc)

    fields = CircuitBreakerSettings.model_fields
    for error in errors:
        if error.field in fields:
            values[error.field] = fields[error.field].default
        else:
            values.pop(error.field, None)
    settings = CircuitBreakerSettings(_env_prefix=prefix, **values)
    return settings, errors


def load_circuit_breaker_config(
    prefix: str = DEFAULT_ENV_PREFIX,
    *,
    overrides: Mapping[str, object] | None = None,
    logger: LoggerLike | None = None,
) -> CircuitBreakerConfig:
    """Load a breaker config, substituting defaults for invalid fields."""
    log = _logger if logger is None else logger
    settings, errors = validate_circuit_breaker_settings(prefix, overrides)
    for error in errors:
        log_warning(
            log,
            "circuit_breaker.config.invalid_field",
            prefix=prefix,
            field=error.field,
            value=repr(error.value),
            detail=error.message,
        )
    config = settings.to_config()
    log_info(log, "circuit_breaker.config.loaded", prefix=prefix, **config.summary())
    return config
