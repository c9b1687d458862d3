"""Circuit breaker exceptions.

Callers can distinguish between:
  - A call rejected because the circuit is open (``CircuitOpenError``).
  - A call rejected because too many half-open trials are in flight
    (``HalfOpenLimitError``).
  - An invalid configuration value replaced by its default at load time
    (``ConfigValidationError``).
"""

from __future__ import annotations

from collections.abc import Mapping

from resilient_storage.circuit_breaker.state import CircuitState


class CircuitBreakerError(Exception):
    """Base exception for calls rejected by a circuit breaker.

    Attributes:
        breaker_name: Name of the breaker rejecting the call.
        state: Breaker state at the time of rejection.
        metadata: Caller-supplied metadata for the rejected operation.
    """

    def __init__(
        self,
        message: str,
        *,
        breaker_name: str,
        state: CircuitState,
        metadata: Mapping[str, object] | None = None,
    ) -> None:
        self.breaker_name = breaker_name
        self.state = state
        self.metadata = dict(metadata or {})
        super().__init__(message)


class CircuitOpenError(CircuitBreakerError):
    """Raised when a call is rejected because the circuit is open.

    Attributes:
        retry_after: Seconds until a half-open trial may be attempted.
    """

    def __init__(
        self,
        breaker_name: str,
        retry_after: float,
        metadata: Mapping[str, object] | None = None,
    ) -> None:
        """Initialize a circuit-open exception payload.

        Args:
            breaker_name: Breaker rejecting the call.
            retry_after: Seconds until the next trial window opens.
            metadata: Caller-supplied metadata for the rejected operation.
        """
        self.retry_after = retry_after
        super().__init__(
            f"circuit_open: {breaker_name} retry_after={retry_after:g}s",
            breaker_name=breaker_name,
            state=CircuitState.OPEN,
            metadata=metadata,
        )


class HalfOpenLimitError(CircuitBreakerError):
    """Raised when the half-open trial call limit is already in use.

    Attributes:
        max_calls: Configured ``half_open_max_calls``.
    """

    def __init__(
        self,
        breaker_name: str,
        max_calls: int,
        metadata: Mapping[str, object] | None = None,
    ) -> None:
        self.max_calls = max_calls
        super().__init__(
            f"half_open_limit: {breaker_name} max_calls={max_calls}",
            breaker_name=breaker_name,
            state=CircuitState.HALF_OPEN,
            metadata=metadata,
        )


class ConfigValidationError(ValueError):
    """One configuration field that failed validation.

    Loaders report these and substitute the field default; they are not
    raised to callers.
    """

    def __init__(self, field: str, value: object, message: str) -> None:
        self.field = field
        self.value = value
        self.message = message
        super().__init__(f"{field}: {message} (got {value!r})")
