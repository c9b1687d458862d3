"""Framework-agnostic async circuit breaker.

This package implements the circuit breaker pattern from *Release It!*.

Key behavior notes:
  - ``CLOSED`` opens once ``failure_threshold`` failures accumulate; the count
    is cleared only when the circuit closes again.
  - ``OPEN`` rejects calls without invoking them until ``timeout_ms`` has
    passed since the circuit opened; the next call moves it to ``HALF_OPEN``.
  - ``HALF_OPEN`` admits at most ``half_open_max_calls`` trial calls in flight.
    ``success_threshold`` consecutive successes close the circuit and any trial
    failure reopens it, restarting the timeout.
  - ``half_open_call_count`` counts trials currently in flight, not every call
    admitted since entering ``HALF_OPEN``: a finished or cancelled trial frees
    its slot for the next caller.
"""

from resilient_storage.circuit_breaker.breaker import CircuitBreaker, ExecuteOptions
from resilient_storage.circuit_breaker.config import (
    CircuitBreakerConfig,
    CircuitBreakerSettings,
    load_circuit_breaker_config,
    validate_circuit_breaker_settings,
)
from resilient_storage.circuit_breaker.exceptions import (
    CircuitBreakerError,
    CircuitOpenError,
    ConfigValidationError,
    HalfOpenLimitError,
)
from resilient_storage.circuit_breaker.metrics import BreakerListener, BreakerMetrics
from resilient_storage.circuit_breaker.state import (
    BreakerSnapshot,
    CircuitState,
    StateManager,
    StateTransition,
)

__all__ = [
    "BreakerListener",
    "BreakerMetrics",
    "BreakerSnapshot",
    "CircuitBreaker",
    "CircuitBreakerConfig",
    "CircuitBreakerError",
    "CircuitBreakerSettings",
    "CircuitOpenError",
    "CircuitState",
    "ConfigValidationError",
    "ExecuteOptions",
    "HalfOpenLimitError",
    "StateManager",
    "StateTransition",
    "load_circuit_breaker_config",
    "validate_circuit_breaker_settings",
]
