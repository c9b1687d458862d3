"""Observability hooks for circuit breakers."""

from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime
from typing import TYPE_CHECKING, Protocol

from resilient_storage.circuit_breaker.state import CircuitState, StateTransition

if TYPE_CHECKING:
    from resilient_storage.circuit_breaker.config import CircuitBreakerConfig
    from resilient_storage.circuit_breaker.exceptions import CircuitBreakerError


@dataclass(frozen=True)
class BreakerMetrics:
    """Metrics view of one breaker, as returned by ``get_metrics()``.

    Rates are fractions in ``[0, 1]`` over requests since the breaker last
    closed.
    """

    name: str
    current_state: CircuitState
    failure_count: int
    total_request_count: int
    success_rate: float
    failure_rate: float
    last_failure_at: datetime | None
    last_state_change_at: datetime
    consecutive_success_count: int
    enabled: bool
    config: CircuitBreakerConfig


class BreakerListener(Protocol):
    """Listener protocol for circuit breaker events.

    Notes:
        ``on_state_change`` is delivered for every recorded transition. The
        per-call hooks are only delivered when ``metrics_enabled`` is set.
    """

    async def on_state_change(self, name: str, transition: StateTransition) -> None:
        """Handle circuit state transitions."""

    async def on_call_rejected(self, name: str, error: CircuitBreakerError) -> None:
        """Handle call rejection by admission control."""

    async def on_call_succeeded(self, name: str, elapsed: float) -> None:
        """Handle successful protected call completion."""

    async def on_call_failed(self, name: str, exc: Exception, elapsed: float) -> None:
        """Handle failed protected call completion."""
