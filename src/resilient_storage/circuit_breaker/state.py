"""Circuit breaker state primitives and the per-breaker state manager."""

from __future__ import annotations

from collections import deque
from collections.abc import Mapping
from dataclasses import dataclass, field
from datetime import UTC, datetime, timedelta
from enum import StrEnum
from types import MappingProxyType


def _utcnow() -> datetime:
    return datetime.now(UTC)


class CircuitState(StrEnum):
    """Circuit breaker state values."""

    CLOSED = "closed"
    OPEN = "open"
    HALF_OPEN = "half_open"


@dataclass(frozen=True)
class StateTransition:
    """One recorded state change.

    Attributes:
        from_state: State before the transition.
        to_state: State after the transition.
        reason: Human-readable trigger for the transition.
        timestamp: When the transition happened (UTC).
        metadata: Read-only context supplied with the transition.
    """

    from_state: CircuitState
    to_state: CircuitState
    reason: str
    timestamp: datetime
    metadata: Mapping[str, object] = field(default_factory=dict)

    def __post_init__(self) -> None:
        object.__setattr__(self, "metadata", MappingProxyType(dict(self.metadata)))


@dataclass(frozen=True)
class BreakerSnapshot:
    """Point-in-time view of breaker internals useful for metrics/logging.

    Attributes:
        state: Current breaker state.
        failure_count: Failures recorded since the breaker last closed.
        consecutive_success_count: Successes since the last failure.
        total_request_count: Attempted calls since creation or ``reset``.
        half_open_call_count: Trial calls in flight in the current half-open
            period.
        last_failure_at: Timestamp of the last recorded failure, if any.
        last_state_change_at: Timestamp of the last transition (or creation).
    """

    state: CircuitState
    failure_count: int
    consecutive_success_count: int
    total_request_count: int
    half_open_call_count: int
    last_failure_at: datetime | None
    last_state_change_at: datetime


class StateManager:
    """Hold one breaker's state, counters and bounded transition history.

    The manager does no locking of its own; ``CircuitBreaker`` serializes
    every call into it.
    """

    def __init__(self, max_history_size: int = 100) -> None:
        if max_history_size < 1:
            raise ValueError("max_history_size must be >= 1")
        self._state = CircuitState.CLOSED
        self._failure_count = 0
        self._consecutive_success_count = 0
        self._total_request_count = 0
        self._half_open_call_count = 0
        self._half_open_epoch = 0
        self._last_failure_at: datetime | None = None
        self._last_state_change_at = _utcnow()
        self._history: deque[StateTransition] = deque(maxlen=max_history_size)

    @property
    def state(self) -> CircuitState:
        return self._state

    @property
    def half_open_epoch(self) -> int:
        """Counter identifying the current half-open period."""
        return self._half_open_epoch

    def snapshot(self) -> BreakerSnapshot:
        return BreakerSnapshot(
            state=self._state,
            failure_count=self._failure_count,
            consecutive_success_count=self._consecutive_success_count,
            total_request_count=self._total_request_count,
            half_open_call_count=self._half_open_call_count,
            last_failure_at=self._last_failure_at,
            last_state_change_at=self._last_state_change_at,
        )

    def history(self) -> tuple[StateTransition, ...]:
        """Return recorded transitions, oldest first."""
        return tuple(self._history)

    def resize_history(self, max_history_size: int) -> None:
        """Change the history cap, evicting the oldest entries if needed."""
        if max_history_size < 1:
            raise ValueError("max_history_size must be >= 1")
        self._history = deque(self._history, maxlen=max_history_size)

    def transition_to(
        self,
        new_state: CircuitState,
        reason: str,
        metadata: Mapping[str, object] | None = None,
    ) -> StateTransition | None:
        """Move to ``new_state`` and record the transition.

        Returns ``None`` without recording anything when already in
        ``new_state``.
        """
        if new_state == self._state:
            return None

        now = _utcnow()
        transition = StateTransition(
            from_state=self._state,
            to_state=new_state,
            reason=reason,
            timestamp=now,
            metadata=dict(metadata or {}),
        )
        if CircuitState.HALF_OPEN in (self._state, new_state):
            self._half_open_call_count = 0
        if new_state == CircuitState.HALF_OPEN:
            self._half_open_epoch += 1
            self._consecutive_success_count = 0
        if new_state == CircuitState.CLOSED:
            self._failure_count = 0
            self._consecutive_success_count = 0

        self._state = new_state
        self._last_state_change_at = now
        self._history.append(transition)
        return transition

    def record_success(self) -> None:
        self._consecutive_success_count += 1
        self._total_request_count += 1

    def record_failure(self) -> None:
        # Failures landing while OPEN come from calls admitted earlier.
        if self._state != CircuitState.OPEN:
            self._failure_count += 1
        self._consecutive_success_count = 0
        self._total_request_count += 1
        self._last_failure_at = _utcnow()

    def reset_failure_count(self) -> None:
        """Clear failure tracking without touching request totals."""
        self._failure_count = 0
        self._consecutive_success_count = 0
        self._half_open_call_count = 0

    def reset_counters(self) -> None:
        """Zero every request counter and forget the last failure."""
        self._failure_count = 0
        self._consecutive_success_count = 0
        self._total_request_count = 0
        self._half_open_call_count = 0
        self._last_failure_at = None

    def try_acquire_half_open(self, max_calls: int) -> bool:
        """Admit one half-open trial call if fewer than ``max_calls`` are in flight."""
        if self._half_open_call_count >= max_calls:
            return False
        self._half_open_call_count += 1
        return True

    def release_half_open(self, epoch: int) -> None:
        """Release a trial slot acquired during half-open period ``epoch``."""
        if epoch != self._half_open_epoch or self._state != CircuitState.HALF_OPEN:
            return
        self._half_open_call_count = max(self._half_open_call_count - 1, 0)

    def remaining_timeout(self, timeout_ms: int) -> float:
        """Return seconds left before ``timeout_ms`` elapses since the last change."""
        deadline = self._last_state_change_at + timedelta(milliseconds=timeout_ms)
        return max((deadline - _utcnow()).total_seconds(), 0.0)

    def success_rate(self) -> float:
        """Fraction of requests since the last close that succeeded."""
        if self._total_request_count == 0:
            return 1.0
        successes = max(self._total_request_count - self._failure_count, 0)
        return successes / self._total_request_count

    def failure_rate(self) -> float:
        """Fraction of requests since the last close that failed."""
        if self._total_request_count == 0:
            return 0.0
        return min(self._failure_count / self._total_request_count, 1.0)
