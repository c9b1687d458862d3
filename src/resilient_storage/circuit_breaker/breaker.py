"""Core circuit breaker implementation."""

from __future__ import annotations

import threading
import time
from collections.abc import Awaitable, Callable, Mapping, Sequence
from dataclasses import dataclass, field, replace
from functools import partial
from typing import ParamSpec, Protocol, TypeVar

from resilient_storage.circuit_breaker.config import CircuitBreakerConfig
from resilient_storage.circuit_breaker.exceptions import (
    CircuitBreakerError,
    CircuitOpenError,
    HalfOpenLimitError,
)
from resilient_storage.circuit_breaker.metrics import BreakerListener, BreakerMetrics
from resilient_storage.circuit_breaker.state import (
    BreakerSnapshot,
    CircuitState,
    StateManager,
    StateTransition,
)
from resilient_storage.logging import LoggerLike, get_logger, log_info, log_warning

T = TypeVar("T")
P = ParamSpec("P")
R = TypeVar("R", bound="_OutcomeLike")

REASON_FAILURE_THRESHOLD = "failure threshold reached"
REASON_TIMEOUT_ELAPSED = "timeout elapsed, attempting recovery"
REASON_SUCCESS_THRESHOLD = "success threshold reached"
REASON_HALF_OPEN_FAILURE = "half-open trial failed"

_logger = get_logger(__name__)


class _OutcomeLike(Protocol):
    """Result object surface needed by ``execute_with_result``."""

    @property
    def ok(self) -> bool:
        """Return whether the operation succeeded."""


class _FailureResultError(RuntimeError):
    """Stand-in exception for listeners when a failure result has no error."""


@dataclass(frozen=True)
class ExecuteOptions:
    """Per-call context for a protected operation.

    Attributes:
        operation_name: Label used in logs and listener events.
        metadata: Extra context attached to transitions and rejection errors.
    """

    operation_name: str | None = None
    metadata: Mapping[str, object] = field(default_factory=dict)


_DEFAULT_OPTIONS = ExecuteOptions()


@dataclass(frozen=True)
class _Admission:
    half_open_epoch: int | None


class CircuitBreaker:
    """Stateful proxy around a dangerous async operation."""

    def __init__(
        self,
        name: str | None = None,
        *,
        config: CircuitBreakerConfig | None = None,
        listeners: Sequence[BreakerListener] | None = None,
        logger: LoggerLike | None = None,
    ) -> None:
        """Build a circuit breaker with optional custom dependencies.

        Args:
            name: Breaker name. Defaults to ``config.name``; when given it
                overrides the name in ``config``.
            config: Breaker behavior configuration. Defaults to
                ``CircuitBreakerConfig()``.
            listeners: Optional listener hooks for breaker events.
            logger: Structured or stdlib logger. Defaults to a module logger.
        """
        resolved = CircuitBreakerConfig() if config is None else config
        if name is not None and name != resolved.name:
            resolved = replace(resolved, name=name)
        self._config = resolved
        self._listeners = tuple(listeners) if listeners is not None else ()
        self._logger = _logger if logger is None else logger
        self._state = StateManager(resolved.max_history_size)
        self._lock = threading.Lock()

    @property
    def name(self) -> str:
        return self._config.name

    @property
    def config(self) -> CircuitBreakerConfig:
        return self._config

    @property
    def is_enabled(self) -> bool:
        return self._config.enabled

    def reload_config(self, config: CircuitBreakerConfig) -> None:
        """Replace the whole configuration record, keeping the breaker name."""
        if config.name != self.name:
            config = replace(config, name=self.name)
        with self._lock:
            self._config = config
            self._state.resize_history(config.max_history_size)
        log_info(self._logger, "circuit_breaker.config.reloaded", **config.summary())

    async def call(
        self,
        func: Callable[P, Awaitable[T]],
        *args: P.args,
        **kwargs: P.kwargs,
    ) -> T:
        """Invoke an async callable with arguments under breaker protection."""
        return await self.execute(partial(func, *args, **kwargs))

    async def execute(
        self,
        operation: Callable[[], Awaitable[T]],
        *,
        options: ExecuteOptions | None = None,
    ) -> T:
        """Run ``operation`` under circuit breaker protection.

        Args:
            operation: Zero-argument async callable to protect.
            options: Optional operation name and metadata.

        Returns:
            The result of ``operation`` when admitted and successful.

        Raises:
            CircuitOpenError: The circuit is open and the call was rejected.
            HalfOpenLimitError: The half-open trial limit is in use.
            Exception: The original exception from ``operation``, unchanged.
        """
        if not self._config.enabled:
            return await operation()

        opts = _DEFAULT_OPTIONS if options is None else options
        admission = await self._admit(opts)
        start = time.monotonic()
        try:
            result = await operation()
        except Exception as exc:
            await self._record_failure(opts, exc, _elapsed_since(start))
            raise
        else:
            await self._record_success(_elapsed_since(start))
            return result
        finally:
            self._release(admission)

    async def execute_with_result(
        self,
        operation: Callable[[], Awaitable[R]],
        *,
        options: ExecuteOptions | None = None,
    ) -> R:
        """Run an operation that reports failure through its result.

        A result with ``ok`` false is recorded as a failure and returned
        as-is. An exception raised by ``operation`` is recorded as a failure
        and re-raised.
        """
        if not self._config.enabled:
            return await operation()

        opts = _DEFAULT_OPTIONS if options is None else options
        admission = await self._admit(opts)
        start = time.monotonic()
        try:
            result = await operation()
        except Exception as exc:
            await self._record_failure(opts, exc, _elapsed_since(start))
            raise
        else:
            elapsed = _elapsed_since(start)
            if result.ok:
                await self._record_success(elapsed)
            else:
                await self._record_failure(opts, _failure_of(result, opts), elapsed)
            return result
        finally:
            self._release(admission)

    async def _admit(self, options: ExecuteOptions) -> _Admission:
        transition: StateTransition | None = None
        rejection: CircuitBreakerError | None = None
        admission = _Admission(half_open_epoch=None)
        config = self._config

        with self._lock:
            if self._state.state == CircuitState.OPEN:
                retry_after = self._state.remaining_timeout(config.timeout_ms)
                if retry_after > 0:
                    rejection = CircuitOpenError(
                        self.name, retry_after=retry_after, metadata=options.metadata
                    )
                else:
                    transition = self._state.transition_to(
                        CircuitState.HALF_OPEN, REASON_TIMEOUT_ELAPSED, options.metadata
                    )
            if rejection is None and self._state.state == CircuitState.HALF_OPEN:
                if self._state.try_acquire_half_open(config.half_open_max_calls):
                    admission = _Admission(half_open_epoch=self._state.half_open_epoch)
                else:
                    rejection = HalfOpenLimitError(
                        self.name,
                        max_calls=config.half_open_max_calls,
                        metadata=options.metadata,
                    )

        # The caller's finally only covers the slot once admission returns.
        try:
            if transition is not None:
                await self._emit_state_change(transition)
            if rejection is not None:
                await self._emit_call_rejected(rejection)
        except BaseException:
            self._release(admission)
            raise
        if rejection is not None:
            raise rejection
        return admission

    def _release(self, admission: _Admission) -> None:
        if admission.half_open_epoch is None:
            return
        with self._lock:
            self._state.release_half_open(admission.half_open_epoch)

    async def _record_success(self, elapsed: float) -> None:
        transition: StateTransition | None = None
        with self._lock:
            self._state.record_success()
            snapshot = self._state.snapshot()
            if (
                snapshot.state == CircuitState.HALF_OPEN
                and snapshot.consecutive_success_count >= self._config.success_threshold
            ):
                transition = self._state.transition_to(
                    CircuitState.CLOSED,
                    REASON_SUCCESS_THRESHOLD,
                    {"consecutive_success_count": snapshot.consecutive_success_count},
                )

        await self._emit_call_succeeded(elapsed)
        if transition is not None:
            await self._emit_state_change(transition)

    async def _record_failure(
        self, options: ExecuteOptions, exc: Exception, elapsed: float
    ) -> None:
        transition: StateTransition | None = None
        with self._lock:
            self._state.record_failure()
            snapshot = self._state.snapshot()
            metadata = {**options.metadata, "failure_count": snapshot.failure_count}
            if (
                snapshot.state == CircuitState.CLOSED
                and snapshot.failure_count >= self._config.failure_threshold
            ):
                transition = self._state.transition_to(
                    CircuitState.OPEN, REASON_FAILURE_THRESHOLD, metadata
                )
            elif snapshot.state == CircuitState.HALF_OPEN:
                transition = self._state.transition_to(
                    CircuitState.OPEN, REASON_HALF_OPEN_FAILURE, metadata
                )

        await self._emit_call_failed(exc, elapsed)
        if transition is not None:
            await self._emit_state_change(transition)

    async def force_open(
        self,
        reason: str = "manually forced open",
        metadata: Mapping[str, object] | None = None,
    ) -> None:
        """Open the circuit regardless of thresholds."""
        with self._lock:
            transition = self._state.transition_to(CircuitState.OPEN, reason, metadata)
        if transition is not None:
            await self._emit_state_change(transition)

    async def force_close(
        self,
        reason: str = "manually forced closed",
        metadata: Mapping[str, object] | None = None,
    ) -> None:
        """Close the circuit regardless of thresholds and clear failure state."""
        with self._lock:
            transition = self._state.transition_to(CircuitState.CLOSED, reason, metadata)
            self._state.reset_failure_count()
        if transition is not None:
            await self._emit_state_change(transition)

    async def reset(
        self,
        reason: str = "reset to initial state",
        metadata: Mapping[str, object] | None = None,
    ) -> None:
        """Close the circuit and zero every counter."""
        with self._lock:
            transition = self._state.transition_to(CircuitState.CLOSED, reason, metadata)
            self._state.reset_counters()
        if transition is not None:
            await self._emit_state_change(transition)

    def get_state(self) -> BreakerSnapshot:
        with self._lock:
            return self._state.snapshot()

    def get_state_history(self) -> tuple[StateTransition, ...]:
        """Return the bounded transition history, oldest first."""
        with self._lock:
            return self._state.history()

    def get_metrics(self) -> BreakerMetrics:
        with self._lock:
            snapshot = self._state.snapshot()
            success_rate = self._state.success_rate()
            failure_rate = self._state.failure_rate()
            config = self._config
        return BreakerMetrics(
            name=config.name,
            current_state=snapshot.state,
            failure_count=snapshot.failure_count,
            total_request_count=snapshot.total_request_count,
            success_rate=success_rate,
            failure_rate=failure_rate,
            last_failure_at=snapshot.last_failure_at,
            last_state_change_at=snapshot.last_state_change_at,
            consecutive_success_count=snapshot.consecutive_success_count,
            enabled=config.enabled,
            config=config,
        )

    async def _emit_state_change(self, transition: StateTransition) -> None:
        log = log_warning if transition.to_state == CircuitState.OPEN else log_info
        log(
            self._logger,
            "circuit_breaker.state_changed",
            breaker=self.name,
            from_state=str(transition.from_state),
            to_state=str(transition.to_state),
            reason=transition.reason,
        )
        for listener in self._listeners:
            await self._notify(
                "on_state_change", listener.on_state_change(self.name, transition)
            )

    async def _emit_call_rejected(self, error: CircuitBreakerError) -> None:
        if not self._config.metrics_enabled:
            return
        for listener in self._listeners:
            await self._notify(
                "on_call_rejected", listener.on_call_rejected(self.name, error)
            )

    async def _emit_call_succeeded(self, elapsed: float) -> None:
        if not self._config.metrics_enabled:
            return
        for listener in self._listeners:
            await self._notify(
                "on_call_succeeded", listener.on_call_succeeded(self.name, elapsed)
            )

    async def _emit_call_failed(self, exc: Exception, elapsed: float) -> None:
        if not self._config.metrics_enabled:
            return
        for listener in self._listeners:
            await self._notify(
                "on_call_failed", listener.on_call_failed(self.name, exc, elapsed)
            )

    async def _notify(self, hook: str, pending: Awaitable[None]) -> None:
        try:
            await pending
        except Exception as exc:
            log_warning(
                self._logger,
                "circuit_breaker.listener_failed",
                breaker=self.name,
                hook=hook,
                error=f"{exc.__class__.__name__}: {exc}",
            )


def _elapsed_since(start: float) -> float:
    return max(time.monotonic() - start, 0.0)


def _failure_of(result: _OutcomeLike, options: ExecuteOptions) -> Exception:
    error = getattr(result, "error", None)
    if isinstance(error, Exception):
        return error
    label = options.operation_name or "operation"
    return _FailureResultError(f"{label} returned a failure result")
