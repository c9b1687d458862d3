"""Tenacity builders for retrying transient storage failures."""

from __future__ import annotations

import asyncio
from collections.abc import Awaitable, Callable
from contextlib import suppress
from dataclasses import dataclass
from typing import Any

from tenacity import (
    AsyncRetrying,
    RetryCallState,
    stop_after_attempt,
    stop_never,
    wait_exponential_jitter,
)
from tenacity.retry import retry_base
from tenacity.stop import stop_base
from tenacity.wait import wait_base

from resilient_storage.settings import StorageSettings

Sleeper = Callable[[float], Awaitable[None]]


@dataclass(frozen=True)
class RetryBackoffPolicy:
    """How many attempts to make and how long to back off between them.

    ``attempts=None`` retries until the call stops failing.
    """

    attempts: int | None
    min_seconds: float
    max_seconds: float

    def __post_init__(self) -> None:
        if self.attempts is not None and self.attempts < 1:
            raise ValueError("attempts must be >= 1 when provided")
        for field_name in ("min_seconds", "max_seconds"):
            if getattr(self, field_name) < 0:
                raise ValueError(f"{field_name} must be >= 0")
        if self.min_seconds > self.max_seconds:
            raise ValueError("max_seconds must be >= min_seconds")

    @classmethod
    def from_settings(cls, settings: StorageSettings) -> RetryBackoffPolicy:
        """Build a storage retry policy from ``STORAGE_RETRY_*`` settings."""
        return cls(
            attempts=settings.retry_attempts,
            min_seconds=settings.retry_min_seconds,
            max_seconds=settings.retry_max_seconds,
        )

    def stop_strategy(self) -> stop_base:
        if self.attempts is None:
            return stop_never
        return stop_after_attempt(self.attempts)

    def wait_strategy(self) -> wait_base:
        return wait_exponential_jitter(initial=self.min_seconds, max=self.max_seconds)


def build_interruptible_sleep(stop_event: asyncio.Event) -> Sleeper:
    """Return a sleep for tenacity that wakes early once ``stop_event`` is set."""

    async def _sleep(delay: float) -> None:
        if stop_event.is_set():
            return
        with suppress(TimeoutError):
            await asyncio.wait_for(stop_event.wait(), timeout=max(delay, 0.0))

    return _sleep


def build_exponential_jitter_retrying(
    *,
    retry: retry_base,
    policy: RetryBackoffPolicy,
    sleep: Sleeper | None = None,
    before_sleep: Callable[[RetryCallState], None] | None = None,
    retry_error_callback: Callable[[RetryCallState], Any] | None = None,
    reraise: bool = True,
) -> AsyncRetrying:
    """Build an ``AsyncRetrying`` with exponential jitter backoff.

    ``retry_error_callback`` decides the return value once attempts are
    exhausted; result-based retries need it to hand back the last result
    instead of raising ``RetryError``.
    """
    hooks: dict[str, Any] = {
        "sleep": sleep,
        "before_sleep": before_sleep,
        "retry_error_callback": retry_error_callback,
    }
    return AsyncRetrying(
        retry=retry,
        stop=policy.stop_strategy(),
        wait=policy.wait_strategy(),
        reraise=reraise,
        **{name: hook for name, hook in hooks.items() if hook is not None},
    )


def last_attempt_result(retry_state: RetryCallState) -> Any:
    """Return the final attempt's outcome once retries are exhausted."""
    outcome = retry_state.outcome
    if outcome is None:
        raise RuntimeError("retry state has no outcome")
    return outcome.result()
