from __future__ import annotations

import asyncio
import statistics
import time
from collections import deque
from collections.abc import Awaitable, Callable, Mapping
from contextlib import suppress
from dataclasses import dataclass
from datetime import UTC, datetime, timedelta
from typing import Protocol

from resilient_storage.logging import LoggerLike, get_logger, log_exception
from resilient_storage.storage.protocol import StorageStrategy
from resilient_storage.storage.types import (
    AggregatedHealthStats,
    FactoryStatus,
    HealthChange,
    HealthMetrics,
    HealthRecord,
    HealthSample,
    HealthStatus,
    HealthTrend,
    HealthTrendDirection,
    StrategyConfig,
)

REASON_PROBE_TIMEOUT = "health_check_timeout"
REASON_PROBE_FAILED = "health_check_failed"

DEFAULT_HEALTH_HISTORY_SIZE = 100
DEFAULT_TREND_WINDOW_SECONDS = 3600.0
TREND_SLOPE_THRESHOLD = 0.1

_logger = get_logger(__name__)


def _utcnow() -> datetime:
    return datetime.now(UTC)


class StrategyHealthListener(Protocol):
    """Listener for strategy health events emitted by the poller."""

    async def on_health_change(self, change: HealthChange) -> None:
        """Handle a strategy health status transition."""

    async def on_status(self, status: FactoryStatus) -> None:
        """Handle the factory status snapshot taken after each poll round."""


async def probe_strategy_health(
    strategy: StorageStrategy,
    *,
    timeout_seconds: float,
    now_fn: Callable[[], datetime] = _utcnow,
) -> HealthRecord:
    """Probe one strategy, converting every failure into an unhealthy record.

    Exceptions, timeouts, failure results and malformed results never
    escape; cancellation does.
    """
    start = time.monotonic()

    def _unhealthy(error: str) -> HealthRecord:
        elapsed_ms = (time.monotonic() - start) * 1000
        return HealthRecord.unhealthy(
            error, response_time_ms=elapsed_ms, last_checked=now_fn()
        )

    try:
        result = await asyncio.wait_for(strategy.get_health(), timeout=timeout_seconds)
        if result.ok and isinstance(result.value, HealthRecord):
            return result.value
        if result.error is not None:
            return _unhealthy(
                f"{REASON_PROBE_FAILED}: {result.error.__class__.__name__}: {result.error}"
            )
        if result.value is not None:
            return _unhealthy(
                f"{REASON_PROBE_FAILED}: unexpected health value "
                f"{result.value.__class__.__name__}"
            )
    except TimeoutError:
        return _unhealthy(f"{REASON_PROBE_TIMEOUT}: timeout_seconds={timeout_seconds:g}")
    except Exception as exc:
        return _unhealthy(f"{REASON_PROBE_FAILED}: {exc.__class__.__name__}: {exc}")
    return _unhealthy(f"{REASON_PROBE_FAILED}: empty health result")


async def probe_all(
    strategies: Mapping[str, StorageStrategy],
    *,
    timeout_seconds: float,
    max_concurrency: int,
    now_fn: Callable[[], datetime] = _utcnow,
) -> dict[str, HealthRecord]:
    """Probe every strategy concurrently and wait for all probes to settle."""
    semaphore = asyncio.Semaphore(max(max_concurrency, 1))

    async def _bounded(strategy: StorageStrategy) -> HealthRecord:
        async with semaphore:
            return await probe_strategy_health(
                strategy, timeout_seconds=timeout_seconds, now_fn=now_fn
            )

    ids = tuple(strategies)
    records = await asyncio.gather(*(_bounded(strategies[key]) for key in ids))
    return dict(zip(ids, records, strict=True))


async def run_health_loop(
    *,
    poll_once: Callable[[], Awaitable[object]],
    stop_event: asyncio.Event,
    interval_seconds: float,
    logger: LoggerLike | None = None,
) -> None:
    """Run periodic health rounds until shutdown is requested.

    A round that raises is logged and the loop waits for the next interval.
    """
    active_logger = _logger if logger is None else logger
    interval = max(interval_seconds, 0.01)
    while not stop_event.is_set():
        try:
            await poll_once()
        except Exception as exc:
            log_exception(
                active_logger,
                "storage.health_monitor.round_failed",
                error=f"{exc.__class__.__name__}: {exc}",
            )
        with suppress(TimeoutError):
            await asyncio.wait_for(stop_event.wait(), timeout=interval)


def _slope(values: list[float]) -> float:
    if len(values) < 2:
        return 0.0
    return statistics.linear_regression(range(len(values)), values).slope


@dataclass
class _StrategyHistory:
    config: StrategyConfig
    samples: deque[HealthSample]
    last_updated: datetime
    total_checks: int = 0
    successful_checks: int = 0

    def snapshot(self) -> HealthMetrics:
        records = [sample.record for sample in self.samples]
        return HealthMetrics(
            strategy_id=self.config.id,
            strategy_name=self.config.name,
            strategy_type=self.config.type,
            latest=records[-1],
            history=tuple(self.samples),
            total_checks=self.total_checks,
            successful_checks=self.successful_checks,
            average_response_time_ms=statistics.fmean(
                record.response_time_ms for record in records
            ),
            average_success_rate=statistics.fmean(record.success_rate for record in records),
            last_updated=self.last_updated,
        )


class HealthMetricsTracker:
    """Per-strategy probe history with averages, aggregates and trends.

    History is bounded to ``history_size`` samples per strategy; the check
    counters keep counting after old samples are evicted.
    """

    def __init__(self, history_size: int = DEFAULT_HEALTH_HISTORY_SIZE) -> None:
        if history_size < 1:
            raise ValueError("history_size must be >= 1")
        self._history_size = history_size
        self._histories: dict[str, _StrategyHistory] = {}

    def record(
        self, config: StrategyConfig, record: HealthRecord, *, checked_at: datetime
    ) -> HealthMetrics:
        history = self._histories.get(config.id)
        if history is None:
            history = _StrategyHistory(
                config=config,
                samples=deque(maxlen=self._history_size),
                last_updated=checked_at,
            )
            self._histories[config.id] = history
        history.config = config
        history.samples.append(HealthSample(record=record, checked_at=checked_at))
        history.total_checks += 1
        if record.status == HealthStatus.HEALTHY:
            history.successful_checks += 1
        history.last_updated = checked_at
        return history.snapshot()

    def get(self, strategy_id: str) -> HealthMetrics | None:
        history = self._histories.get(strategy_id)
        return None if history is None else history.snapshot()

    def all(self) -> dict[str, HealthMetrics]:
        return {key: history.snapshot() for key, history in self._histories.items()}

    def aggregated(self, *, now: datetime) -> AggregatedHealthStats:
        """Summarize the latest record of every tracked strategy.

        With nothing tracked, counts, averages and capacities are zero.
        """
        latest = [history.samples[-1].record for history in self._histories.values()]
        counts = dict.fromkeys(HealthStatus, 0)
        for record in latest:
            counts[record.status] += 1
        return AggregatedHealthStats(
            total_strategies=len(latest),
            healthy_strategies=counts[HealthStatus.HEALTHY],
            degraded_strategies=counts[HealthStatus.DEGRADED],
            unhealthy_strategies=counts[HealthStatus.UNHEALTHY],
            average_response_time_ms=(
                statistics.fmean(record.response_time_ms for record in latest)
                if latest
                else 0.0
            ),
            average_success_rate=(
                statistics.fmean(record.success_rate for record in latest) if latest else 0.0
            ),
            total_capacity=sum(record.total_capacity for record in latest),
            available_capacity=sum(record.available_capacity for record in latest),
            last_updated=now,
        )

    def trend(
        self,
        strategy_id: str,
        *,
        now: datetime,
        window_seconds: float = DEFAULT_TREND_WINDOW_SECONDS,
    ) -> HealthTrend:
        """Classify recent health by the slopes of response time and success rate.

        Rising response time or falling success rate beyond the threshold is
        degrading; improving needs both to move the right way.
        """
        history = self._histories.get(strategy_id)
        if history is None:
            return HealthTrend(strategy_id, HealthTrendDirection.UNKNOWN, 0.0, ())

        cutoff = now - timedelta(seconds=window_seconds)
        recent = tuple(sample for sample in history.samples if sample.checked_at > cutoff)
        if len(recent) < 2:
            return HealthTrend(
                strategy_id, HealthTrendDirection.INSUFFICIENT_DATA, 0.0, recent
            )

        response_slope = _slope([sample.record.response_time_ms for sample in recent])
        success_slope = _slope([sample.record.success_rate for sample in recent])
        direction = HealthTrendDirection.STABLE
        if response_slope < -TREND_SLOPE_THRESHOLD and success_slope > TREND_SLOPE_THRESHOLD:
            direction = HealthTrendDirection.IMPROVING
        elif response_slope > TREND_SLOPE_THRESHOLD or success_slope < -TREND_SLOPE_THRESHOLD:
            direction = HealthTrendDirection.DEGRADING
        return HealthTrend(
            strategy_id, direction, (response_slope + success_slope) / 2, recent
        )

    def clear(self) -> None:
        self._histories.clear()
