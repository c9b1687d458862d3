"""Storage strategy registry with health-aware selection and fallback."""

from __future__ import annotations

import asyncio
from collections.abc import Awaitable, Iterable, Sequence
from contextlib import suppress

from resilient_storage.logging import (
    LoggerLike,
    get_logger,
    log_error,
    log_info,
    log_warning,
)
from resilient_storage.settings import StorageSettings
from resilient_storage.storage import health as health_mod
from resilient_storage.storage.health import (
    DEFAULT_TREND_WINDOW_SECONDS,
    HealthMetricsTracker,
    StrategyHealthListener,
    probe_all,
    run_health_loop,
)
from resilient_storage.storage.protocol import StorageStrategy
from resilient_storage.storage.types import (
    AggregatedHealthStats,
    FactoryStatus,
    HealthChange,
    HealthMetrics,
    HealthRecord,
    HealthStatus,
    HealthTrend,
    StrategyConfig,
)

_logger = get_logger(__name__)


def _lowest_priority(configs: Iterable[StrategyConfig]) -> StrategyConfig | None:
    return min(configs, key=lambda config: config.priority, default=None)


class StrategyFactory:
    """Select, health-monitor and fail over between storage strategies.

    Strategies are registered once at startup. The health cache is the only
    state that changes afterwards, written by the polling task; every read
    method returns cached data and never waits on a live probe.
    """

    def __init__(
        self,
        *,
        settings: StorageSettings | None = None,
        listeners: Sequence[StrategyHealthListener] | None = None,
        logger: LoggerLike | None = None,
    ) -> None:
        """Initialize an empty registry.

        Args:
            settings: Polling and fallback settings. Defaults to
                ``StorageSettings()`` read from the environment.
            listeners: Optional health change and status listeners.
            logger: Structured or stdlib logger. Defaults to a module logger.
        """
        self._settings = StorageSettings() if settings is None else settings
        self._listeners = tuple(listeners) if listeners is not None else ()
        self._logger = _logger if logger is None else logger
        self._strategies: dict[str, StorageStrategy] = {}
        self._configs: dict[str, StrategyConfig] = {}
        self._health_cache: dict[str, HealthRecord] = {}
        self._metrics = HealthMetricsTracker(self._settings.health_history_size)
        self._stop_event = asyncio.Event()
        self._task: asyncio.Task[None] | None = None

    @property
    def settings(self) -> StorageSettings:
        return self._settings

    @property
    def is_monitoring(self) -> bool:
        return self._task is not None and not self._task.done()

    def register_strategy(self, strategy: StorageStrategy, config: StrategyConfig) -> None:
        """Register a backend with its static configuration.

        Raises:
            ValueError: If a strategy with the same id is already registered.
        """
        if config.id in self._strategies:
            raise ValueError(f"strategy already registered: {config.id}")
        self._strategies[config.id] = strategy
        self._configs[config.id] = config
        log_info(
            self._logger,
            "storage.strategy.registered",
            strategy_id=config.id,
            strategy_name=config.name,
            strategy_type=config.type,
            priority=config.priority,
            enabled=config.enabled,
            allow_fallback=config.allow_fallback,
        )

    def get_strategy(self, strategy_id: str) -> StorageStrategy | None:
        return self._strategies.get(strategy_id)

    def get_strategy_config(self, strategy_id: str) -> StrategyConfig | None:
        return self._configs.get(strategy_id)

    def get_all_strategies(self) -> tuple[StorageStrategy, ...]:
        return tuple(self._strategies.values())

    def get_strategies_by_type(self, strategy_type: str) -> tuple[StorageStrategy, ...]:
        """Return enabled strategies of ``strategy_type`` in priority order."""
        configs = sorted(
            (
                config
                for config in self._configs.values()
                if config.enabled and config.type == strategy_type
            ),
            key=lambda config: config.priority,
        )
        return tuple(self._strategies[config.id] for config in configs)

    def _enabled_configs(self) -> list[StrategyConfig]:
        return [config for config in self._configs.values() if config.enabled]

    def get_primary_config(self) -> StrategyConfig | None:
        """Return the enabled priority-1 config, else the best enabled one."""
        enabled = self._enabled_configs()
        for config in enabled:
            if config.priority == 1:
                return config
        return _lowest_priority(enabled)

    def get_primary_strategy(self) -> StorageStrategy | None:
        config = self.get_primary_config()
        return None if config is None else self._strategies[config.id]

    def select_best_config(self, preferred_type: str | None = None) -> StrategyConfig | None:
        """Pick the best enabled config, preferring cached-healthy strategies.

        When no candidate is healthy the best candidate by priority is still
        returned so callers get degraded service instead of none.
        """
        candidates = self._enabled_configs()
        if preferred_type is not None:
            candidates = [config for config in candidates if config.type == preferred_type]
        if not candidates:
            log_warning(
                self._logger,
                "storage.strategy.none_available",
                preferred_type=preferred_type,
            )
            return None

        healthy = [
            config
            for config in candidates
            if (record := self._health_cache.get(config.id)) is not None
            and record.status == HealthStatus.HEALTHY
        ]
        if healthy:
            return _lowest_priority(healthy)

        selected = _lowest_priority(candidates)
        assert selected is not None
        log_warning(
            self._logger,
            "storage.strategy.degraded_selection",
            strategy_id=selected.id,
            preferred_type=preferred_type,
            candidates=len(candidates),
        )
        return selected

    def select_best_strategy(self, preferred_type: str | None = None) -> StorageStrategy | None:
        config = self.select_best_config(preferred_type)
        return None if config is None else self._strategies[config.id]

    def get_fallback_config(self, failed_id: str) -> StrategyConfig | None:
        """Return the next config in the fallback chain after ``failed_id``.

        Only enabled, fallback-allowed configs with a strictly greater
        priority number than the failed one are considered.
        """
        failed = self._configs.get(failed_id)
        if failed is None or not failed.allow_fallback:
            return None
        if not self._settings.fallback_enabled:
            return None

        fallback = _lowest_priority(
            config
            for config in self._configs.values()
            if config.enabled
            and config.allow_fallback
            and config.id != failed_id
            and config.priority > failed.priority
        )
        if fallback is None:
            log_warning(
                self._logger,
                "storage.strategy.fallback_unavailable",
                failed_strategy_id=failed_id,
            )
            return None
        log_info(
            self._logger,
            "storage.strategy.fallback_selected",
            failed_strategy_id=failed_id,
            strategy_id=fallback.id,
            priority=fallback.priority,
        )
        return fallback

    def get_fallback_strategy(self, failed_id: str) -> StorageStrategy | None:
        config = self.get_fallback_config(failed_id)
        return None if config is None else self._strategies[config.id]

    def get_strategy_health(self, strategy_id: str) -> HealthRecord | None:
        return self._health_cache.get(strategy_id)

    def get_all_strategy_health(self) -> dict[str, HealthRecord]:
        return dict(self._health_cache)

    def get_status(self) -> FactoryStatus:
        """Return an aggregate snapshot of the registry and health cache."""
        counts = dict.fromkeys(HealthStatus, 0)
        for record in self._health_cache.values():
            counts[record.status] += 1
        primary = self.get_primary_config()
        return FactoryStatus(
            total_strategies=len(self._strategies),
            enabled_strategies=len(self._enabled_configs()),
            healthy_strategies=counts[HealthStatus.HEALTHY],
            degraded_strategies=counts[HealthStatus.DEGRADED],
            unhealthy_strategies=counts[HealthStatus.UNHEALTHY],
            primary_strategy_name=None if primary is None else primary.name,
            health_check_interval_ms=self._settings.health_check_interval_ms,
        )

    def get_health_metrics(self, strategy_id: str) -> HealthMetrics | None:
        return self._metrics.get(strategy_id)

    def get_all_health_metrics(self) -> dict[str, HealthMetrics]:
        return self._metrics.all()

    def get_aggregated_health_stats(self) -> AggregatedHealthStats:
        """Summarize the latest probe of every strategy probed so far."""
        return self._metrics.aggregated(now=health_mod._utcnow())

    def get_health_trends(
        self,
        strategy_id: str,
        *,
        window_seconds: float = DEFAULT_TREND_WINDOW_SECONDS,
    ) -> HealthTrend:
        """Return the health trend of one strategy over the last ``window_seconds``."""
        return self._metrics.trend(
            strategy_id, now=health_mod._utcnow(), window_seconds=window_seconds
        )

    async def perform_health_checks(self) -> dict[str, HealthRecord]:
        """Run one probe round over every registered strategy.

        Probe failures are recorded as unhealthy entries; they never abort
        the round.
        """
        records = await probe_all(
            dict(self._strategies),
            timeout_seconds=self._settings.health_check_timeout_seconds,
            max_concurrency=self._settings.max_concurrent_probes,
            now_fn=health_mod._utcnow,
        )

        checked_at = health_mod._utcnow()
        changes: list[HealthChange] = []
        for strategy_id, record in records.items():
            if strategy_id not in self._strategies:
                continue
            previous = self._health_cache.get(strategy_id)
            self._health_cache[strategy_id] = record
            self._metrics.record(
                self._configs[strategy_id], record, checked_at=checked_at
            )
            previous_status = None if previous is None else previous.status
            if previous_status == record.status:
                continue
            changes.append(
                HealthChange(
                    strategy_id=strategy_id,
                    previous_status=previous_status,
                    new_status=record.status,
                    timestamp=record.last_checked,
                    error=record.error,
                )
            )
            log = log_info if record.status == HealthStatus.HEALTHY else log_warning
            log(
                self._logger,
                "storage.strategy.health_changed",
                strategy_id=strategy_id,
                previous_status=None if previous_status is None else str(previous_status),
                new_status=str(record.status),
                error=record.error,
            )

        for change in changes:
            for listener in self._listeners:
                await self._notify("on_health_change", listener.on_health_change(change))
        status = self.get_status()
        for listener in self._listeners:
            await self._notify("on_status", listener.on_status(status))
        return records

    async def _notify(self, hook: str, pending: Awaitable[None]) -> None:
        try:
            await pending
        except Exception as exc:
            log_warning(
                self._logger,
                "storage.listener_failed",
                hook=hook,
                error=f"{exc.__class__.__name__}: {exc}",
            )

    async def _health_loop(self) -> None:
        await run_health_loop(
            poll_once=self.perform_health_checks,
            stop_event=self._stop_event,
            interval_seconds=self._settings.health_check_interval_seconds,
            logger=self._logger,
        )

    async def start_health_monitoring(self) -> None:
        """Start the background health poller if not already running."""
        if self.is_monitoring:
            return
        self._stop_event = asyncio.Event()
        self._task = asyncio.create_task(
            self._health_loop(),
            name="storage-health-monitor",
        )
        log_info(
            self._logger,
            "storage.health_monitor.started",
            interval_ms=self._settings.health_check_interval_ms,
        )

    async def stop_health_monitoring(self) -> None:
        """Stop the health poller and await it. Safe to call repeatedly."""
        self._stop_event.set()
        task = self._task
        if task is None:
            return
        self._task = None
        grace_seconds = self._settings.health_check_timeout_seconds + 5.0
        try:
            await asyncio.wait_for(task, timeout=grace_seconds)
        except TimeoutError:
            task.cancel()
            with suppress(asyncio.CancelledError):
                await task
        except Exception as exc:
            log_error(
                self._logger,
                "storage.health_monitor.failed",
                error=f"{exc.__class__.__name__}: {exc}",
            )
        log_info(self._logger, "storage.health_monitor.stopped")

    async def dispose(self) -> None:
        """Stop monitoring and release every registered strategy."""
        await self.stop_health_monitoring()
        self._strategies.clear()
        self._configs.clear()
        self._health_cache.clear()
        self._metrics.clear()
        log_info(self._logger, "storage.strategy_factory.disposed")
