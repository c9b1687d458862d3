"""Storage strategy selection, health monitoring and failover.

Key behavior notes:
  - Selection prefers enabled strategies whose cached health is ``healthy``,
    lowest priority number first. With none healthy the best enabled strategy
    is still returned and a degraded selection is logged.
  - Fallback only considers enabled, fallback-allowed strategies with a
    strictly greater priority number than the failed one.
  - Health is probed by a background task; reads never block on a probe.
    A probe that fails in any way is cached as ``unhealthy`` and never stops
    the round or the polling task.
  - Every probe also feeds a bounded per-strategy history used for
    averages, aggregated stats and trends.
"""

from resilient_storage.storage.factory import StrategyFactory
from resilient_storage.storage.health import (
    HealthMetricsTracker,
    StrategyHealthListener,
    probe_all,
    probe_strategy_health,
    run_health_loop,
)
from resilient_storage.storage.protocol import StorageStrategy
from resilient_storage.storage.resilient import ResilientStorage, StorageFailover
from resilient_storage.storage.types import (
    AggregatedHealthStats,
    FactoryStatus,
    FileRef,
    HealthChange,
    HealthMetrics,
    HealthRecord,
    HealthSample,
    HealthStatus,
    HealthTrend,
    HealthTrendDirection,
    StorageResult,
    StoredFile,
    StrategyConfig,
)

__all__ = [
    "AggregatedHealthStats",
    "FactoryStatus",
    "FileRef",
    "HealthChange",
    "HealthMetrics",
    "HealthMetricsTracker",
    "HealthRecord",
    "HealthSample",
    "HealthStatus",
    "HealthTrend",
    "HealthTrendDirection",
    "ResilientStorage",
    "StorageFailover",
    "StorageResult",
    "StorageStrategy",
    "StoredFile",
    "StrategyConfig",
    "StrategyFactory",
    "StrategyHealthListener",
    "probe_all",
    "probe_strategy_health",
    "run_health_loop",
]
