"""Shared storage types: results, file records, health and strategy config."""

from __future__ import annotations

from collections.abc import Mapping
from dataclasses import dataclass, field
from datetime import datetime
from enum import StrEnum
from types import MappingProxyType
from typing import Generic, TypeVar

T = TypeVar("T")


class HealthStatus(StrEnum):
    """Health status values reported by storage backends."""

    HEALTHY = "healthy"
    DEGRADED = "degraded"
    UNHEALTHY = "unhealthy"


@dataclass(frozen=True)
class StorageResult(Generic[T]):
    """Outcome of one storage capability call.

    Attributes:
        ok: Whether the call succeeded.
        value: Call result when ``ok``.
        error: Failure cause when not ``ok``.
    """

    ok: bool
    value: T | None = None
    error: Exception | None = None

    @classmethod
    def success(cls, value: T) -> StorageResult[T]:
        return cls(ok=True, value=value)

    @classmethod
    def failure(cls, error: Exception) -> StorageResult[T]:
        return cls(ok=False, error=error)

    def unwrap(self) -> T:
        """Return ``value`` or raise ``error`` for a failed result."""
        if not self.ok:
            if self.error is not None:
                raise self.error
            raise RuntimeError("storage call failed without an error")
        return self.value  # type: ignore[return-value]


@dataclass(frozen=True)
class StoredFile:
    """File content and metadata to be written to a backend."""

    path: str
    content: bytes
    mime_type: str = "application/octet-stream"
    metadata: Mapping[str, object] = field(default_factory=dict)

    def __post_init__(self) -> None:
        object.__setattr__(self, "metadata", MappingProxyType(dict(self.metadata)))

    @property
    def size(self) -> int:
        return len(self.content)


@dataclass(frozen=True)
class FileRef:
    """Reference to a file held by a backend."""

    path: str
    size: int = 0
    mime_type: str | None = None
    checksum: str | None = None
    modified_at: datetime | None = None


@dataclass(frozen=True)
class HealthRecord:
    """Point-in-time health of one storage backend.

    Attributes:
        status: Overall backend status.
        response_time_ms: Probe round-trip time in milliseconds.
        success_rate: Fraction of recent operations that succeeded.
        available_capacity: Free capacity in bytes.
        total_capacity: Total capacity in bytes.
        last_checked: When the probe completed.
        error: Failure detail when the backend is not healthy.
    """

    status: HealthStatus
    response_time_ms: float
    success_rate: float
    available_capacity: int
    total_capacity: int
    last_checked: datetime
    error: str | None = None

    def __post_init__(self) -> None:
        if not 0.0 <= self.success_rate <= 1.0:
            raise ValueError("success_rate must be between 0 and 1")
        if self.response_time_ms < 0:
            raise ValueError("response_time_ms must be >= 0")

    @classmethod
    def unhealthy(
        cls, error: str, *, response_time_ms: float, last_checked: datetime
    ) -> HealthRecord:
        """Build the record used when a probe fails."""
        return cls(
            status=HealthStatus.UNHEALTHY,
            response_time_ms=max(response_time_ms, 0.0),
            success_rate=0.0,
            available_capacity=0,
            total_capacity=0,
            last_checked=last_checked,
            error=error,
        )


@dataclass(frozen=True)
class StrategyConfig:
    """Static configuration for one registered storage backend.

    Attributes:
        id: Unique strategy identifier.
        name: Display name.
        type: Backend kind, for example ``"local"``, ``"s3"`` or ``"azure"``.
        priority: Selection order; lower numbers are preferred.
        enabled: Disabled strategies are never selected.
        allow_fallback: Whether this strategy takes part in fallback chains.
    """

    id: str
    name: str
    type: str
    priority: int
    enabled: bool = True
    allow_fallback: bool = True

    def __post_init__(self) -> None:
        if not self.id:
            raise ValueError("id must be non-empty")
        if self.priority < 1:
            raise ValueError("priority must be >= 1")


@dataclass(frozen=True)
class HealthChange:
    """Health status transition observed for one strategy."""

    strategy_id: str
    previous_status: HealthStatus | None
    new_status: HealthStatus
    timestamp: datetime
    error: str | None = None


@dataclass(frozen=True)
class FactoryStatus:
    """Aggregate snapshot of a strategy factory."""

    total_strategies: int
    enabled_strategies: int
    healthy_strategies: int
    degraded_strategies: int
    unhealthy_strategies: int
    primary_strategy_name: str | None
    health_check_interval_ms: int


class HealthTrendDirection(StrEnum):
    """Direction of a strategy's recent health, from a regression over samples."""

    IMPROVING = "improving"
    STABLE = "stable"
    DEGRADING = "degrading"
    INSUFFICIENT_DATA = "insufficient_data"
    UNKNOWN = "unknown"


@dataclass(frozen=True)
class HealthSample:
    """One probe outcome and the time the poller recorded it."""

    record: HealthRecord
    checked_at: datetime


@dataclass(frozen=True)
class HealthMetrics:
    """Probe history and running statistics for one strategy.

    Attributes:
        latest: Most recent probe record.
        history: Bounded probe history, oldest first.
        total_checks: Probes recorded since tracking started.
        successful_checks: Probes that reported ``healthy``.
        average_response_time_ms: Mean response time over ``history``.
        average_success_rate: Mean success rate over ``history``.
        last_updated: When the latest probe was recorded.
    """

    strategy_id: str
    strategy_name: str
    strategy_type: str
    latest: HealthRecord
    history: tuple[HealthSample, ...]
    total_checks: int
    successful_checks: int
    average_response_time_ms: float
    average_success_rate: float
    last_updated: datetime


@dataclass(frozen=True)
class AggregatedHealthStats:
    """Latest health summed or averaged over every tracked strategy."""

    total_strategies: int
    healthy_strategies: int
    degraded_strategies: int
    unhealthy_strategies: int
    average_response_time_ms: float
    average_success_rate: float
    total_capacity: int
    available_capacity: int
    last_updated: datetime


@dataclass(frozen=True)
class HealthTrend:
    """Health direction of one strategy over a time window.

    ``change_rate`` is the mean of the per-sample regression slopes of
    response time and success rate.
    """

    strategy_id: str
    trend: HealthTrendDirection
    change_rate: float
    data_points: tuple[HealthSample, ...]
