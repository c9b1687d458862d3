"""Breaker-protected storage access with transient retry and failover."""

from __future__ import annotations

import asyncio
from collections.abc import Awaitable, Callable, Sequence
from dataclasses import replace
from typing import TypeVar

from tenacity import RetryCallState, retry_if_result

from resilient_storage.circuit_breaker import (
    BreakerListener,
    CircuitBreaker,
    CircuitBreakerConfig,
    CircuitBreakerError,
    ExecuteOptions,
    load_circuit_breaker_config,
)
from resilient_storage.errors import NoStrategyAvailableError, TransientStorageError
from resilient_storage.logging import (
    LoggerLike,
    get_logger,
    log_info,
    log_warning,
    storage_log_context,
)
from resilient_storage.retry import (
    RetryBackoffPolicy,
    build_exponential_jitter_retrying,
    build_interruptible_sleep,
    last_attempt_result,
)
from resilient_storage.storage.factory import StrategyFactory
from resilient_storage.storage.protocol import StorageStrategy
from resilient_storage.storage.types import (
    FileRef,
    HealthRecord,
    StorageResult,
    StoredFile,
)

T = TypeVar("T")

DEFAULT_RETRY_POLICY = RetryBackoffPolicy(attempts=3, min_seconds=0.1, max_seconds=2.0)

_logger = get_logger(__name__)


def _is_transient_failure(result: StorageResult[object]) -> bool:
    return not result.ok and isinstance(result.error, TransientStorageError)


def _describe(error: Exception | None) -> str | None:
    if error is None:
        return None
    return f"{error.__class__.__name__}: {error}"


class ResilientStorage:
    """A ``StorageStrategy`` that runs one backend behind a circuit breaker.

    Transient failure results are retried with exponential jitter backoff
    inside a single breaker call, so the breaker sees one outcome per
    operation. Breaker rejections are returned as failure results.
    When a ``stop_event`` is given, backoff sleeps end as soon as it is set
    so shutdown is not held up by a retry delay.
    """

    def __init__(
        self,
        strategy: StorageStrategy,
        breaker: CircuitBreaker,
        *,
        retry_policy: RetryBackoffPolicy | None = None,
        stop_event: asyncio.Event | None = None,
        logger: LoggerLike | None = None,
    ) -> None:
        self._strategy = strategy
        self._stop_event = stop_event
        self._breaker = breaker
        self._policy = DEFAULT_RETRY_POLICY if retry_policy is None else retry_policy
        self._logger = _logger if logger is None else logger

    @property
    def strategy(self) -> StorageStrategy:
        return self._strategy

    @property
    def breaker(self) -> CircuitBreaker:
        return self._breaker

    async def _protected(
        self,
        operation: str,
        call: Callable[[], Awaitable[StorageResult[T]]],
        **metadata: object,
    ) -> StorageResult[T]:
        options = ExecuteOptions(
            operation_name=f"storage.{operation}",
            metadata={"strategy": self._breaker.name, "operation": operation, **metadata},
        )
        try:
            return await self._breaker.execute_with_result(
                lambda: self._with_retry(operation, call), options=options
            )
        except CircuitBreakerError as exc:
            log_warning(
                self._logger,
                "storage.call_rejected",
                strategy=self._breaker.name,
                operation=operation,
                error=str(exc),
            )
            return StorageResult.failure(exc)

    async def _with_retry(
        self,
        operation: str,
        call: Callable[[], Awaitable[StorageResult[T]]],
    ) -> StorageResult[T]:
        def _log_retry(retry_state: RetryCallState) -> None:
            outcome = retry_state.outcome
            error = None
            if outcome is not None and not outcome.failed:
                error = _describe(outcome.result().error)
            next_action = retry_state.next_action
            log_warning(
                self._logger,
                "storage.retrying",
                strategy=self._breaker.name,
                operation=operation,
                attempt=retry_state.attempt_number,
                delay_seconds=None if next_action is None else next_action.sleep,
                error=error,
            )

        sleep = None
        if self._stop_event is not None:
            sleep = build_interruptible_sleep(self._stop_event)
        retrying = build_exponential_jitter_retrying(
            retry=retry_if_result(_is_transient_failure),
            policy=self._policy,
            sleep=sleep,
            before_sleep=_log_retry,
            retry_error_callback=last_attempt_result,
        )
        return await retrying(call)

    async def upload(self, file: StoredFile) -> StorageResult[FileRef]:
        return await self._protected(
            "upload", lambda: self._strategy.upload(file), path=file.path
        )

    async def download(self, path: str) -> StorageResult[bytes]:
        return await self._protected(
            "download", lambda: self._strategy.download(path), path=path
        )

    async def delete(self, path: str) -> StorageResult[None]:
        return await self._protected("delete", lambda: self._strategy.delete(path), path=path)

    async def exists(self, path: str) -> StorageResult[bool]:
        return await self._protected("exists", lambda: self._strategy.exists(path), path=path)

    async def list_files(
        self, prefix: str | None = None
    ) -> StorageResult[tuple[FileRef, ...]]:
        return await self._protected(
            "list_files", lambda: self._strategy.list_files(prefix), prefix=prefix
        )

    async def copy_file(self, source: str, destination: str) -> StorageResult[None]:
        return await self._protected(
            "copy_file",
            lambda: self._strategy.copy_file(source, destination),
            source=source,
            destination=destination,
        )

    async def move_file(self, source: str, destination: str) -> StorageResult[None]:
        return await self._protected(
            "move_file",
            lambda: self._strategy.move_file(source, destination),
            source=source,
            destination=destination,
        )

    async def create_directory(self, path: str) -> StorageResult[None]:
        return await self._protected(
            "create_directory", lambda: self._strategy.create_directory(path), path=path
        )

    async def get_health(self) -> StorageResult[HealthRecord]:
        return await self._strategy.get_health()


class StorageFailover:
    """Run storage operations against the best strategy, falling back on failure.

    One ``CircuitBreaker`` is kept per strategy id and named after it. A
    failed attempt, whether a failure result, a raised exception or a breaker
    rejection, moves to the factory's fallback for that strategy until an
    attempt succeeds or the chain runs out.
    """

    def __init__(
        self,
        factory: StrategyFactory,
        *,
        breaker_config: CircuitBreakerConfig | None = None,
        listeners: Sequence[BreakerListener] | None = None,
        retry_policy: RetryBackoffPolicy | None = None,
        stop_event: asyncio.Event | None = None,
        logger: LoggerLike | None = None,
    ) -> None:
        """Wrap ``factory`` with per-strategy breakers.

        Args:
            factory: Registry used for selection and fallback.
            breaker_config: Template for every breaker; each copy is renamed
                to its strategy id. Defaults to the ``CIRCUIT_BREAKER_*``
                environment configuration.
            listeners: Breaker listeners attached to every breaker.
            retry_policy: Transient retry policy. Defaults to the factory's
                ``STORAGE_RETRY_*`` settings.
            stop_event: When set, cuts retry backoff sleeps short on every
                wrapped strategy.
            logger: Structured or stdlib logger. Defaults to a module logger.
        """
        self._factory = factory
        self._logger = _logger if logger is None else logger
        self._breaker_config = (
            load_circuit_breaker_config(logger=self._logger)
            if breaker_config is None
            else breaker_config
        )
        self._listeners = tuple(listeners) if listeners is not None else ()
        self._retry_policy = (
            RetryBackoffPolicy.from_settings(factory.settings)
            if retry_policy is None
            else retry_policy
        )
        self._stop_event = stop_event
        self._storages: dict[str, ResilientStorage] = {}

    @property
    def factory(self) -> StrategyFactory:
        return self._factory

    def storage_for(self, strategy_id: str) -> ResilientStorage:
        """Return the breaker-protected wrapper for a registered strategy.

        A wrapper is rebuilt, with a fresh breaker, when the factory no longer
        holds the instance it wraps, for example after ``dispose`` and
        re-registration under the same id.

        Raises:
            KeyError: If ``strategy_id`` is not registered with the factory.
        """
        strategy = self._factory.get_strategy(strategy_id)
        if strategy is None:
            self._storages.pop(strategy_id, None)
            raise KeyError(f"unknown storage strategy: {strategy_id}")
        storage = self._storages.get(strategy_id)
        if storage is not None and storage.strategy is strategy:
            return storage
        breaker = CircuitBreaker(
            config=replace(self._breaker_config, name=strategy_id),
            listeners=self._listeners,
            logger=self._logger,
        )
        storage = ResilientStorage(
            strategy,
            breaker,
            retry_policy=self._retry_policy,
            stop_event=self._stop_event,
            logger=self._logger,
        )
        self._storages[strategy_id] = storage
        return storage

    def breaker_for(self, strategy_id: str) -> CircuitBreaker:
        return self.storage_for(strategy_id).breaker

    async def run(
        self,
        operation_name: str,
        call: Callable[[StorageStrategy], Awaitable[StorageResult[T]]],
        *,
        preferred_type: str | None = None,
    ) -> StorageResult[T]:
        """Run ``call`` against the best strategy and its fallback chain.

        Returns the first successful result, the last failure when every
        candidate failed, or a ``NoStrategyAvailableError`` failure when no
        strategy is selectable.
        """
        config = self._factory.select_best_config(preferred_type)
        if config is None:
            return StorageResult.failure(NoStrategyAvailableError(preferred_type))

        attempted: set[str] = set()
        result: StorageResult[T] = StorageResult.failure(
            NoStrategyAvailableError(preferred_type)
        )
        while config is not None and config.id not in attempted:
            attempted.add(config.id)
            try:
                with storage_log_context(
                    storage_operation=operation_name, storage_strategy=config.id
                ):
                    result = await call(self.storage_for(config.id))
            except Exception as exc:
                result = StorageResult.failure(exc)
            if result.ok:
                if len(attempted) > 1:
                    log_info(
                        self._logger,
                        "storage.failover.recovered",
                        operation=operation_name,
                        strategy_id=config.id,
                        attempts=len(attempted),
                    )
                return result
            log_warning(
                self._logger,
                "storage.failover.attempt_failed",
                operation=operation_name,
                strategy_id=config.id,
                error=_describe(result.error),
            )
            config = self._factory.get_fallback_config(config.id)
        return result

    async def upload(
        self, file: StoredFile, *, preferred_type: str | None = None
    ) -> StorageResult[FileRef]:
        return await self.run(
            "upload", lambda storage: storage.upload(file), preferred_type=preferred_type
        )

    async def download(
        self, path: str, *, preferred_type: str | None = None
    ) -> StorageResult[bytes]:
        return await self.run(
            "download", lambda storage: storage.download(path), preferred_type=preferred_type
        )

    async def delete(
        self, path: str, *, preferred_type: str | None = None
    ) -> StorageResult[None]:
        return await self.run(
            "delete", lambda storage: storage.delete(path), preferred_type=preferred_type
        )

    async def exists(
        self, path: str, *, preferred_type: str | None = None
    ) -> StorageResult[bool]:
        return await self.run(
            "exists", lambda storage: storage.exists(path), preferred_type=preferred_type
        )

    async def list_files(
        self, prefix: str | None = None, *, preferred_type: str | None = None
    ) -> StorageResult[tuple[FileRef, ...]]:
        return await self.run(
            "list_files",
            lambda storage: storage.list_files(prefix),
            preferred_type=preferred_type,
        )

    async def copy_file(
        self, source: str, destination: str, *, preferred_type: str | None = None
    ) -> StorageResult[None]:
        return await self.run(
            "copy_file",
            lambda storage: storage.copy_file(source, destination),
            preferred_type=preferred_type,
        )

    async def move_file(
        self, source: str, destination: str, *, preferred_type: str | None = None
    ) -> StorageResult[None]:
        return await self.run(
            "move_file",
            lambda storage: storage.move_file(source, destination),
            preferred_type=preferred_type,
        )

    async def create_directory(
        self, path: str, *, preferred_type: str | None = None
    ) -> StorageResult[None]:
        return await self.run(
            "create_directory",
            lambda storage: storage.create_directory(path),
            preferred_type=preferred_type,
        )
