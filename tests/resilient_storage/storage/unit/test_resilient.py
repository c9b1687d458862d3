from __future__ import annotations

import asyncio

import pytest

from resilient_storage.circuit_breaker import (
    CircuitBreaker,
    CircuitBreakerConfig,
    CircuitOpenError,
    CircuitState,
)
from resilient_storage.errors import (
    NoStrategyAvailableError,
    StorageError,
    TransientStorageError,
)
from resilient_storage.retry import RetryBackoffPolicy
from resilient_storage.storage import (
    FileRef,
    ResilientStorage,
    StorageFailover,
    StorageResult,
    StorageStrategy,
    StoredFile,
    StrategyConfig,
    StrategyFactory,
)
from tests.resilient_storage.support.fakes import (
    FakeStorageStrategy,
    RecordingBreakerListener,
)

pytestmark = pytest.mark.asyncio

NO_DELAY = RetryBackoffPolicy(attempts=3, min_seconds=0.0, max_seconds=0.0)


def _resilient(
    strategy: FakeStorageStrategy,
    logger,
    *,
    failure_threshold: int = 5,
) -> ResilientStorage:
    breaker = CircuitBreaker(
        "fake",
        config=CircuitBreakerConfig(failure_threshold=failure_threshold),
        logger=logger,
    )
    return ResilientStorage(strategy, breaker, retry_policy=NO_DELAY, logger=logger)


def _file(path: str = "docs/a.txt") -> StoredFile:
    return StoredFile(path=path, content=b"hello", mime_type="text/plain")


async def test_resilient_storage_satisfies_protocol(fake_logger) -> None:
    assert isinstance(_resilient(FakeStorageStrategy(), fake_logger), StorageStrategy)


async def test_transient_failures_are_retried_within_one_breaker_call(fake_logger) -> None:
    strategy = FakeStorageStrategy()
    strategy.script(
        [
            StorageResult.failure(TransientStorageError("throttled")),
            StorageResult.failure(TransientStorageError("throttled")),
        ]
    )
    storage = _resilient(strategy, fake_logger)

    result = await storage.upload(_file())

    assert result.ok
    assert result.unwrap() == FileRef(path="docs/a.txt", size=5, mime_type="text/plain")
    assert strategy.calls == ["upload", "upload", "upload"]
    snapshot = storage.breaker.get_state()
    assert snapshot.total_request_count == 1
    assert snapshot.failure_count == 0
    attempts = [fields["attempt"] for _, fields in fake_logger.find("storage.retrying")]
    assert attempts == [1, 2]


async def test_exhausted_retries_return_last_failure(fake_logger) -> None:
    strategy = FakeStorageStrategy()
    last = StorageResult.failure(TransientStorageError("still throttled"))
    strategy.script(
        [
            StorageResult.failure(TransientStorageError("throttled")),
            StorageResult.failure(TransientStorageError("throttled")),
            last,
        ]
    )
    storage = _resilient(strategy, fake_logger)

    result = await storage.download("docs/a.txt")

    assert result is last
    assert storage.breaker.get_state().failure_count == 1


async def test_permanent_failures_are_not_retried(fake_logger) -> None:
    strategy = FakeStorageStrategy()
    storage = _resilient(strategy, fake_logger)

    result = await storage.download("missing.txt")

    assert not result.ok
    assert isinstance(result.error, FileNotFoundError)
    assert strategy.calls == ["download"]
    with pytest.raises(FileNotFoundError):
        result.unwrap()


async def test_open_breaker_returns_failure_without_calling_backend(fake_logger) -> None:
    strategy = FakeStorageStrategy()
    strategy.script([StorageResult.failure(StorageError("bucket missing"))])
    storage = _resilient(strategy, fake_logger, failure_threshold=1)

    assert not (await storage.exists("a.txt")).ok
    result = await storage.exists("a.txt")

    assert isinstance(result.error, CircuitOpenError)
    assert strategy.calls == ["exists"]
    assert "storage.call_rejected" in fake_logger.events


async def test_raised_backend_exceptions_propagate_and_count(fake_logger) -> None:
    strategy = FakeStorageStrategy()
    strategy.script([ConnectionResetError("reset")])
    storage = _resilient(strategy, fake_logger)

    with pytest.raises(ConnectionResetError):
        await storage.delete("a.txt")

    assert storage.breaker.get_state().failure_count == 1


async def test_get_health_bypasses_open_breaker(fake_logger) -> None:
    strategy = FakeStorageStrategy()
    storage = _resilient(strategy, fake_logger)
    await storage.breaker.force_open()

    result = await storage.get_health()

    assert result.ok
    assert strategy.health_calls == 1


async def test_file_operations_pass_through(fake_logger) -> None:
    strategy = FakeStorageStrategy()
    storage = _resilient(strategy, fake_logger)

    assert (await storage.upload(_file("docs/a.txt"))).ok
    assert (await storage.copy_file("docs/a.txt", "docs/b.txt")).ok
    assert (await storage.move_file("docs/b.txt", "archive/b.txt")).ok
    assert (await storage.create_directory("archive")).ok

    listed = (await storage.list_files("docs/")).unwrap()
    assert [ref.path for ref in listed] == ["docs/a.txt"]
    assert (await storage.exists("archive/b.txt")).unwrap() is True
    assert strategy.directories == {"archive"}


def _failover_setup(
    fake_logger, *, listeners=None
) -> tuple[StrategyFactory, StorageFailover, FakeStorageStrategy, FakeStorageStrategy]:
    factory = StrategyFactory(logger=fake_logger)
    primary = FakeStorageStrategy("s3")
    backup = FakeStorageStrategy("azure")
    factory.register_strategy(
        primary, StrategyConfig(id="s3", name="S3", type="s3", priority=1)
    )
    factory.register_strategy(
        backup, StrategyConfig(id="azure", name="Azure", type="azure", priority=2)
    )
    failover = StorageFailover(
        factory,
        breaker_config=CircuitBreakerConfig(failure_threshold=1),
        listeners=listeners,
        retry_policy=NO_DELAY,
        logger=fake_logger,
    )
    return factory, failover, primary, backup


async def test_failover_moves_to_fallback_on_failure_result(fake_logger) -> None:
    _, failover, primary, backup = _failover_setup(fake_logger)
    primary.script([StorageResult.failure(StorageError("write refused"))])

    result = await failover.upload(_file())

    assert result.ok
    assert "docs/a.txt" in backup.files
    assert "docs/a.txt" not in primary.files
    assert "storage.failover.attempt_failed" in fake_logger.events
    assert "storage.failover.recovered" in fake_logger.events


async def test_failover_treats_raised_exceptions_as_failures(fake_logger) -> None:
    _, failover, primary, backup = _failover_setup(fake_logger)
    primary.script([TimeoutError("slow")])
    backup.files["docs/a.txt"] = _file()

    result = await failover.download("docs/a.txt")

    assert result.unwrap() == b"hello"


async def test_failover_skips_open_breaker_without_calling_backend(fake_logger) -> None:
    listener = RecordingBreakerListener()
    _, failover, primary, _ = _failover_setup(fake_logger, listeners=[listener])
    primary.script([StorageResult.failure(StorageError("down"))])

    assert (await failover.create_directory("tmp")).ok
    assert (await failover.create_directory("tmp2")).ok

    assert primary.calls == ["create_directory"]
    assert failover.breaker_for("s3").get_state().state == CircuitState.OPEN
    assert failover.breaker_for("azure").get_state().state == CircuitState.CLOSED
    assert [name for name, _ in listener.rejected] == ["s3"]


async def test_failover_returns_last_failure_when_chain_is_exhausted(fake_logger) -> None:
    _, failover, primary, backup = _failover_setup(fake_logger)
    primary.script([StorageResult.failure(StorageError("primary down"))])
    backup.script([StorageResult.failure(StorageError("backup down"))])

    result = await failover.delete("docs/a.txt")

    assert not result.ok
    assert str(result.error) == "backup down"


async def test_failover_without_strategies_reports_no_strategy(fake_logger) -> None:
    failover = StorageFailover(
        StrategyFactory(logger=fake_logger),
        breaker_config=CircuitBreakerConfig(),
        logger=fake_logger,
    )

    result = await failover.exists("a.txt", preferred_type="gcs")

    assert isinstance(result.error, NoStrategyAvailableError)
    assert result.error.preferred_type == "gcs"


async def test_breakers_are_named_per_strategy_and_reused(fake_logger) -> None:
    _, failover, _, _ = _failover_setup(fake_logger)

    breaker = failover.breaker_for("s3")

    assert breaker.name == "s3"
    assert breaker.config.failure_threshold == 1
    assert failover.breaker_for("s3") is breaker
    with pytest.raises(KeyError):
        failover.breaker_for("missing")


async def test_failover_honours_preferred_type(fake_logger) -> None:
    _, failover, primary, backup = _failover_setup(fake_logger)

    assert (await failover.upload(_file(), preferred_type="azure")).ok

    assert primary.calls == []
    assert backup.calls == ["upload"]


async def test_failover_facade_covers_listing_copy_and_move(fake_logger) -> None:
    _, failover, primary, _ = _failover_setup(fake_logger)
    await failover.upload(_file("docs/a.txt"))

    assert (await failover.copy_file("docs/a.txt", "docs/b.txt")).ok
    assert (await failover.move_file("docs/b.txt", "docs/c.txt")).ok
    listed = (await failover.list_files()).unwrap()

    assert [ref.path for ref in listed] == ["docs/a.txt", "docs/c.txt"]
    assert set(primary.files) == {"docs/a.txt", "docs/c.txt"}


async def test_failover_loads_breaker_config_from_environment(
    monkeypatch: pytest.MonkeyPatch, fake_logger
) -> None:
    monkeypatch.setenv("CIRCUIT_BREAKER_FAILURE_THRESHOLD", "2")
    factory = StrategyFactory(logger=fake_logger)
    factory.register_strategy(
        FakeStorageStrategy(), StrategyConfig(id="local", name="Local", type="local", priority=1)
    )

    failover = StorageFailover(factory, logger=fake_logger)

    assert failover.breaker_for("local").config.failure_threshold == 2
    assert "circuit_breaker.config.loaded" in fake_logger.events


async def test_stop_event_cuts_retry_backoff_short(fake_logger) -> None:
    stop_event = asyncio.Event()
    stop_event.set()
    strategy = FakeStorageStrategy()
    strategy.script(
        [
            StorageResult.failure(TransientStorageError("throttled")),
            StorageResult.failure(TransientStorageError("throttled")),
        ]
    )
    storage = ResilientStorage(
        strategy,
        CircuitBreaker("fake", logger=fake_logger),
        retry_policy=RetryBackoffPolicy(attempts=3, min_seconds=30.0, max_seconds=60.0),
        stop_event=stop_event,
        logger=fake_logger,
    )

    result = await asyncio.wait_for(storage.create_directory("tmp"), timeout=1.0)

    assert result.ok
    assert strategy.calls == ["create_directory"] * 3


async def test_failover_stop_event_reaches_wrapped_retries(fake_logger) -> None:
    stop_event = asyncio.Event()
    stop_event.set()
    factory = StrategyFactory(logger=fake_logger)
    strategy = FakeStorageStrategy("s3")
    strategy.script([StorageResult.failure(TransientStorageError("throttled"))])
    factory.register_strategy(
        strategy, StrategyConfig(id="s3", name="S3", type="s3", priority=1)
    )
    failover = StorageFailover(
        factory,
        breaker_config=CircuitBreakerConfig(),
        retry_policy=RetryBackoffPolicy(attempts=2, min_seconds=30.0, max_seconds=60.0),
        stop_event=stop_event,
        logger=fake_logger,
    )

    result = await asyncio.wait_for(failover.delete("docs/a.txt"), timeout=1.0)

    assert result.ok
    assert strategy.calls == ["delete", "delete"]


async def test_reregistered_strategy_gets_a_fresh_wrapper_and_breaker(fake_logger) -> None:
    factory, failover, primary, _ = _failover_setup(fake_logger)
    primary.script([StorageResult.failure(StorageError("down"))])
    await failover.exists("docs/a.txt")
    stale_breaker = failover.breaker_for("s3")
    assert stale_breaker.get_state().state == CircuitState.OPEN

    await factory.dispose()
    with pytest.raises(KeyError):
        failover.storage_for("s3")
    replacement = FakeStorageStrategy("s3")
    factory.register_strategy(
        replacement, StrategyConfig(id="s3", name="S3", type="s3", priority=1)
    )

    storage = failover.storage_for("s3")

    assert storage.strategy is replacement
    assert storage.breaker is not stale_breaker
    assert storage.breaker.get_state().state == CircuitState.CLOSED
    assert (await failover.exists("docs/a.txt")).ok
    assert replacement.calls == ["exists"]
