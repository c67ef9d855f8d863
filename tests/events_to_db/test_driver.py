"""
Tests for the pipeline driver.

The event source is scripted in-process; the sink is a real SQLite
database, so offsets, idempotence and atomicity are the real thing.
"""

import asyncio
import logging
from unittest.mock import Mock

import pytest
from sqlalchemy import select, text

from config.config import RelayConfig
from core.errors import (
    EventSourceError,
    EventSourceRejectedError,
    SchemaMismatchError,
    SinkError,
    SinkQueryError,
)
from events_to_db.driver import DriverState, PipelineDriver
from events_to_db.health import HealthCheckServer
from events_to_db.sink import SinkConnection, SinkWriter, events_table

HOLD = object()  # stream stays open without sending anything


class ScriptedSource:
    """EventSource whose subscriptions replay scripts.

    Each subscribe() consumes the next script: events are yielded,
    exceptions are raised, HOLD blocks until cancelled, and the end of
    the script ends the stream. Once scripts run out, streams hold.
    """

    def __init__(self, *scripts, offsets=None):
        self.scripts = list(scripts)
        self.subscribe_calls: list[tuple[tuple, dict]] = []
        self.offsets = offsets or {}
        self.started = False
        self.closed = False
        self.yielded = 0

    async def start(self):
        self.started = True

    async def close(self):
        self.closed = True

    async def get_offsets(self):
        return dict(self.offsets)

    def subscribe(self, subscriptions, start_offsets):
        self.subscribe_calls.append((tuple(subscriptions), dict(start_offsets)))
        script = self.scripts.pop(0) if self.scripts else [HOLD]
        return self._replay(script)

    async def _replay(self, script):
        for item in script:
            if item is HOLD:
                await asyncio.Event().wait()
            elif isinstance(item, BaseException):
                raise item
            else:
                self.yielded += 1
                yield item


async def wait_until(predicate, timeout: float = 5.0) -> None:
    loop = asyncio.get_running_loop()
    deadline = loop.time() + timeout
    while not predicate():
        if loop.time() > deadline:
            raise AssertionError("condition not met in time")
        await asyncio.sleep(0.01)


async def stored_rows(url: str, table: str = "events") -> list[tuple[str, int]]:
    connection = SinkConnection(url)
    await connection.connect()
    try:
        t = events_table(table)
        rows = await connection.query(
            select(t.c.source, t.c["offset"]).order_by(t.c.source, t.c["offset"])
        )
        return [(row[0], row[1]) for row in rows]
    finally:
        await connection.close()


async def seed(url: str, events, table: str = "events") -> None:
    connection = SinkConnection(url)
    await connection.connect()
    try:
        writer = SinkWriter(connection, table)
        await writer.ensure_table()
        await writer.write_batch(events)
    finally:
        await connection.close()


def record_writes(driver: PipelineDriver) -> list[list[tuple[str, int]]]:
    batches = []
    original = driver.writer.write_batch

    async def recording(batch):
        batches.append([(e.source, e.offset) for e in batch])
        return await original(batch)

    driver.writer.write_batch = recording
    return batches


@pytest.fixture
def make_config(sqlite_url):
    def factory(**overrides) -> RelayConfig:
        settings = {
            "database_url": sqlite_url,
            "max_batch_records": 2,
            "max_batch_seconds": 0.05,
            "retry_base_delay_seconds": 0.01,
            "retry_max_delay_seconds": 0.02,
            "shutdown_timeout_seconds": 2,
            "health_port": None,
            "metrics_port": None,
        }
        settings.update(overrides)
        config = RelayConfig(**settings)
        config.validate()
        return config

    return factory


@pytest.fixture
def make_driver(make_config, sqlite_url):
    drivers = []

    def factory(source, health_server=None, **config_overrides) -> PipelineDriver:
        driver = PipelineDriver(
            make_config(**config_overrides),
            source,
            SinkConnection(sqlite_url),
            shutdown_event=asyncio.Event(),
            health_server=health_server,
        )
        drivers.append(driver)
        return driver

    yield factory
    for driver in drivers:
        driver.request_shutdown()


async def stop(driver: PipelineDriver, task: asyncio.Task) -> None:
    driver.request_shutdown()
    await asyncio.wait_for(task, timeout=5)


class TestBatching:

    @pytest.mark.asyncio
    async def test_size_then_age_flush(self, make_driver, make_event, sqlite_url):
        """Three events with a size limit of two: [0, 1] on size, [2] on age."""
        source = ScriptedSource([make_event(offset=0), make_event(offset=1), make_event(offset=2), HOLD])
        driver = make_driver(source)
        batches = record_writes(driver)

        task = asyncio.create_task(driver.run())
        await wait_until(lambda: driver.rows_inserted == 3)
        await stop(driver, task)

        assert batches == [[("a", 0), ("a", 1)], [("a", 2)]]
        assert await stored_rows(sqlite_url) == [("a", 0), ("a", 1), ("a", 2)]
        assert driver.state == DriverState.STOPPED

    @pytest.mark.asyncio
    async def test_filter_drops_unmatched_events(self, make_driver, make_event, sqlite_url):
        source = ScriptedSource(
            [make_event(source="a", offset=0), make_event(source="b", offset=0), make_event(source="a", offset=1), HOLD]
        )
        driver = make_driver(source, subscriptions='[{"source": "a"}]')

        task = asyncio.create_task(driver.run())
        await wait_until(lambda: driver.rows_inserted == 2)
        await stop(driver, task)

        assert driver.events_received == 3
        assert driver.events_filtered == 1
        assert await stored_rows(sqlite_url) == [("a", 0), ("a", 1)]
        assert source.subscribe_calls[0][0][0].source == "a"

    @pytest.mark.asyncio
    async def test_shutdown_flushes_partial_batch(self, make_driver, make_event, sqlite_url):
        source = ScriptedSource([make_event(offset=0), make_event(offset=1), HOLD])
        driver = make_driver(source, max_batch_records=100, max_batch_seconds=60)

        task = asyncio.create_task(driver.run())
        await wait_until(lambda: driver.events_received == 2)
        await stop(driver, task)

        assert await stored_rows(sqlite_url) == [("a", 0), ("a", 1)]
        assert source.closed is True


class TestStartOffsets:

    @pytest.mark.asyncio
    async def test_resumes_after_stored_rows(self, make_driver, make_event, sqlite_url):
        await seed(sqlite_url, [make_event(source="a", offset=i) for i in range(6)])
        source = ScriptedSource([HOLD])
        driver = make_driver(source)

        task = asyncio.create_task(driver.run())
        await wait_until(lambda: source.subscribe_calls)
        await stop(driver, task)

        assert source.subscribe_calls[0][1] == {"a": 6}

    @pytest.mark.asyncio
    async def test_empty_table_starts_at_beginning(self, make_driver):
        source = ScriptedSource([HOLD])
        driver = make_driver(source)

        task = asyncio.create_task(driver.run())
        await wait_until(lambda: source.subscribe_calls)
        await stop(driver, task)

        assert source.subscribe_calls[0][1] == {}

    @pytest.mark.asyncio
    async def test_from_start_only_until_first_event(self, make_driver, make_event, sqlite_url):
        await seed(sqlite_url, [make_event(source="a", offset=i) for i in range(6)])
        source = ScriptedSource(
            [make_event(source="a", offset=0), EventSourceError("connection reset")],
            [HOLD],
        )
        driver = make_driver(source, from_start=True)

        task = asyncio.create_task(driver.run())
        await wait_until(lambda: len(source.subscribe_calls) == 2)
        await stop(driver, task)

        assert source.subscribe_calls[0][1] == {}
        assert source.subscribe_calls[1][1] == {"a": 6}
        assert await stored_rows(sqlite_url) == [("a", i) for i in range(6)]

    @pytest.mark.asyncio
    async def test_offset_summary_logged_once(self, make_driver, make_event, sqlite_url, caplog):
        await seed(sqlite_url, [make_event(source="a")])
        source = ScriptedSource([HOLD], offsets={"a": 10, "b": 3})
        driver = make_driver(source)

        with caplog.at_level(logging.INFO):
            task = asyncio.create_task(driver.run())
            await wait_until(lambda: source.subscribe_calls)
            await stop(driver, task)

        summaries = [
            r.getMessage() for r in caplog.records
            if r.levelno >= logging.INFO and "Database has events" in r.getMessage()
        ]
        assert summaries == ["Database has events from 1 source(s), event store has 2 source(s)"]


class TestReconnect:

    @pytest.mark.asyncio
    async def test_drains_then_resubscribes_from_sink(self, make_driver, make_event, sqlite_url):
        source = ScriptedSource(
            [make_event(offset=0), make_event(offset=1), make_event(offset=2), EventSourceError("reset")],
            [make_event(offset=3), HOLD],
        )
        driver = make_driver(source, max_batch_records=10, max_batch_seconds=60)
        batches = record_writes(driver)

        task = asyncio.create_task(driver.run())
        await wait_until(lambda: len(source.subscribe_calls) == 2)
        await stop(driver, task)

        # The partial batch was committed before offsets were resolved
        assert batches[0] == [("a", 0), ("a", 1), ("a", 2)]
        assert source.subscribe_calls[1][1] == {"a": 3}
        assert await stored_rows(sqlite_url) == [("a", i) for i in range(4)]

    @pytest.mark.asyncio
    async def test_stream_closed_by_server(self, make_driver, make_event):
        source = ScriptedSource([make_event(offset=0), make_event(offset=1)], [HOLD])
        driver = make_driver(source)

        task = asyncio.create_task(driver.run())
        await wait_until(lambda: len(source.subscribe_calls) == 2)
        await stop(driver, task)

        assert source.subscribe_calls[1][1] == {"a": 2}

    @pytest.mark.asyncio
    async def test_repeated_failures_keep_retrying(self, make_driver):
        source = ScriptedSource(*[[EventSourceError("refused")] for _ in range(5)], [HOLD])
        driver = make_driver(source)

        task = asyncio.create_task(driver.run())
        await wait_until(lambda: len(source.subscribe_calls) == 6)
        await stop(driver, task)

    @pytest.mark.asyncio
    async def test_rejected_subscription_is_fatal(self, make_driver):
        source = ScriptedSource([EventSourceRejectedError("bad subscription", status=400)])
        driver = make_driver(source)

        with pytest.raises(EventSourceRejectedError):
            await asyncio.wait_for(driver.run(), timeout=5)

        assert source.closed is True
        assert driver.state == DriverState.STOPPED


class TestWriter:

    @pytest.mark.asyncio
    async def test_retries_identical_batch(self, make_driver, make_event, sqlite_url):
        source = ScriptedSource([make_event(offset=0), make_event(offset=1), HOLD])
        driver = make_driver(source)
        attempts = []
        original = driver.writer.write_batch

        async def flaky(batch):
            attempts.append([(e.source, e.offset) for e in batch])
            if len(attempts) <= 2:
                raise SinkError("connection reset")
            return await original(batch)

        driver.writer.write_batch = flaky

        task = asyncio.create_task(driver.run())
        await wait_until(lambda: driver.rows_inserted == 2)
        await stop(driver, task)

        assert attempts == [[("a", 0), ("a", 1)]] * 3
        assert await stored_rows(sqlite_url) == [("a", 0), ("a", 1)]

    @pytest.mark.asyncio
    async def test_permanent_write_error_is_fatal(self, make_driver, make_event):
        source = ScriptedSource([make_event(offset=0), make_event(offset=1), HOLD])
        health = Mock(spec=HealthCheckServer)
        driver = make_driver(source, health_server=health)
        driver.writer.write_batch = Mock(side_effect=SinkQueryError("value too long"))

        with pytest.raises(SinkQueryError):
            await asyncio.wait_for(driver.run(), timeout=5)

        health.set_error.assert_called_once()
        assert source.closed is True

    @pytest.mark.asyncio
    async def test_failed_final_flush_is_fatal(self, make_driver, make_event):
        source = ScriptedSource([make_event(offset=0), HOLD])
        health = Mock(spec=HealthCheckServer)
        driver = make_driver(
            source, health_server=health, max_batch_records=100, max_batch_seconds=60
        )
        driver.writer.write_batch = Mock(side_effect=SinkQueryError("value too long"))

        task = asyncio.create_task(driver.run())
        await wait_until(lambda: driver.events_received == 1)
        driver.request_shutdown()

        with pytest.raises(SinkQueryError):
            await asyncio.wait_for(task, timeout=5)

        driver.writer.write_batch.assert_called_once()
        health.set_error.assert_called_once()
        assert source.closed is True
        assert driver.state == DriverState.STOPPED

    @pytest.mark.asyncio
    async def test_bounded_write_attempts(self, make_driver, make_event):
        source = ScriptedSource([make_event(offset=0), make_event(offset=1), HOLD])
        driver = make_driver(source, max_write_attempts=2)
        calls = []

        async def down(batch):
            calls.append(batch)
            raise SinkError("database is down")

        driver.writer.write_batch = down

        with pytest.raises(SinkError):
            await asyncio.wait_for(driver.run(), timeout=5)
        assert len(calls) == 2

    @pytest.mark.asyncio
    async def test_backpressure_stops_reading(self, make_driver, make_event, sqlite_url):
        events = [make_event(offset=i) for i in range(100)]
        source = ScriptedSource(events + [HOLD])
        driver = make_driver(source, max_batch_seconds=60, max_outstanding_batches=1)
        release = asyncio.Event()
        original = driver.writer.write_batch

        async def blocked(batch):
            await release.wait()
            return await original(batch)

        driver.writer.write_batch = blocked

        task = asyncio.create_task(driver.run())
        await wait_until(lambda: driver.events_received == 6)
        await asyncio.sleep(0.1)

        # One batch being written, one queued, one full batch waiting for room
        assert driver.events_received == 6
        # ...plus a full event queue and the event the pump is holding
        assert source.yielded <= 9

        release.set()
        await wait_until(lambda: driver.rows_inserted == 100)
        await stop(driver, task)

        assert len(await stored_rows(sqlite_url)) == 100

    @pytest.mark.asyncio
    async def test_shutdown_timeout_abandons_stuck_write(self, make_driver, make_event, sqlite_url):
        source = ScriptedSource([make_event(offset=0), make_event(offset=1), HOLD])
        driver = make_driver(source, shutdown_timeout_seconds=0.2)
        started = asyncio.Event()

        async def stuck(batch):
            started.set()
            await asyncio.Event().wait()

        driver.writer.write_batch = stuck

        task = asyncio.create_task(driver.run())
        await asyncio.wait_for(started.wait(), timeout=5)
        await stop(driver, task)

        assert await stored_rows(sqlite_url) == []
        assert driver.state == DriverState.STOPPED


class TestStartup:

    @pytest.mark.asyncio
    async def test_schema_mismatch_is_fatal(self, make_driver, sqlite_url):
        connection = SinkConnection(sqlite_url)
        await connection.connect()
        await connection.execute(text('CREATE TABLE events (source TEXT, "offset" BIGINT)'))
        await connection.close()

        source = ScriptedSource([HOLD])
        health = Mock(spec=HealthCheckServer)
        driver = make_driver(source, health_server=health)

        with pytest.raises(SchemaMismatchError):
            await asyncio.wait_for(driver.run(), timeout=5)

        assert source.subscribe_calls == []
        assert "SchemaMismatchError" in health.set_error.call_args[0][0]
        assert driver._connection.is_connected is False

    @pytest.mark.asyncio
    async def test_sink_outage_at_startup_is_retried(self, make_driver):
        source = ScriptedSource([HOLD])
        driver = make_driver(source)
        real_connect = driver._connection.connect
        attempts = []

        async def flaky_connect():
            attempts.append(1)
            if len(attempts) < 3:
                raise SinkError("connection refused")
            await real_connect()

        driver._connection.connect = flaky_connect

        task = asyncio.create_task(driver.run())
        await wait_until(lambda: source.subscribe_calls)
        await stop(driver, task)

        assert len(attempts) == 3

    @pytest.mark.asyncio
    async def test_shutdown_during_startup_retry(self, make_driver):
        source = ScriptedSource([HOLD])
        driver = make_driver(source, retry_base_delay_seconds=10, retry_max_delay_seconds=10)

        async def down():
            raise SinkError("connection refused")

        driver._connection.connect = down

        task = asyncio.create_task(driver.run())
        await wait_until(lambda: driver.state == DriverState.RETRYING)
        await stop(driver, task)

        assert source.subscribe_calls == []
        assert driver.state == DriverState.STOPPED


class TestStateReporting:

    @pytest.mark.asyncio
    async def test_health_ready_while_streaming(self, make_driver, make_event):
        source = ScriptedSource([make_event(offset=0), HOLD])
        health = Mock(spec=HealthCheckServer)
        driver = make_driver(source, health_server=health)

        task = asyncio.create_task(driver.run())
        await wait_until(lambda: driver.state == DriverState.STREAMING)
        health.set_ready.assert_called_with(source_connected=True, sink_connected=True)
        await stop(driver, task)

        health.set_state.assert_any_call("connecting")
        health.set_state.assert_any_call("streaming")
        health.set_ready.assert_called_with(source_connected=False, sink_connected=False)

    @pytest.mark.asyncio
    async def test_cancel_skips_final_flush(self, make_driver, make_event, sqlite_url):
        source = ScriptedSource([make_event(offset=0), HOLD])
        driver = make_driver(source, max_batch_records=100, max_batch_seconds=60)

        task = asyncio.create_task(driver.run())
        await wait_until(lambda: driver.events_received == 1)
        task.cancel()
        with pytest.raises(asyncio.CancelledError):
            await task

        assert await stored_rows(sqlite_url) == []
        assert source.closed is True
