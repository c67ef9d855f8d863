"""
Pipeline driver: subscription -> filter -> batch -> sink.

One driver task owns the accumulator and the subscription. A pump task
copies events from the HTTP stream into a bounded queue, and a single
writer task commits batches in the order they were taken. The driver
waits on whichever comes first of: the next event, the batch deadline,
shutdown, the pump ending, or the writer failing.

Progress lives only in the sink table. Every (re)subscribe first drains
outstanding writes and then derives start offsets from the table, so the
relay never asks for an offset beyond what has been committed.

State machine:
    CONNECTING -> STREAMING <-> FLUSHING
        ^             |
        +-- RETRYING <+            any state -> STOPPED
"""

import asyncio
import logging
import time
from collections.abc import AsyncIterator, Awaitable, Callable
from contextlib import suppress
from enum import Enum
from typing import Any

from config.config import RelayConfig
from core.errors import (
    EventSourceError,
    PipelineError,
    wrap_exception,
)
from core.logging import log_exception
from core.resilience import RetryConfig
from events_to_db import metrics
from events_to_db.batching import BatchAccumulator
from events_to_db.filters import matches
from events_to_db.health import HealthCheckServer
from events_to_db.offsets import OffsetResolver
from events_to_db.sink import SinkConnection, SinkWriter, WriteResult
from events_to_db.source import EventSource
from events_to_db.types import Event

logger = logging.getLogger(__name__)

__all__ = [
    "DriverState",
    "PipelineDriver",
]


class DriverState(str, Enum):
    CONNECTING = "connecting"
    STREAMING = "streaming"
    FLUSHING = "flushing"
    RETRYING = "retrying"
    STOPPED = "stopped"


_ALL_STATES = [state.value for state in DriverState]
_READY_STATES = (DriverState.STREAMING, DriverState.FLUSHING)


class PipelineDriver:
    """Runs the relay until the shutdown event is set or a fatal error occurs.

    Args:
        config: Validated relay configuration
        source: Event source (EventServiceClient in production)
        connection: Sink connection; the driver connects and closes it
        shutdown_event: Set to request a graceful stop
        health_server: Optional readiness reporter
    """

    def __init__(
        self,
        config: RelayConfig,
        source: EventSource,
        connection: SinkConnection,
        shutdown_event: asyncio.Event | None = None,
        health_server: HealthCheckServer | None = None,
        clock: Callable[[], float] = time.monotonic,
    ):
        self.config = config
        self.subscriptions = config.subscription_set()
        self._source = source
        self._connection = connection
        self._shutdown_event = shutdown_event or asyncio.Event()
        self._health = health_server

        self.accumulator = BatchAccumulator(
            max_records=config.max_batch_records,
            max_age_seconds=config.max_batch_seconds,
            clock=clock,
        )
        self.writer = SinkWriter(connection, config.table)
        self.resolver = OffsetResolver(connection, config.table)

        self._write_retry = config.write_retry_config()
        # Losing the stream is never fatal on its own; only the delay is shared
        self._stream_retry = RetryConfig(
            max_attempts=None,
            base_delay=config.retry_base_delay_seconds,
            max_delay=config.retry_max_delay_seconds,
        )

        self.state = DriverState.STOPPED
        self._batch_queue: asyncio.Queue[list[Event]] | None = None
        self._writer_task: asyncio.Task | None = None
        self._unqueued: list[Event] = []
        self._outstanding = 0
        self._forced = False
        self._received_first_event = False
        self._stream_events = 0
        self._subscriptions_opened = 0

        self.events_received = 0
        self.events_filtered = 0
        self.batches_written = 0
        self.rows_inserted = 0
        self.last_start_offsets: dict[str, int] | None = None

    @property
    def shutdown_event(self) -> asyncio.Event:
        return self._shutdown_event

    def request_shutdown(self) -> None:
        self._shutdown_event.set()

    # =========================================================================
    # Lifecycle
    # =========================================================================

    async def run(self) -> None:
        """Run until shutdown.

        Raises:
            PipelineError: A permanent failure (schema mismatch, rejected
                subscription, a write that may not be retried)
        """
        logger.info(
            "Starting events-to-db relay",
            extra={
                "subscriptions": [s.model_dump(exclude_none=True) for s in self.subscriptions],
                "max_batch_records": self.config.max_batch_records,
                "max_batch_seconds": self.config.max_batch_seconds,
                "from_start": self.config.from_start,
            },
        )
        try:
            try:
                if await self._startup():
                    await self._main_loop()
            except asyncio.CancelledError:
                self._forced = True
                raise
            finally:
                await self._shutdown()
        except Exception as e:
            if self._health is not None:
                self._health.set_error(f"{type(e).__name__}: {e}")
            raise

    async def _startup(self) -> bool:
        """Connect the sink and source. Returns False if shutdown came first."""
        self._transition(DriverState.CONNECTING)

        if not await self._retry_until_done("prepare sink", self._prepare_sink):
            return False
        await self._source.start()
        await self._log_offset_summary()

        self._batch_queue = asyncio.Queue(maxsize=self.config.max_outstanding_batches)
        self._writer_task = asyncio.create_task(self._write_loop(), name="sink-writer")
        return True

    async def _prepare_sink(self) -> None:
        await self._connection.connect()
        await self.writer.ensure_table()

    async def _log_offset_summary(self) -> None:
        """Compare sink and store coverage; informational only."""
        try:
            sink_offsets = await self.resolver.resolve_all()
            store_offsets = await self._source.get_offsets()
        except PipelineError as e:
            logger.warning(
                f"Could not compare database and event store offsets: {e}",
                extra={"error_category": e.category.value},
            )
            return

        logger.info(
            f"Database has events from {len(sink_offsets)} source(s), "
            f"event store has {len(store_offsets)} source(s)",
            extra={
                "source_count": len(sink_offsets),
                "store_source_count": len(store_offsets),
            },
        )

    async def _shutdown(self) -> None:
        pending = [batch for batch in (self._unqueued, self.accumulator.take()) if batch]
        self._unqueued = []
        failure: Exception | None = None

        if self._forced:
            if pending or self._outstanding:
                logger.warning(
                    "Forced shutdown, uncommitted events will be read again on the next start",
                    extra={"outstanding_batches": self._outstanding},
                )
        elif self._writer_task is not None and not self._writer_task.done():
            if pending or self._outstanding:
                self._transition(DriverState.FLUSHING)
                try:
                    await asyncio.wait_for(
                        self._final_flush(pending),
                        timeout=self.config.shutdown_timeout_seconds,
                    )
                except asyncio.TimeoutError:
                    logger.warning(
                        f"Shutdown timed out after {self.config.shutdown_timeout_seconds}s "
                        f"with {self._outstanding} batch(es) not committed; "
                        "they will be read again on the next start",
                        extra={"outstanding_batches": self._outstanding},
                    )
                except Exception as e:
                    failure = e
        elif pending:
            logger.warning(
                f"Discarding {sum(len(b) for b in pending)} uncommitted event(s); "
                "they will be read again on the next start"
            )

        if self._writer_task is not None:
            writer = self._writer_task
            if failure is None and not self._forced and writer.done() and not writer.cancelled():
                failure = writer.exception()
            writer.cancel()
            await asyncio.gather(self._writer_task, return_exceptions=True)
            self._writer_task = None

        await self._source.close()
        await self._connection.close()
        self._transition(DriverState.STOPPED)
        if failure is not None:
            raise failure
        logger.info(
            "Relay stopped",
            extra={
                "events_received": self.events_received,
                "events_filtered": self.events_filtered,
                "rows_inserted": self.rows_inserted,
            },
        )

    async def _final_flush(self, pending: list[list[Event]]) -> None:
        """Hand pending batches to the writer and wait until all are committed.

        Raises the writer's error if it stops on any of them.
        """
        for batch in pending:
            self._outstanding += 1
            metrics.outstanding_batches.set(self._outstanding)
            await self._unless_writer_fails(self._batch_queue.put(batch))
        await self._unless_writer_fails(self._batch_queue.join())
        # join() also returns when the writer marked its last batch done and then failed
        if self._writer_task.done():
            self._raise_writer_failure()

    async def _unless_writer_fails(self, aw: Awaitable[Any]) -> None:
        task = asyncio.ensure_future(aw)
        try:
            done, _ = await asyncio.wait(
                {task, self._writer_task}, return_when=asyncio.FIRST_COMPLETED
            )
        finally:
            if not task.done():
                task.cancel()
                await asyncio.gather(task, return_exceptions=True)
        if task in done:
            task.result()
        else:
            self._raise_writer_failure()

    # =========================================================================
    # Subscription loop
    # =========================================================================

    async def _main_loop(self) -> None:
        attempt = 0
        while not self._shutdown_event.is_set():
            self._transition(DriverState.CONNECTING)
            self._stream_events = 0
            try:
                if not await self._drain():
                    break
                force = self.config.from_start and not self._received_first_event
                start_offsets = await self.resolver.resolve_all(force_from_start=force)
                self.last_start_offsets = start_offsets
                await self._stream(start_offsets)
                # _stream only returns on shutdown
                break
            except Exception as e:
                if self._writer_task.done():
                    # The writer already gave up on a batch
                    raise
                error = wrap_exception(e, default_class=EventSourceError)
                if not self._stream_retry.should_retry(error, attempt):
                    log_exception(logger, error, "Subscription failed permanently")
                    if error is e:
                        raise
                    raise error from e

                if self._stream_events:
                    attempt = 0
                delay = self._stream_retry.get_delay(attempt)
                attempt += 1

                self._transition(DriverState.RETRYING)
                logger.warning(
                    f"Subscription interrupted, resubscribing in {delay:.1f}s: {error}",
                    extra={
                        "attempt": attempt,
                        "delay_seconds": round(delay, 2),
                        "error_category": error.category.value,
                        "events_received": self._stream_events,
                    },
                )
                if not await self._backoff(delay):
                    break

    async def _stream(self, start_offsets: dict[str, int]) -> None:
        """Consume one subscription until shutdown; raises when the stream breaks."""
        self._subscriptions_opened += 1
        if self._subscriptions_opened > 1:
            metrics.resubscriptions_total.inc()

        events = self._source.subscribe(self.subscriptions, start_offsets)
        event_queue: asyncio.Queue[Event] = asyncio.Queue(maxsize=self.config.max_batch_records)
        pump = asyncio.create_task(self._pump(events, event_queue), name="event-pump")
        shutdown_waiter = asyncio.create_task(self._shutdown_event.wait())
        get_task: asyncio.Task | None = None

        self._transition(DriverState.STREAMING)
        try:
            while True:
                if get_task is None:
                    get_task = asyncio.create_task(event_queue.get())

                waitables = {get_task, shutdown_waiter, self._writer_task}
                if not pump.done():
                    waitables.add(pump)

                done, _ = await asyncio.wait(
                    waitables,
                    timeout=self.accumulator.time_until_flush(),
                    return_when=asyncio.FIRST_COMPLETED,
                )

                if get_task in done:
                    event = get_task.result()
                    get_task = None
                    await self._on_event(event)

                if shutdown_waiter.done():
                    return

                if self._writer_task.done():
                    self._raise_writer_failure()

                if pump.done() and event_queue.empty() and (get_task is None or not get_task.done()):
                    pump_error = pump.exception() if not pump.cancelled() else None
                    raise pump_error or EventSourceError("Event stream ended")

                if self.accumulator.should_flush():
                    await self._flush()
        finally:
            for task in (get_task, pump, shutdown_waiter):
                if task is not None and not task.done():
                    task.cancel()
            await asyncio.gather(
                *(t for t in (get_task, pump, shutdown_waiter) if t is not None),
                return_exceptions=True,
            )
            aclose = getattr(events, "aclose", None)
            if aclose is not None:
                with suppress(Exception):
                    await aclose()

    async def _pump(self, events: AsyncIterator[Event], event_queue: asyncio.Queue) -> None:
        async for event in events:
            await event_queue.put(event)
        raise EventSourceError("Event stream closed by the server")

    async def _on_event(self, event: Event) -> None:
        self._received_first_event = True
        self._stream_events += 1
        self.events_received += 1
        metrics.events_received_total.inc()

        if not matches(event, self.subscriptions):
            self.events_filtered += 1
            metrics.events_filtered_total.inc()
            return

        self.accumulator.append(event)
        metrics.current_batch_size.set(len(self.accumulator))
        if self.accumulator.is_full:
            await self._flush()

    async def _flush(self) -> None:
        """Hand the current batch to the writer; blocks while the writer is saturated."""
        batch = self.accumulator.take()
        metrics.current_batch_size.set(0)
        if not batch:
            return

        previous = self.state
        self._transition(DriverState.FLUSHING)
        self._outstanding += 1
        if await self._race(self._batch_queue.put(batch)):
            metrics.outstanding_batches.set(self._outstanding)
        else:
            # Shutdown arrived while waiting for room; _shutdown() queues it
            self._outstanding -= 1
            self._unqueued = batch
        self._transition(previous)

    async def _drain(self) -> bool:
        """Flush the partial batch and wait for every queued write to commit."""
        if self.accumulator.is_empty and not self._outstanding:
            return True
        logger.info(
            "Draining outstanding writes before resubscribing",
            extra={
                "batch_size": len(self.accumulator),
                "outstanding_batches": self._outstanding,
            },
        )
        await self._flush()
        if self._unqueued:
            return False
        return await self._race(self._batch_queue.join())

    # =========================================================================
    # Writer task
    # =========================================================================

    async def _write_loop(self) -> None:
        while True:
            batch = await self._batch_queue.get()
            try:
                await self._write_with_retry(batch)
            finally:
                self._outstanding -= 1
                metrics.outstanding_batches.set(self._outstanding)
                self._batch_queue.task_done()

    async def _write_with_retry(self, batch: list[Event]) -> WriteResult:
        attempt = 0
        while True:
            try:
                with metrics.write_duration_seconds.time():
                    result = await self.writer.write_batch(batch)
            except Exception as e:
                error = wrap_exception(e)
                metrics.write_failures_total.labels(error_category=error.category.value).inc()

                if not self._write_retry.should_retry(error, attempt):
                    log_exception(
                        logger,
                        error,
                        "Batch write failed, stopping",
                        batch_size=len(batch),
                        attempt=attempt + 1,
                    )
                    if error is e:
                        raise
                    raise error from e

                delay = self._write_retry.get_delay(attempt)
                attempt += 1
                logger.warning(
                    f"Batch write failed, retrying in {delay:.1f}s: {error}",
                    extra={
                        "batch_size": len(batch),
                        "attempt": attempt,
                        "max_attempts": self._write_retry.max_attempts,
                        "delay_seconds": round(delay, 2),
                        "error_category": error.category.value,
                    },
                )
                await asyncio.sleep(delay)
                continue

            self.batches_written += 1
            self.rows_inserted += result.inserted
            metrics.batches_written_total.inc()
            metrics.rows_written_total.inc(result.attempted)
            metrics.rows_inserted_total.inc(result.inserted)
            return result

    def _raise_writer_failure(self) -> None:
        task = self._writer_task
        if task.cancelled():
            raise PipelineError("Sink writer was cancelled")
        error = task.exception()
        if error is None:
            raise PipelineError("Sink writer stopped unexpectedly")
        raise error

    # =========================================================================
    # Helpers
    # =========================================================================

    async def _race(self, aw: Awaitable[Any]) -> bool:
        """Await aw unless shutdown or a writer failure comes first.

        Returns True when aw completed, False on shutdown.
        """
        task = asyncio.ensure_future(aw)
        shutdown_waiter = asyncio.create_task(self._shutdown_event.wait())
        try:
            done, _ = await asyncio.wait(
                {task, shutdown_waiter, self._writer_task},
                return_when=asyncio.FIRST_COMPLETED,
            )
        finally:
            shutdown_waiter.cancel()

        if task in done:
            task.result()
            return True

        task.cancel()
        await asyncio.gather(task, return_exceptions=True)
        if self._writer_task in done:
            self._raise_writer_failure()
        return False

    async def _backoff(self, delay: float) -> bool:
        """Sleep for delay. Returns False if shutdown was requested meanwhile."""
        try:
            await asyncio.wait_for(self._shutdown_event.wait(), timeout=delay)
        except asyncio.TimeoutError:
            return True
        return False

    async def _retry_until_done(self, operation: str, fn: Callable[[], Awaitable[None]]) -> bool:
        attempt = 0
        while not self._shutdown_event.is_set():
            try:
                await fn()
                return True
            except Exception as e:
                error = wrap_exception(e)
                if not self._stream_retry.should_retry(error, attempt):
                    log_exception(logger, error, f"Failed to {operation}")
                    if error is e:
                        raise
                    raise error from e

                delay = self._stream_retry.get_delay(attempt)
                attempt += 1
                self._transition(DriverState.RETRYING)
                logger.warning(
                    f"Failed to {operation}, retrying in {delay:.1f}s: {error}",
                    extra={
                        "operation": operation,
                        "attempt": attempt,
                        "delay_seconds": round(delay, 2),
                        "error_category": error.category.value,
                    },
                )
                if not await self._backoff(delay):
                    return False
                self._transition(DriverState.CONNECTING)
        return False

    def _transition(self, state: DriverState) -> None:
        previous = self.state
        if state == previous:
            return
        self.state = state

        # Streaming <-> flushing flips once per batch
        level = logging.DEBUG if DriverState.FLUSHING in (state, previous) else logging.INFO
        logger.log(
            level,
            f"Pipeline state {previous.value} -> {state.value}",
            extra={"state": state.value, "previous_state": previous.value},
        )
        metrics.record_state(state.value, _ALL_STATES)

        if self._health is not None:
            self._health.set_state(state.value)
            self._health.set_ready(
                source_connected=state in _READY_STATES,
                sink_connected=self._connection.is_connected,
            )
