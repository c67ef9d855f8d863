"""
Idempotent batch writer.

Every batch is written in one transaction with
``INSERT ... ON CONFLICT (source, offset) DO NOTHING``: the whole batch
commits or none of it does, and replaying a batch (after a failed commit or
a resubscribe) never duplicates rows. On a key conflict the row already in
the table wins.
"""

import logging
import time
from collections.abc import Sequence
from dataclasses import dataclass

from sqlalchemy import inspect
from sqlalchemy.dialects import postgresql, sqlite

from core.errors import ConfigurationError
from events_to_db.sink.connection import SinkConnection
from events_to_db.sink.schema import PRIMARY_KEY, check_compatible, events_table
from events_to_db.types import Event

logger = logging.getLogger(__name__)

# Keeps bind parameters per statement (7 per row) under driver limits
MAX_ROWS_PER_STATEMENT = 1000

_INSERT_CONSTRUCTS = {
    "postgresql": postgresql.insert,
    "sqlite": sqlite.insert,
}


@dataclass(frozen=True)
class WriteResult:
    """Outcome of one committed batch."""

    attempted: int
    inserted: int
    duration_ms: float
    sources: tuple[str, ...] = ()

    @property
    def duplicates(self) -> int:
        return self.attempted - self.inserted

    @property
    def records_per_second(self) -> float:
        if self.duration_ms <= 0:
            return 0.0
        return self.attempted / (self.duration_ms / 1000)


class SinkWriter:
    """Creates the event table and persists batches into it.

    Single-writer: one instance per table per process, driven by the
    pipeline driver's writer task.
    """

    def __init__(self, connection: SinkConnection, table_name: str = "events"):
        self._connection = connection
        self.table_name = table_name
        self.table = events_table(table_name)

        insert = _INSERT_CONSTRUCTS.get(connection.dialect_name)
        if insert is None:
            raise ConfigurationError(
                f"Unsupported sink dialect '{connection.dialect_name}'; "
                f"expected one of {sorted(_INSERT_CONSTRUCTS)}"
            )
        self._insert = insert

    async def ensure_table(self) -> None:
        """Create the table if missing, then verify an existing one matches.

        Never alters an existing table.

        Raises:
            SchemaMismatchError: Existing table has a different layout
            SinkError: Database unreachable
        """
        logger.info(f"Creating table {self.table_name} if it does not exist")
        await self._connection.run_sync(self._create_and_check)
        logger.info(f"Table {self.table_name} is ready")

    def _create_and_check(self, sync_conn) -> None:
        self.table.metadata.create_all(sync_conn, tables=[self.table], checkfirst=True)

        inspector = inspect(sync_conn)
        check_compatible(
            self.table_name,
            inspector.get_columns(self.table.name, schema=self.table.schema),
            inspector.get_pk_constraint(self.table.name, schema=self.table.schema),
        )

    def _insert_statement(self, rows: list[dict]):
        return (
            self._insert(self.table)
            .values(rows)
            .on_conflict_do_nothing(index_elements=list(PRIMARY_KEY))
        )

    async def write_batch(self, batch: Sequence[Event]) -> WriteResult:
        """Persist a batch atomically.

        Returns:
            WriteResult with the number of new rows; already present keys
            are skipped silently

        Raises:
            SinkError: Connection lost or transaction failed (retry the batch)
            SinkQueryError: Database rejected the statement
        """
        if not batch:
            return WriteResult(attempted=0, inserted=0, duration_ms=0.0)

        rows = [event.to_row() for event in batch]
        sources = tuple(sorted({event.source for event in batch}))

        start = time.perf_counter()
        inserted = 0
        async with self._connection.transaction() as conn:
            for i in range(0, len(rows), MAX_ROWS_PER_STATEMENT):
                chunk = rows[i : i + MAX_ROWS_PER_STATEMENT]
                result = await conn.execute(self._insert_statement(chunk))
                # Some drivers report -1 when the count is unknown
                inserted += result.rowcount if result.rowcount >= 0 else len(chunk)
        duration_ms = (time.perf_counter() - start) * 1000

        write_result = WriteResult(
            attempted=len(rows),
            inserted=inserted,
            duration_ms=round(duration_ms, 2),
            sources=sources,
        )
        logger.info(
            f"Wrote {write_result.attempted} record(s) in {write_result.duration_ms:.0f} ms "
            f"({write_result.records_per_second:.0f} records/sec). "
            f"Source(s): {', '.join(sources)}",
            extra={
                "batch_size": write_result.attempted,
                "rows_inserted": write_result.inserted,
                "duration_ms": write_result.duration_ms,
                "records_per_second": round(write_result.records_per_second, 1),
                "sources": list(sources),
            },
        )
        return write_result
