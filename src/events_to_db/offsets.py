"""
Start offset resolution.

The sink table is the only record of progress: on every (re)subscribe the
driver asks the resolver where each source should resume, and the resolver
derives it from ``max(offset)`` of the rows already persisted.
"""

import logging

from sqlalchemy import func, select

from events_to_db.sink.connection import SinkConnection
from events_to_db.sink.schema import events_table
from events_to_db.types import BEGINNING_OFFSET

logger = logging.getLogger(__name__)

__all__ = [
    "OffsetResolver",
]


class OffsetResolver:
    """Derives per-source resume offsets from the sink.

    A failed query raises SinkError (transient) and is never read as
    "no prior data", which would replay every source from the beginning.
    """

    def __init__(self, connection: SinkConnection, table_name: str = "events"):
        self._connection = connection
        self.table = events_table(table_name)

    async def resolve_start(self, source: str, force_from_start: bool = False) -> int:
        """First offset to request for one source.

        Returns BEGINNING_OFFSET when forced or when the source has no rows,
        otherwise ``max(offset) + 1``.
        """
        if force_from_start:
            return BEGINNING_OFFSET

        offset_col = self.table.c["offset"]
        stmt = select(func.max(offset_col)).where(self.table.c.source == source)
        rows = await self._connection.query(stmt)
        watermark = rows[0][0] if rows else None
        if watermark is None:
            return BEGINNING_OFFSET
        return int(watermark) + 1

    async def resolve_all(self, force_from_start: bool = False) -> dict[str, int]:
        """Resume offsets for every source already present in the sink.

        Sources missing from the result start at BEGINNING_OFFSET, which is
        what a wildcard subscription needs for sources it has not seen yet.
        """
        if force_from_start:
            logger.info("Reading all sources from the beginning (from_start is set)")
            return {}

        offset_col = self.table.c["offset"]
        stmt = select(self.table.c.source, func.max(offset_col)).group_by(self.table.c.source)
        rows = await self._connection.query(stmt)

        start_offsets = {
            str(source): int(watermark) + 1
            for source, watermark in rows
            if watermark is not None
        }
        logger.debug(
            f"Resume offsets for {len(start_offsets)} source(s)",
            extra={
                "source_count": len(start_offsets),
                "offsets": start_offsets,
            },
        )
        return start_offsets
