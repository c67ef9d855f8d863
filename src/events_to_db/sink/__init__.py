"""Relational sink: connection lifecycle, table schema and batch writer."""

from events_to_db.sink.connection import SinkConnection, translate_error
from events_to_db.sink.schema import EXPECTED_COLUMNS, PRIMARY_KEY, events_table
from events_to_db.sink.writer import SinkWriter, WriteResult

__all__ = [
    "SinkConnection",
    "SinkWriter",
    "WriteResult",
    "events_table",
    "translate_error",
    "EXPECTED_COLUMNS",
    "PRIMARY_KEY",
]
