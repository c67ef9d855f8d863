"""Event table definition and compatibility check."""

from sqlalchemy import (
    JSON,
    BigInteger,
    Column,
    MetaData,
    PrimaryKeyConstraint,
    Table,
    Text,
)
from sqlalchemy.dialects.postgresql import JSONB
from sqlalchemy.types import Integer, String

from core.errors import SchemaMismatchError

__all__ = [
    "EXPECTED_COLUMNS",
    "PRIMARY_KEY",
    "check_compatible",
    "events_table",
]

# Column name -> SQLAlchemy type family it must reflect as
EXPECTED_COLUMNS = {
    "source": String,
    "semantics": String,
    "name": String,
    "seq": Integer,
    "offset": Integer,
    "timestamp": Integer,
    "payload": JSON,
}

PRIMARY_KEY = ("source", "offset")

# JSONB on PostgreSQL, generic JSON elsewhere; a None payload is stored as JSON null
PAYLOAD_TYPE = JSON().with_variant(JSONB(), "postgresql")


def events_table(name: str, metadata: MetaData | None = None) -> Table:
    """Build the event table; ``name`` may be schema-qualified ("analytics.events")."""
    schema, _, table_name = name.rpartition(".")
    return Table(
        table_name,
        metadata if metadata is not None else MetaData(),
        Column("source", Text, nullable=False),
        Column("semantics", Text, nullable=False),
        Column("name", Text, nullable=False),
        Column("seq", BigInteger, nullable=False),
        Column("offset", BigInteger, nullable=False),
        Column("timestamp", BigInteger, nullable=False),
        Column("payload", PAYLOAD_TYPE, nullable=True),
        PrimaryKeyConstraint(*PRIMARY_KEY),
        schema=schema or None,
    )


def check_compatible(table_name: str, columns: list[dict], primary_key: dict) -> None:
    """Compare reflected table metadata with the expected layout.

    Args:
        table_name: Table name, for the error message
        columns: Inspector.get_columns() output
        primary_key: Inspector.get_pk_constraint() output

    Raises:
        SchemaMismatchError: Column set, column types or primary key differ
    """
    reflected = {col["name"]: col["type"] for col in columns}

    missing = sorted(set(EXPECTED_COLUMNS) - set(reflected))
    extra = sorted(set(reflected) - set(EXPECTED_COLUMNS))
    if missing or extra:
        details = []
        if missing:
            details.append(f"missing columns {missing}")
        if extra:
            details.append(f"unexpected columns {extra}")
        raise SchemaMismatchError(table_name, ", ".join(details))

    wrong_types = [
        f"{name} is {reflected[name]}"
        for name, family in EXPECTED_COLUMNS.items()
        if not isinstance(reflected[name], family)
    ]
    if wrong_types:
        raise SchemaMismatchError(table_name, "; ".join(wrong_types))

    pk_columns = tuple(primary_key.get("constrained_columns") or ())
    if set(pk_columns) != set(PRIMARY_KEY) or len(pk_columns) != len(PRIMARY_KEY):
        raise SchemaMismatchError(
            table_name,
            f"primary key is {list(pk_columns)}, expected {list(PRIMARY_KEY)}",
        )
