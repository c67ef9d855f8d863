"""Shared fixtures for relay tests."""

import pytest

from events_to_db.sink import SinkConnection
from events_to_db.types import Event


def _make_event(
    source: str = "a",
    offset: int = 0,
    semantics: str = "orders",
    name: str = "order-1",
    seq: int | None = None,
    timestamp: int = 1_600_000_000_000_000,
    payload=None,
) -> Event:
    return Event(
        source=source,
        semantics=semantics,
        name=name,
        seq=offset if seq is None else seq,
        offset=offset,
        timestamp=timestamp,
        payload={"offset": offset} if payload is None else payload,
    )


@pytest.fixture
def make_event():
    """Factory for events with sensible defaults."""
    return _make_event


@pytest.fixture
def sqlite_url(tmp_path) -> str:
    return f"sqlite+aiosqlite:///{tmp_path / 'relay.db'}"


@pytest.fixture
async def connection(sqlite_url):
    """Connected sink on a throwaway SQLite database."""
    conn = SinkConnection(sqlite_url)
    await conn.connect()
    yield conn
    await conn.close()
