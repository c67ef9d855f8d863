"""
Sink connection lifecycle.

SinkConnection owns the SQLAlchemy async engine. The pipeline driver opens
it at startup, hands it to the writer and the offset resolver, and closes
it on shutdown; nothing else keeps global database state.
"""

import asyncio
import logging
from collections.abc import AsyncIterator, Callable
from contextlib import asynccontextmanager
from typing import Any, TypeVar

from sqlalchemy import text
from sqlalchemy.engine import URL, Row, make_url
from sqlalchemy.exc import (
    ArgumentError,
    DataError,
    IntegrityError,
    NoSuchModuleError,
    ProgrammingError,
    SQLAlchemyError,
)
from sqlalchemy.ext.asyncio import AsyncConnection, AsyncEngine, create_async_engine

from core.errors import (
    ConfigurationError,
    PipelineError,
    SinkError,
    SinkQueryError,
)

logger = logging.getLogger(__name__)

T = TypeVar("T")

DEFAULT_DRIVER = "postgresql+asyncpg"

# Errors the driver should back off from rather than die on
_TRANSIENT_ERRORS = (SQLAlchemyError, OSError, asyncio.TimeoutError)


def translate_error(exc: BaseException, operation: str) -> PipelineError:
    """Map a database driver error onto the relay's error taxonomy.

    SQL the database rejects (syntax, data, constraint) is permanent:
    resending the same statement will fail the same way. Everything else
    (connection refused, reset, pool timeout, server shutting down) is
    transient.
    """
    if isinstance(exc, PipelineError):
        return exc

    context = {"operation": operation, "error_type": type(exc).__name__}
    message = f"Database {operation} failed: {str(exc).splitlines()[0] if str(exc) else type(exc).__name__}"

    if isinstance(exc, (ProgrammingError, DataError, IntegrityError)):
        return SinkQueryError(message, cause=exc, context=context)
    return SinkError(message, cause=exc, context=context)


class SinkConnection:
    """Explicit acquire/release wrapper around an AsyncEngine.

    Args:
        url: SQLAlchemy async database URL
        engine_kwargs: Extra create_async_engine() arguments
    """

    def __init__(self, url: str | URL, **engine_kwargs: Any):
        try:
            self.url = make_url(url)
        except ArgumentError as e:
            raise ConfigurationError(f"Invalid database URL: {e}", cause=e) from e
        self._engine_kwargs = {"pool_pre_ping": True, **engine_kwargs}
        self._engine: AsyncEngine | None = None

    @classmethod
    def from_config(cls, config) -> "SinkConnection":
        """Build from RelayConfig: explicit database_url, else host/port/user/name."""
        if config.database_url:
            return cls(config.database_url)
        url = URL.create(
            DEFAULT_DRIVER,
            username=config.db_user or None,
            password=config.db_password or None,
            host=config.db_host,
            port=config.db_port,
            database=config.db_name,
        )
        return cls(url)

    @property
    def is_connected(self) -> bool:
        return self._engine is not None

    @property
    def dialect_name(self) -> str:
        return self.url.get_dialect().name

    @property
    def safe_url(self) -> str:
        return self.url.render_as_string(hide_password=True)

    @property
    def engine(self) -> AsyncEngine:
        if self._engine is None:
            raise RuntimeError("SinkConnection is not connected; call connect() first")
        return self._engine

    async def connect(self) -> None:
        """Create the engine and verify the database answers."""
        if self._engine is not None:
            return

        logger.info("Connecting to database", extra={"database_url": self.safe_url})
        try:
            engine = create_async_engine(self.url, **self._engine_kwargs)
        except (ArgumentError, NoSuchModuleError) as e:
            raise ConfigurationError(
                f"Unsupported database URL {self.safe_url}: {e}", cause=e
            ) from e

        try:
            async with engine.connect() as conn:
                await conn.execute(text("SELECT 1"))
        except _TRANSIENT_ERRORS as e:
            await engine.dispose()
            raise translate_error(e, "connect") from e

        self._engine = engine
        logger.info("Successfully connected to database")

    async def close(self) -> None:
        if self._engine is None:
            return
        engine, self._engine = self._engine, None
        await engine.dispose()
        logger.info("Database connection closed")

    async def query(self, statement, params: dict[str, Any] | None = None) -> list[Row]:
        """Run a SELECT and return all rows."""
        try:
            async with self.engine.connect() as conn:
                result = await conn.execute(statement, params)
                return list(result.fetchall())
        except _TRANSIENT_ERRORS as e:
            raise translate_error(e, "query") from e

    async def execute(self, statement, params: Any = None) -> int:
        """Run a statement in its own transaction; returns rows affected."""
        async with self.transaction() as conn:
            result = await conn.execute(statement, params)
            return result.rowcount

    @asynccontextmanager
    async def transaction(self) -> AsyncIterator[AsyncConnection]:
        """Begin on entry, commit on clean exit, roll back on error."""
        try:
            async with self.engine.begin() as conn:
                yield conn
        except _TRANSIENT_ERRORS as e:
            raise translate_error(e, "transaction") from e

    async def run_sync(self, fn: Callable[..., T]) -> T:
        """Run fn(sync_connection) inside a transaction (DDL, inspection)."""
        async with self.transaction() as conn:
            return await conn.run_sync(fn)
