"""Thin session gateway over the async engine.

The lock and the write transaction only need three things from the store:
a transaction at a chosen isolation level, a one-shot statement that reports
how many rows it touched, and the name of the schema tables live in.
"""

from __future__ import annotations

from contextlib import asynccontextmanager
from typing import AsyncIterator

from sqlalchemy.ext.asyncio import AsyncConnection, AsyncEngine
from sqlalchemy.sql import Executable

# SQLite has no REPEATABLE READ; SERIALIZABLE is its strictest (and only
# non-autocommit) level, which gives the same guarantees for our statements.
_REPEATABLE_READ_BY_DIALECT = {
    "postgresql": "REPEATABLE READ",
    "sqlite": "SERIALIZABLE",
}


class StoreGateway:
    def __init__(self, engine: AsyncEngine, schema_name: str | None = None) -> None:
        self._engine = engine
        self._schema_name = schema_name
        self._isolated: dict[str, AsyncEngine] = {}

    @property
    def engine(self) -> AsyncEngine:
        return self._engine

    @property
    def schema_name(self) -> str | None:
        return self._schema_name

    @property
    def dialect_name(self) -> str:
        return self._engine.dialect.name

    @property
    def repeatable_read(self) -> str:
        """Isolation level name equivalent to REPEATABLE READ on this dialect."""
        return _REPEATABLE_READ_BY_DIALECT.get(self.dialect_name, "REPEATABLE READ")

    def _engine_for(self, isolation_level: str | None) -> AsyncEngine:
        if isolation_level is None:
            return self._engine
        if isolation_level not in self._isolated:
            # Shares the parent's pool; the level is reset when the
            # connection goes back to it.
            self._isolated[isolation_level] = self._engine.execution_options(
                isolation_level=isolation_level
            )
        return self._isolated[isolation_level]

    @asynccontextmanager
    async def begin(self, isolation_level: str | None = None) -> AsyncIterator[AsyncConnection]:
        """Yield a connection inside a transaction; commit on exit, roll back on error."""
        async with self._engine_for(isolation_level).begin() as conn:
            yield conn

    async def execute(self, statement: Executable) -> int:
        """Run *statement* in its own transaction and return the affected row count."""
        async with self._engine.begin() as conn:
            result = await conn.execute(statement)
            return result.rowcount

    async def dispose(self) -> None:
        await self._engine.dispose()
