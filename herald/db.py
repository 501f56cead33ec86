"""Async access to the schedule database over libsql.

The ``libsql`` driver is synchronous; every call is pushed onto a worker
thread with ``asyncio.to_thread()``.  The target is chosen from settings:

- ``TURSO_DATABASE_URL`` + ``TURSO_AUTH_TOKEN`` → remote Turso database
- otherwise → local SQLite file at ``database_path``
"""

from __future__ import annotations

import asyncio
from contextlib import asynccontextmanager
from typing import TYPE_CHECKING, Any

import libsql

from herald.config import settings

if TYPE_CHECKING:
    from collections.abc import AsyncIterator
    from pathlib import Path


class AsyncCursor:
    """Async facade for a libsql cursor."""

    def __init__(self, cursor: Any) -> None:
        self._cursor = cursor

    async def fetchone(self) -> tuple | None:
        return await asyncio.to_thread(self._cursor.fetchone)

    async def fetchall(self) -> list[tuple]:
        return await asyncio.to_thread(self._cursor.fetchall)

    @property
    def rowcount(self) -> int:
        return self._cursor.rowcount


class AsyncConnection:
    """Async facade for a libsql connection."""

    def __init__(self, conn: Any) -> None:
        self._conn = conn

    async def execute(self, sql: str, params: tuple = ()) -> AsyncCursor:
        cursor = await asyncio.to_thread(self._conn.execute, sql, params)
        return AsyncCursor(cursor)

    async def commit(self) -> None:
        await asyncio.to_thread(self._conn.commit)

    async def rollback(self) -> None:
        await asyncio.to_thread(self._conn.rollback)

    async def close(self) -> None:
        await asyncio.to_thread(self._conn.close)


def _open_local(path: str) -> Any:
    conn = libsql.connect(path)
    conn.execute("PRAGMA journal_mode=WAL")
    conn.execute("PRAGMA busy_timeout=5000")
    return conn


async def get_connection(local_path_override: Path | None = None) -> AsyncConnection:
    """Open a connection to the schedule database.

    *local_path_override* (used for test isolation) always wins over the
    Turso and ``database_path`` settings.
    """
    if local_path_override is None and settings.turso_database_url:
        conn = await asyncio.to_thread(
            libsql.connect,
            database=settings.turso_database_url,
            auth_token=settings.turso_auth_token,
        )
        return AsyncConnection(conn)

    path = local_path_override or settings.database_path
    path.parent.mkdir(parents=True, exist_ok=True)
    conn = await asyncio.to_thread(_open_local, str(path))
    return AsyncConnection(conn)


@asynccontextmanager
async def connection(local_path_override: Path | None = None) -> AsyncIterator[AsyncConnection]:
    """Yield a connection that commits on success and rolls back on error."""
    db = await get_connection(local_path_override)
    try:
        yield db
        await db.commit()
    except BaseException:
        await db.rollback()
        raise
    finally:
        await db.close()
