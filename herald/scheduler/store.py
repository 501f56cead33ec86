"""ScheduleStore — durable CRUD for schedule entries."""

from __future__ import annotations

import json
import logging
from contextlib import asynccontextmanager
from typing import TYPE_CHECKING, Any, Protocol, runtime_checkable

from herald.db import connection
from herald.scheduler.errors import StoreError
from herald.scheduler.models import ScheduleEntry, make_entry_id, to_iso

if TYPE_CHECKING:
    from collections.abc import AsyncIterator
    from datetime import datetime
    from pathlib import Path

    from herald.db import AsyncConnection

logger = logging.getLogger(__name__)

_CREATE_TABLE = """
CREATE TABLE IF NOT EXISTS schedule_entries (
    id            TEXT PRIMARY KEY,
    owner_context TEXT NOT NULL,
    payload       TEXT NOT NULL,
    due_at        TEXT NOT NULL,
    recurring     INTEGER NOT NULL DEFAULT 0,
    interval      TEXT,
    expires_at    TEXT,
    timezone      TEXT NOT NULL DEFAULT 'UTC',
    active        INTEGER NOT NULL DEFAULT 1,
    created_at    TEXT NOT NULL,
    last_fired_at TEXT
)
"""

_COLUMNS = (
    "id, owner_context, payload, due_at, recurring, interval, "
    "expires_at, timezone, active, created_at, last_fired_at"
)

# Fields the engine may change after insert, with their column encoders.
_UPDATABLE: dict[str, Any] = {
    "payload": json.dumps,
    "due_at": to_iso,
    "last_fired_at": to_iso,
}


@runtime_checkable
class ScheduleStore(Protocol):
    """Persistence contract the scheduler engine depends on.

    Every operation may raise ``StoreError`` on a transient failure.
    """

    async def insert(self, entry: ScheduleEntry) -> str:
        """Persist a new entry and return its assigned id."""
        ...

    async def update(self, entry_id: str, **fields: Any) -> bool:
        """Update fields of an active entry. Returns False if none matched."""
        ...

    async def get(self, entry_id: str) -> ScheduleEntry | None:
        ...

    async def list_active(self) -> list[ScheduleEntry]:
        ...

    async def deactivate(self, entry_id: str) -> bool:
        """Mark an entry inactive. Returns False if it was missing or already inactive."""
        ...

    async def purge_inactive(self, before: datetime) -> int:
        """Delete inactive entries last due before *before*. Returns the count."""
        ...


class SqlScheduleStore:
    """Persists schedule entries in SQLite / Turso.

    Pass an explicit *db_path* for test isolation (e.g. ``tmp_path / "test.db"``).
    Each call is a single statement in its own transaction, so writes to
    different entries never interfere.
    """

    def __init__(self, db_path: Path | None = None) -> None:
        self._db_path = db_path
        self._initialised = False

    # -- Internal helpers ------------------------------------------------------

    @asynccontextmanager
    async def _session(self) -> AsyncIterator[AsyncConnection]:
        try:
            async with connection(self._db_path) as db:
                if not self._initialised:
                    await db.execute(_CREATE_TABLE)
                    self._initialised = True
                yield db
        except StoreError:
            raise
        except Exception as exc:
            msg = f"Schedule store failure: {exc}"
            raise StoreError(msg) from exc

    # -- CRUD ------------------------------------------------------------------

    async def insert(self, entry: ScheduleEntry) -> str:
        """Insert a new entry, assigning its id. Returns the id."""
        entry.id = make_entry_id()
        async with self._session() as db:
            await db.execute(
                f"INSERT INTO schedule_entries ({_COLUMNS}) "  # noqa: S608
                "VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)",
                entry.to_row(),
            )
        logger.info("Stored schedule entry %s for %s", entry.id, entry.owner_context)
        return entry.id

    async def update(self, entry_id: str, **fields: Any) -> bool:
        """Update mutable fields of an active entry.

        Only ``payload``, ``due_at`` and ``last_fired_at`` may change.
        Returns True if a row was updated.
        """
        unknown = set(fields) - set(_UPDATABLE)
        if unknown:
            msg = f"Cannot update field(s): {', '.join(sorted(unknown))}"
            raise ValueError(msg)
        if not fields:
            return False

        assignments = ", ".join(f"{name} = ?" for name in fields)
        values = tuple(_UPDATABLE[name](value) for name, value in fields.items())
        async with self._session() as db:
            cursor = await db.execute(
                f"UPDATE schedule_entries SET {assignments} "  # noqa: S608
                "WHERE id = ? AND active = 1",
                (*values, entry_id),
            )
            return cursor.rowcount > 0

    async def get(self, entry_id: str) -> ScheduleEntry | None:
        """Fetch an entry by ID, or None if not found."""
        async with self._session() as db:
            cursor = await db.execute(
                f"SELECT {_COLUMNS} FROM schedule_entries WHERE id = ?",  # noqa: S608
                (entry_id,),
            )
            row = await cursor.fetchone()
        return ScheduleEntry.from_row(row) if row else None

    async def list_active(self) -> list[ScheduleEntry]:
        """Return all active entries, soonest first."""
        async with self._session() as db:
            cursor = await db.execute(
                f"SELECT {_COLUMNS} FROM schedule_entries "  # noqa: S608
                "WHERE active = 1 ORDER BY due_at, created_at"
            )
            rows = await cursor.fetchall()
        return [ScheduleEntry.from_row(row) for row in rows]

    async def deactivate(self, entry_id: str) -> bool:
        """Mark an entry inactive. Returns True only if it was active."""
        async with self._session() as db:
            cursor = await db.execute(
                "UPDATE schedule_entries SET active = 0 WHERE id = ? AND active = 1",
                (entry_id,),
            )
            updated = cursor.rowcount > 0
        if updated:
            logger.info("Deactivated schedule entry: %s", entry_id)
        return updated

    async def purge_inactive(self, before: datetime) -> int:
        """Delete inactive entries whose last due time is before *before*."""
        async with self._session() as db:
            cursor = await db.execute(
                "DELETE FROM schedule_entries WHERE active = 0 AND due_at < ?",
                (to_iso(before),),
            )
            deleted = cursor.rowcount
        if deleted:
            logger.info("Purged %d inactive schedule entr(ies)", deleted)
        return deleted
