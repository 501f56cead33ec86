"""ScheduleEntry data model."""

from __future__ import annotations

import json
import uuid
from dataclasses import dataclass, field
from datetime import UTC, datetime
from typing import Any

from herald.scheduler.interval import Interval, parse_interval


def utcnow() -> datetime:
    """Current time as an aware UTC datetime."""
    return datetime.now(UTC)


def as_utc(moment: datetime) -> datetime:
    """Normalise *moment* to aware UTC; naive values are taken to be UTC."""
    if moment.tzinfo is None:
        return moment.replace(tzinfo=UTC)
    return moment.astimezone(UTC)


def to_iso(moment: datetime | None) -> str | None:
    """Serialise a timestamp with a fixed width so stored values sort correctly."""
    if moment is None:
        return None
    return as_utc(moment).isoformat(timespec="microseconds")


def from_iso(value: str | None) -> datetime | None:
    if not value:
        return None
    return as_utc(datetime.fromisoformat(value))


def make_entry_id() -> str:
    """Generate a new entry ID."""
    return uuid.uuid4().hex


@dataclass
class ScheduleEntry:
    """A single deferred or recurring firing.

    Attributes:
        owner_context: Where the fired action is delivered (chat, user, group).
        payload: JSON-serialisable data handed to the action sink.
        due_at: Next (or only) firing time, aware UTC.
        recurring: Whether the entry reschedules itself after firing.
        interval: Recurrence string such as ``"1d"``; ``None`` for one-shots.
        expires_at: No occurrence at or after this time is scheduled.
        timezone: Caller's IANA timezone name, stored but not interpreted.
        active: False once no future firing will occur.
        id: Assigned by the store on insert.
        created_at: Audit timestamp.
        last_fired_at: When the entry last fired.
    """

    owner_context: str
    payload: Any
    due_at: datetime
    recurring: bool = False
    interval: str | None = None
    expires_at: datetime | None = None
    timezone: str = "UTC"
    active: bool = True
    id: str = ""
    created_at: datetime = field(default_factory=utcnow)
    last_fired_at: datetime | None = None

    # -- Convenience properties ------------------------------------------------

    @property
    def is_one_off(self) -> bool:
        return not self.recurring

    @property
    def parsed_interval(self) -> Interval | None:
        """The parsed interval, or ``None`` for one-shot entries."""
        if self.interval is None:
            return None
        return parse_interval(self.interval)

    # -- Serialization ---------------------------------------------------------

    def to_row(self) -> tuple:
        """Serialize to a tuple matching the ``schedule_entries`` column order."""
        return (
            self.id,
            self.owner_context,
            json.dumps(self.payload),
            to_iso(self.due_at),
            int(self.recurring),
            self.interval,
            to_iso(self.expires_at),
            self.timezone,
            int(self.active),
            to_iso(self.created_at),
            to_iso(self.last_fired_at),
        )

    @classmethod
    def from_row(cls, row: tuple) -> ScheduleEntry:
        """Deserialize from a database row tuple."""
        return cls(
            id=row[0],
            owner_context=row[1],
            payload=json.loads(row[2]),
            due_at=from_iso(row[3]),
            recurring=bool(row[4]),
            interval=row[5],
            expires_at=from_iso(row[6]),
            timezone=row[7] or "UTC",
            active=bool(row[8]),
            created_at=from_iso(row[9]),
            last_fired_at=from_iso(row[10]),
        )
