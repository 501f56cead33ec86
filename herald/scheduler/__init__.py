"""Deferred and recurring execution — parsing, persistence, timers and firing."""

from herald.scheduler.dispatch import ActionDispatcher, reminder_time, task_reminder_payload
from herald.scheduler.engine import EngineState, SchedulerEngine
from herald.scheduler.errors import (
    NotFoundError,
    ParseError,
    SchedulerError,
    SinkError,
    StoreError,
    ValidationError,
)
from herald.scheduler.interval import Interval, Unit, parse_interval
from herald.scheduler.models import ScheduleEntry
from herald.scheduler.recurrence import is_expired, next_after, next_occurrence
from herald.scheduler.store import ScheduleStore, SqlScheduleStore
from herald.scheduler.timers import TimerRegistry

__all__ = [
    "ActionDispatcher",
    "EngineState",
    "Interval",
    "NotFoundError",
    "ParseError",
    "ScheduleEntry",
    "ScheduleStore",
    "SchedulerEngine",
    "SchedulerError",
    "SinkError",
    "SqlScheduleStore",
    "StoreError",
    "TimerRegistry",
    "Unit",
    "ValidationError",
    "is_expired",
    "next_after",
    "next_occurrence",
    "parse_interval",
    "reminder_time",
    "task_reminder_payload",
]
