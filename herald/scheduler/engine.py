"""SchedulerEngine — entry lifecycle, firing and restart recovery."""

from __future__ import annotations

import json
import logging
from datetime import datetime, timedelta
from enum import Enum
from typing import TYPE_CHECKING, Any

from herald.config import settings
from herald.scheduler.errors import (
    NotFoundError,
    SinkError,
    StoreError,
    ValidationError,
)
from herald.scheduler.interval import parse_interval
from herald.scheduler.models import ScheduleEntry, as_utc, utcnow
from herald.scheduler.recurrence import is_expired, next_after
from herald.scheduler.timers import TimerRegistry

if TYPE_CHECKING:
    from collections.abc import Awaitable, Callable

    from herald.scheduler.store import ScheduleStore

    ActionSink = Callable[[str, Any], Awaitable[bool | None]]
    SinkErrorHook = Callable[[ScheduleEntry, SinkError], Awaitable[None]]

logger = logging.getLogger(__name__)


class EngineState(Enum):
    STOPPED = "stopped"
    LOADING = "loading"
    RUNNING = "running"


class SchedulerEngine:
    """Creates, fires, reschedules and retires schedule entries.

    Args:
        store: ScheduleStore for persistence.
        sink: Async action sink ``(owner_context, payload)``.  Raising or
            returning ``False`` counts as a failed delivery.
        registry: TimerRegistry to arm timers on (built from *clock* if omitted).
        clock: Returns the current aware UTC time (injectable for tests).
        on_sink_error: Optional async hook told about every failed delivery.
    """

    def __init__(
        self,
        store: ScheduleStore,
        sink: ActionSink,
        *,
        registry: TimerRegistry | None = None,
        clock: Callable[[], datetime] | None = None,
        on_sink_error: SinkErrorHook | None = None,
    ) -> None:
        self._store = store
        self._sink = sink
        self._clock = clock or utcnow
        self._registry = registry or TimerRegistry(clock=self._clock)
        self._on_sink_error = on_sink_error
        self._state = EngineState.STOPPED
        self._in_flight: set[str] = set()
        self._cancelled: set[str] = set()
        # Writes that failed and are retried before the next mutation.
        self._pending_due: dict[str, datetime] = {}
        self._pending_deactivations: set[str] = set()

    @property
    def state(self) -> EngineState:
        return self._state

    @property
    def running(self) -> bool:
        return self._state is EngineState.RUNNING

    @property
    def registry(self) -> TimerRegistry:
        return self._registry

    # -- Lifecycle -------------------------------------------------------------

    async def start(self) -> None:
        """Load active entries, arm their timers, and start the timer loop."""
        if self._state is not EngineState.STOPPED:
            logger.warning("Scheduler already %s", self._state.value)
            return
        self._state = EngineState.LOADING
        try:
            count = await self._load()
        except Exception:
            self._state = EngineState.STOPPED
            raise
        self._registry.start()
        self._state = EngineState.RUNNING
        logger.info("Scheduler started with %d active entr(ies)", count)

    async def stop(self, timeout: float | None = None) -> None:
        """Disarm every timer, let in-flight firings finish, and stop the timer loop.

        Waits at most *timeout* seconds (default from settings) for deliveries
        that already started.
        """
        if self._state is EngineState.STOPPED:
            return
        if timeout is None:
            timeout = settings.scheduler_shutdown_timeout_seconds
        self._registry.shutdown()
        if not await self._registry.drain(timeout):
            logger.warning("In-flight firings still running after %.1fs, stopping anyway", timeout)
        # Firings that finished during the wait may have re-armed.
        self._registry.cancel_all()
        self._state = EngineState.STOPPED
        logger.info("Scheduler stopped")

    async def reload(self) -> None:
        """Drop all in-memory timers and re-arm from the store."""
        count = await self._load()
        logger.info("Reloaded %d entr(ies)", count)

    # -- Public API ------------------------------------------------------------

    async def create(
        self,
        owner_context: str,
        payload: Any,
        due_at: datetime,
        recurring: bool = False,
        interval: str | None = None,
        expires_at: datetime | None = None,
        *,
        allow_past: bool = False,
        timezone: str = "UTC",
    ) -> str:
        """Validate, persist and arm a new entry. Returns its id.

        Raises:
            ValidationError: Bad interval, past *due_at* (unless *allow_past*),
                or inconsistent fields.  Nothing is persisted.
            StoreError: The entry could not be persisted.
        """
        entry = self._build_entry(
            owner_context,
            payload,
            due_at,
            recurring=recurring,
            interval=interval,
            expires_at=expires_at,
            allow_past=allow_past,
            timezone=timezone,
        )
        await self._flush_pending()
        entry_id = await self._store.insert(entry)
        self._arm(entry)
        logger.info(
            "Created %s entry %s for %s due %s",
            f"recurring ({entry.interval})" if entry.recurring else "one-shot",
            entry_id,
            entry.owner_context,
            entry.due_at.isoformat(),
        )
        return entry_id

    async def cancel(self, entry_id: str) -> bool:
        """Deactivate an entry and disarm its timer.

        Returns False if the entry does not exist or is already inactive.
        """
        await self._flush_pending()
        self._cancelled.add(entry_id)
        try:
            deactivated = await self._store.deactivate(entry_id)
        except StoreError:
            self._cancelled.discard(entry_id)
            raise
        # A firing in flight clears the mark itself when it finishes.
        if entry_id not in self._in_flight:
            self._cancelled.discard(entry_id)
        self._registry.cancel(entry_id)
        self._pending_due.pop(entry_id, None)
        self._pending_deactivations.discard(entry_id)
        if deactivated:
            logger.info("Cancelled entry %s", entry_id)
        return deactivated

    async def list_entries(self, owner_context: str | None = None) -> list[ScheduleEntry]:
        """Active, unexpired entries, soonest first, optionally for one owner."""
        now = self._clock()
        entries = []
        for entry in await self._store.list_active():
            if owner_context is not None and entry.owner_context != owner_context:
                continue
            if is_expired(now, entry.expires_at) or entry.id in self._pending_deactivations:
                continue
            entry.due_at = self._pending_due.get(entry.id, entry.due_at)
            entries.append(entry)
        entries.sort(key=lambda e: e.due_at)
        return entries

    async def get(self, entry_id: str, *, include_inactive: bool = False) -> ScheduleEntry:
        """Fetch an entry.

        Raises:
            NotFoundError: Unknown id, or inactive and *include_inactive* is False.
        """
        entry = await self._store.get(entry_id)
        if entry is not None and entry_id in self._pending_deactivations:
            entry.active = False
        if entry is None or (not entry.active and not include_inactive):
            msg = f"Schedule entry not found: {entry_id}"
            raise NotFoundError(msg)
        entry.due_at = self._pending_due.get(entry_id, entry.due_at)
        return entry

    async def update_payload(self, entry_id: str, payload: Any) -> ScheduleEntry:
        """Replace the payload of an active entry. Its timing is unchanged."""
        _check_payload(payload)
        await self._flush_pending()
        if not await self._store.update(entry_id, payload=payload):
            msg = f"Schedule entry not found: {entry_id}"
            raise NotFoundError(msg)
        logger.info("Updated payload of entry %s", entry_id)
        return await self.get(entry_id)

    async def cleanup(self, max_age: timedelta | None = None) -> int:
        """Delete inactive entries older than *max_age* (default from settings)."""
        if max_age is None:
            max_age = timedelta(days=settings.scheduler_retention_days)
        return await self._store.purge_inactive(self._clock() - max_age)

    # -- Internal --------------------------------------------------------------

    def _build_entry(
        self,
        owner_context: str,
        payload: Any,
        due_at: datetime,
        *,
        recurring: bool,
        interval: str | None,
        expires_at: datetime | None,
        allow_past: bool,
        timezone: str,
    ) -> ScheduleEntry:
        if not isinstance(owner_context, str) or not owner_context:
            msg = "owner_context is required"
            raise ValidationError(msg)
        _check_payload(payload)
        if not isinstance(due_at, datetime):
            msg = "due_at must be a datetime"
            raise ValidationError(msg)
        due_at = as_utc(due_at)
        if not allow_past and due_at < self._clock():
            msg = f"Cannot schedule in the past: {due_at.isoformat()}"
            raise ValidationError(msg)

        if recurring:
            if interval is None:
                msg = "interval is required for recurring entries"
                raise ValidationError(msg)
            parse_interval(interval)
        elif interval is not None:
            msg = "interval is only allowed on recurring entries"
            raise ValidationError(msg)

        if expires_at is not None:
            expires_at = as_utc(expires_at)
            if expires_at <= due_at:
                msg = "expires_at must be after due_at"
                raise ValidationError(msg)

        return ScheduleEntry(
            owner_context=owner_context,
            payload=payload,
            due_at=due_at,
            recurring=bool(recurring),
            interval=interval,
            expires_at=expires_at,
            timezone=timezone,
        )

    async def _load(self) -> int:
        """Replace in-memory timers with one per active, unexpired stored entry."""
        self._registry.cancel_all()
        self._cancelled.clear()
        entries = await self._store.list_active()
        now = self._clock()
        armed = 0
        for entry in entries:
            if is_expired(now, entry.expires_at):
                logger.info("Entry %s expired while offline, deactivating", entry.id)
                await self._store.deactivate(entry.id)
                continue
            if entry.id in self._pending_deactivations:
                logger.info("Entry %s already fired, awaiting deactivation", entry.id)
                continue
            entry.due_at = self._pending_due.get(entry.id, entry.due_at)
            if entry.due_at <= now:
                logger.info(
                    "Entry %s was due at %s, firing now",
                    entry.id,
                    entry.due_at.isoformat(),
                )
            self._arm(entry)
            armed += 1
        return armed

    def _arm(self, entry: ScheduleEntry) -> None:
        self._registry.arm(entry.id, entry.due_at, self._on_fire)

    async def _on_fire(self, entry_id: str) -> None:
        """Timer callback. Delivers, then reschedules or retires the entry."""
        if entry_id in self._in_flight:
            logger.warning("Entry %s is already firing, ignoring duplicate", entry_id)
            return
        self._in_flight.add(entry_id)
        try:
            await self._fire(entry_id)
        finally:
            self._in_flight.discard(entry_id)
            self._cancelled.discard(entry_id)

    async def _fire(self, entry_id: str) -> None:
        await self._flush_pending()
        entry = await self._store.get(entry_id)
        if (
            entry is None
            or not entry.active
            or entry_id in self._cancelled
            or entry_id in self._pending_deactivations
        ):
            logger.info("Skipping missing or inactive entry %s", entry_id)
            return
        entry.due_at = self._pending_due.get(entry_id, entry.due_at)

        fired_at = self._clock()
        logger.info("Firing entry %s for %s", entry_id, entry.owner_context)
        await self._deliver(entry)

        if entry.recurring:
            await self._reschedule(entry, fired_at)
        else:
            await self._retire(entry, fired_at)

    async def _deliver(self, entry: ScheduleEntry) -> None:
        """Invoke the sink. Failures are logged and reported, never raised."""
        try:
            result = await self._sink(entry.owner_context, entry.payload)
        except Exception as exc:
            logger.exception("Delivery failed for entry %s", entry.id)
            error = SinkError(f"Action sink failed for entry {entry.id}: {exc}")
            error.__cause__ = exc
        else:
            if result is not False:
                return
            logger.error("Action sink reported failure for entry %s", entry.id)
            error = SinkError(f"Action sink reported failure for entry {entry.id}")

        if self._on_sink_error is not None:
            try:
                await self._on_sink_error(entry, error)
            except Exception:
                logger.exception("Sink error hook failed for entry %s", entry.id)

    async def _reschedule(self, entry: ScheduleEntry, fired_at: datetime) -> None:
        interval = parse_interval(entry.interval)
        try:
            next_due = next_after(entry.due_at, interval, fired_at)
        except OverflowError:
            logger.warning("Entry %s has no representable next occurrence", entry.id)
            await self._retire(entry, fired_at)
            return

        if is_expired(next_due, entry.expires_at):
            logger.info(
                "Entry %s expired (next %s, expires %s)",
                entry.id,
                next_due.isoformat(),
                entry.expires_at.isoformat(),
            )
            await self._retire(entry, fired_at)
            return

        try:
            updated = await self._store.update(
                entry.id, due_at=next_due, last_fired_at=fired_at
            )
        except StoreError:
            # Keep the timer as the source of truth and retry the write later.
            self._pending_due[entry.id] = next_due
            entry.due_at = next_due
            self._rearm(entry)
            logger.exception(
                "Could not persist next due time for entry %s; kept timer armed",
                entry.id,
            )
            raise

        self._pending_due.pop(entry.id, None)
        if not updated:
            logger.info("Entry %s was cancelled while firing; not re-arming", entry.id)
            return
        entry.due_at = next_due
        self._rearm(entry)
        logger.info("Entry %s rescheduled for %s", entry.id, next_due.isoformat())

    def _rearm(self, entry: ScheduleEntry) -> None:
        if entry.id in self._cancelled:
            return
        self._arm(entry)

    async def _retire(self, entry: ScheduleEntry, fired_at: datetime) -> None:
        self._pending_due.pop(entry.id, None)
        try:
            await self._store.update(entry.id, last_fired_at=fired_at)
            await self._store.deactivate(entry.id)
        except StoreError:
            self._pending_deactivations.add(entry.id)
            logger.exception("Could not deactivate entry %s; will retry", entry.id)
            raise

    async def _flush_pending(self) -> None:
        """Retry persistence writes that failed earlier."""
        for entry_id, due_at in list(self._pending_due.items()):
            try:
                await self._store.update(entry_id, due_at=due_at)
            except StoreError:
                logger.warning("Retry of due time write for entry %s failed", entry_id)
                return
            self._pending_due.pop(entry_id, None)
            logger.info("Persisted deferred due time for entry %s", entry_id)

        for entry_id in list(self._pending_deactivations):
            try:
                await self._store.deactivate(entry_id)
            except StoreError:
                logger.warning("Retry of deactivation for entry %s failed", entry_id)
                return
            self._pending_deactivations.discard(entry_id)
            logger.info("Persisted deferred deactivation for entry %s", entry_id)


def _check_payload(payload: Any) -> None:
    if payload is None:
        msg = "payload is required"
        raise ValidationError(msg)
    try:
        json.dumps(payload)
    except (TypeError, ValueError) as exc:
        msg = f"payload must be JSON-serialisable: {exc}"
        raise ValidationError(msg) from exc
