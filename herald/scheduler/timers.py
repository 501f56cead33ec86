"""TimerRegistry — one in-memory timer per schedule entry, driven by APScheduler."""

from __future__ import annotations

import asyncio
import contextlib
import logging
from dataclasses import dataclass
from datetime import UTC, datetime, timedelta
from typing import TYPE_CHECKING

from apscheduler.jobstores.base import JobLookupError
from apscheduler.schedulers.asyncio import AsyncIOScheduler
from apscheduler.triggers.date import DateTrigger

from herald.config import settings
from herald.scheduler.models import utcnow

if TYPE_CHECKING:
    from collections.abc import Awaitable, Callable, Coroutine
    from typing import Any

    FireCallback = Callable[[str], Awaitable[None]]

logger = logging.getLogger(__name__)


@dataclass
class _Timer:
    due_at: datetime
    on_fire: FireCallback
    wake_at: datetime
    hops: int = 0
    task: asyncio.Task | None = None


class TimerRegistry:
    """Maps entry ids to armed timers and fires a callback when each comes due.

    A single APScheduler job never waits longer than *max_wait*.  Longer
    delays are covered by a chain of intermediate wake-ups, each re-arming
    for the remaining time, so a ``1y`` entry neither fires early nor
    overflows the timer.

    Args:
        clock: Returns the current aware UTC time (injectable for tests).
        max_wait: Longest single wait (default from settings).
        timezone: Scheduler timezone (default from settings).
    """

    def __init__(
        self,
        *,
        clock: Callable[[], datetime] | None = None,
        max_wait: timedelta | None = None,
        timezone: str | None = None,
    ) -> None:
        self._clock = clock or utcnow
        self._max_wait = max_wait or timedelta(seconds=settings.scheduler_max_wait_seconds)
        self._scheduler = AsyncIOScheduler(timezone=timezone or settings.scheduler_timezone)
        self._timers: dict[str, _Timer] = {}
        self._tasks: set[asyncio.Task] = set()

    @property
    def running(self) -> bool:
        return self._scheduler.running

    @property
    def max_wait(self) -> timedelta:
        return self._max_wait

    # -- Lifecycle -------------------------------------------------------------

    def start(self) -> None:
        if not self._scheduler.running:
            self._scheduler.start()

    def shutdown(self) -> None:
        """Cancel every timer and stop the underlying scheduler."""
        self.cancel_all()
        if self._scheduler.running:
            self._scheduler.shutdown(wait=False)

    async def drain(self, timeout: float | None = None) -> bool:
        """Wait until no fire callbacks are in flight.

        Returns False if callbacks were still running after *timeout* seconds.
        Callbacks are never cancelled here.
        """
        loop = asyncio.get_running_loop()
        deadline = None if timeout is None else loop.time() + timeout
        while self._tasks:
            remaining = None if deadline is None else deadline - loop.time()
            if remaining is not None and remaining <= 0:
                return False
            await asyncio.wait(set(self._tasks), timeout=remaining)
        return True

    # -- Arming ----------------------------------------------------------------

    def arm(self, entry_id: str, due_at: datetime, on_fire: FireCallback) -> None:
        """Arm a timer for *entry_id*, replacing any existing one.

        A *due_at* at or before now fires on the next event-loop tick.
        """
        self.cancel(entry_id)
        timer = _Timer(due_at=due_at, on_fire=on_fire, wake_at=due_at)
        self._timers[entry_id] = timer
        self._schedule(entry_id, timer)

    def cancel(self, entry_id: str) -> bool:
        """Disarm *entry_id*. Returns False if nothing was armed."""
        timer = self._timers.pop(entry_id, None)
        self._remove_job(entry_id)
        if timer is None:
            return False
        if timer.task is not None and not timer.task.done():
            timer.task.cancel()
        logger.debug("Disarmed timer for %s", entry_id)
        return True

    def cancel_all(self) -> None:
        for entry_id in list(self._timers):
            self.cancel(entry_id)

    # -- Introspection ---------------------------------------------------------

    def is_armed(self, entry_id: str) -> bool:
        return entry_id in self._timers

    def armed_ids(self) -> set[str]:
        return set(self._timers)

    def next_wakeup(self, entry_id: str) -> datetime | None:
        """When the timer for *entry_id* next wakes (an intermediate hop or the firing)."""
        timer = self._timers.get(entry_id)
        return timer.wake_at if timer else None

    def due_at(self, entry_id: str) -> datetime | None:
        """When the timer for *entry_id* will fire."""
        timer = self._timers.get(entry_id)
        return timer.due_at if timer else None

    # -- Internal --------------------------------------------------------------

    def _schedule(self, entry_id: str, timer: _Timer) -> None:
        now = self._clock()
        delay = timer.due_at - now
        self._remove_job(entry_id)

        if delay <= timedelta(0):
            timer.wake_at = now
            timer.task = self._spawn(self._fire(entry_id, timer))
            return

        delay = min(delay, self._max_wait)
        timer.wake_at = now + delay
        # APScheduler runs on the real wall clock; only the delay comes from ours.
        self._scheduler.add_job(
            self._wake,
            trigger=DateTrigger(run_date=datetime.now(UTC) + delay),
            id=entry_id,
            args=[entry_id],
            misfire_grace_time=None,
            replace_existing=True,
        )

    async def _wake(self, entry_id: str) -> None:
        """APScheduler job: fire if due, otherwise re-arm for the remainder."""
        timer = self._timers.get(entry_id)
        if timer is None:
            return
        if timer.due_at > self._clock():
            timer.hops += 1
            logger.debug(
                "Intermediate wake-up %d for %s, due %s",
                timer.hops,
                entry_id,
                timer.due_at.isoformat(),
            )
            self._schedule(entry_id, timer)
            return
        timer.task = self._spawn(self._fire(entry_id, timer))

    async def _fire(self, entry_id: str, timer: _Timer) -> None:
        if self._timers.get(entry_id) is not timer:
            return
        del self._timers[entry_id]
        try:
            await timer.on_fire(entry_id)
        except Exception:
            logger.exception("Timer callback failed for %s", entry_id)

    def _spawn(self, coro: Coroutine[Any, Any, None]) -> asyncio.Task:
        task = asyncio.get_running_loop().create_task(coro)
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)
        return task

    def _remove_job(self, entry_id: str) -> None:
        with contextlib.suppress(JobLookupError):
            self._scheduler.remove_job(entry_id)
