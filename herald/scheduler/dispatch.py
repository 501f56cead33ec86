"""ActionDispatcher — turns fired payloads into outbound chat messages."""

from __future__ import annotations

import logging
from datetime import timedelta
from typing import TYPE_CHECKING, Any

from herald.scheduler.models import as_utc, from_iso, to_iso, utcnow

if TYPE_CHECKING:
    from collections.abc import Awaitable, Callable
    from datetime import datetime

logger = logging.getLogger(__name__)

MESSAGE = "message"
TASK_REMINDER = "task_reminder"

DEFAULT_REMINDER_LEAD = timedelta(hours=1)


class ActionDispatcher:
    """Action sink for scheduled broadcasts and task-due reminders.

    Payload shapes:

    - ``"plain text"`` or ``{"type": "message", "text": "..."}`` — sent as-is.
    - ``{"type": "task_reminder", "task_id": ..., "title": ..., "due_at": ...}``
      — rendered as a reminder that the task is due soon.

    Args:
        send: Transport ``(owner_context, text)`` returning True on delivery.
    """

    def __init__(self, send: Callable[[str, str], Awaitable[bool]]) -> None:
        self._send = send

    async def __call__(self, owner_context: str, payload: Any) -> bool:
        text = self.render(payload)
        if not text:
            logger.warning("Scheduled payload for %s rendered empty, skipping", owner_context)
            return True
        logger.info("Dispatching scheduled message to %s (%d chars)", owner_context, len(text))
        return await self._send(owner_context, text)

    def render(self, payload: Any) -> str:
        """Render a payload to message text. Raises ValueError for unknown shapes."""
        if isinstance(payload, str):
            return payload
        if not isinstance(payload, dict):
            msg = f"Unsupported payload: {type(payload).__name__}"
            raise ValueError(msg)

        kind = payload.get("type", "")
        if kind == MESSAGE:
            return str(payload.get("text", ""))
        if kind == TASK_REMINDER:
            return _render_task_reminder(payload)
        msg = f"Unknown payload type: {kind}"
        raise ValueError(msg)


def _render_task_reminder(payload: dict[str, Any]) -> str:
    title = payload.get("title") or f"#{payload.get('task_id', '?')}"
    due_at = from_iso(payload.get("due_at"))
    if due_at is None:
        return f'Task reminder: "{title}" is due soon!'
    return f'Task reminder: "{title}" is due soon! Due: {due_at:%Y-%m-%d %H:%M} UTC'


def task_reminder_payload(task_id: int | str, title: str, due_at: datetime) -> dict[str, Any]:
    """Build the payload for a task-due reminder."""
    return {
        "type": TASK_REMINDER,
        "task_id": task_id,
        "title": title,
        "due_at": to_iso(due_at),
    }


def reminder_time(
    due_at: datetime,
    lead: timedelta = DEFAULT_REMINDER_LEAD,
    now: datetime | None = None,
) -> datetime:
    """When to remind about a task due at *due_at*: *lead* earlier, but not before now."""
    now = now or utcnow()
    return max(as_utc(due_at) - lead, now)
