"""Scheduler error taxonomy."""


class SchedulerError(Exception):
    """Base class for all scheduler errors."""


class ValidationError(SchedulerError, ValueError):
    """Rejected input. Nothing is persisted."""


class ParseError(ValidationError):
    """Malformed recurrence interval string."""


class NotFoundError(SchedulerError, LookupError):
    """Unknown or inactive schedule entry."""


class StoreError(SchedulerError):
    """Transient persistence failure in the schedule store."""


class SinkError(SchedulerError):
    """The action sink failed to deliver a firing."""
