"""Scheduling domain errors"""

from datetime import date, datetime


class SchedulingError(Exception):
    """Base class for scheduling errors; ``status_code`` is the HTTP mapping"""

    status_code = 500

    def __init__(self, message: str):
        super().__init__(message)
        self.message = message


class InvalidRuleError(SchedulingError):
    status_code = 400


class InvalidScheduleItemError(SchedulingError):
    status_code = 400


class NotFoundError(SchedulingError):
    status_code = 404


class AuthorizationError(SchedulingError):
    status_code = 403


class DuplicateExceptionError(SchedulingError):
    status_code = 409

    def __init__(self, pattern_id: int, exception_date: date):
        super().__init__(
            f"Exception date {exception_date.isoformat()} already exists for pattern {pattern_id}"
        )
        self.pattern_id = pattern_id
        self.exception_date = exception_date


class MaterializationCancelled(SchedulingError):
    status_code = 409


class PersistenceError(SchedulingError):
    status_code = 500


class ConcurrentMaterializationConflict(SchedulingError):
    """Another writer already inserted the item for this (pattern, instant).

    Handled inside the materializer as an idempotent skip.
    """

    status_code = 409

    def __init__(self, pattern_id: int, instant: datetime):
        super().__init__(
            f"Schedule item for pattern {pattern_id} at {instant.isoformat()} already exists"
        )
        self.pattern_id = pattern_id
        self.instant = instant
