"""
Engine error hierarchy.

Every error raised across the engine boundary carries an ``ErrorCode`` so the
HTTP layer and the voice-tool layer can phrase a fitting response without
parsing messages. Input-validation errors are raised before any state change;
lifecycle errors describe a rule the current state forbids.
"""
from enum import Enum
from typing import Any, Dict, Optional


class ErrorCode(str, Enum):
    INVALID_INPUT = "INVALID_INPUT"
    INVALID_TIMEZONE = "INVALID_TIMEZONE"
    NOT_FOUND = "NOT_FOUND"
    REMINDER_NOT_PAUSABLE = "REMINDER_NOT_PAUSABLE"
    SNOOZE_LIMIT_REACHED = "SNOOZE_LIMIT_REACHED"
    INVALID_TRANSITION = "INVALID_TRANSITION"
    LEAD_TIME_TOO_SHORT = "LEAD_TIME_TOO_SHORT"
    SCHEDULE_CONFLICT = "SCHEDULE_CONFLICT"
    CONCURRENT_MODIFICATION = "CONCURRENT_MODIFICATION"
    RATE_LIMITED = "RATE_LIMITED"
    DATABASE_ERROR = "DATABASE_ERROR"


class CareCallError(Exception):
    """Base class for all engine errors"""

    code: ErrorCode = ErrorCode.INVALID_INPUT

    def __init__(self, message: str, details: Optional[Dict[str, Any]] = None):
        super().__init__(message)
        self.message = message
        self.details = details or {}

    def to_dict(self) -> Dict[str, Any]:
        return {"code": self.code.value, "message": self.message, "details": self.details}


# --- Input validation ---

class InvalidInputError(CareCallError):
    code = ErrorCode.INVALID_INPUT


class InvalidTimezoneError(InvalidInputError):
    code = ErrorCode.INVALID_TIMEZONE


# --- Lookup ---

class NotFoundError(CareCallError):
    code = ErrorCode.NOT_FOUND


# --- Lifecycle rules ---

class LifecycleError(CareCallError):
    code = ErrorCode.INVALID_TRANSITION


class InvalidTransitionError(LifecycleError):
    code = ErrorCode.INVALID_TRANSITION


class ReminderNotPausableError(LifecycleError):
    code = ErrorCode.REMINDER_NOT_PAUSABLE


class SnoozeLimitReachedError(LifecycleError):
    code = ErrorCode.SNOOZE_LIMIT_REACHED


class LeadTimeTooShortError(LifecycleError):
    """Raised when a voice reminder is too close to now; details carry the earliest allowed time."""

    code = ErrorCode.LEAD_TIME_TOO_SHORT


# --- Concurrency / persistence ---

class ScheduleConflictError(CareCallError):
    code = ErrorCode.SCHEDULE_CONFLICT


class ConcurrentModificationError(CareCallError):
    code = ErrorCode.CONCURRENT_MODIFICATION


class RateLimitedError(CareCallError):
    code = ErrorCode.RATE_LIMITED


class DatabaseError(CareCallError):
    code = ErrorCode.DATABASE_ERROR
