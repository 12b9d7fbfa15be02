"""
Reminder models - single table for one-time and recurring reminders, plus the audit trail
"""
import uuid
from enum import Enum

from sqlalchemy import JSON, Boolean, Column, ForeignKey, Index, Integer, String

from carecall.db.base import Base
from carecall.db.types import UTCDateTime, utcnow


class ReminderStatus(str, Enum):
    SCHEDULED = "scheduled"
    SNOOZED = "snoozed"
    PAUSED = "paused"
    CANCELED = "canceled"
    COMPLETED = "completed"
    FAILED = "failed"


TERMINAL_STATUSES = frozenset({ReminderStatus.CANCELED, ReminderStatus.COMPLETED, ReminderStatus.FAILED})

# Terminal statuses have no way out
ALLOWED_TRANSITIONS = {
    ReminderStatus.SCHEDULED: frozenset({
        ReminderStatus.SCHEDULED,  # recurring advance / edit
        ReminderStatus.SNOOZED,
        ReminderStatus.PAUSED,
        ReminderStatus.CANCELED,
        ReminderStatus.COMPLETED,
        ReminderStatus.FAILED,
    }),
    ReminderStatus.SNOOZED: frozenset({
        ReminderStatus.SCHEDULED,
        ReminderStatus.SNOOZED,
        ReminderStatus.PAUSED,
        ReminderStatus.CANCELED,
        ReminderStatus.COMPLETED,
        ReminderStatus.FAILED,
    }),
    # completed/failed: the occurrence was already in flight when the pause landed
    ReminderStatus.PAUSED: frozenset({
        ReminderStatus.SCHEDULED,
        ReminderStatus.CANCELED,
        ReminderStatus.COMPLETED,
        ReminderStatus.FAILED,
    }),
    ReminderStatus.CANCELED: frozenset(),
    ReminderStatus.COMPLETED: frozenset(),
    ReminderStatus.FAILED: frozenset(),
}


class DeliveryStatus(str, Enum):
    COMPLETED = "completed"
    NO_ANSWER = "no_answer"
    FAILED = "failed"


class ReminderSource(str, Enum):
    DASHBOARD = "dashboard"
    VOICE = "voice"
    SYSTEM = "system"


class PrivacyScope(str, Enum):
    LINE_ONLY = "line_only"
    SHAREABLE_WITH_PAYER = "shareable_with_payer"


class ReminderEventType(str, Enum):
    CREATED = "created"
    EDITED = "edited"
    SNOOZED = "snoozed"
    PAUSED = "paused"
    RESUMED = "resumed"
    CANCELED = "canceled"
    SKIPPED = "skipped"
    COMPLETED = "completed"
    FAILED = "failed"


def _new_id() -> str:
    return str(uuid.uuid4())


class Reminder(Base):
    """Unified reminder model - handles both one-time and recurring reminders"""
    __tablename__ = "reminders"

    id = Column(String(36), primary_key=True, default=_new_id)
    line_id = Column(String, nullable=False, index=True)
    account_id = Column(String, nullable=True, index=True)
    due_at = Column(UTCDateTime, nullable=False)  # The only persisted fire time
    timezone = Column(String, nullable=False)  # Source zone, kept for display and recompute
    message = Column(String(500), nullable=False)
    status = Column(String, nullable=False, default=ReminderStatus.SCHEDULED.value)
    privacy_scope = Column(String, nullable=False, default=PrivacyScope.LINE_ONLY.value)

    # Recurrence fields (NULL / defaults for one-time reminders)
    is_recurring = Column(Boolean, nullable=False, default=False)
    frequency = Column(String, nullable=True)  # daily, weekly, monthly, custom
    interval = Column(Integer, nullable=False, default=1)
    days_of_week = Column(JSON, nullable=True)  # 0 = Sunday
    day_of_month = Column(Integer, nullable=True)
    time_of_day = Column(String(5), nullable=True)  # local "HH:mm" used to rebuild occurrences
    ends_at = Column(UTCDateTime, nullable=True)
    occurrence_count = Column(Integer, nullable=False, default=0)

    # Lifecycle bookkeeping
    current_snooze_count = Column(Integer, nullable=False, default=0)
    original_due_at = Column(UTCDateTime, nullable=True)  # Due time before the first snooze
    snoozed_until = Column(UTCDateTime, nullable=True)
    paused_at = Column(UTCDateTime, nullable=True)
    last_fired_at = Column(UTCDateTime, nullable=True)
    created_by_call_session_id = Column(String, nullable=True)

    # Dispatcher bookkeeping
    last_delivery_status = Column(String, nullable=True)
    processing_claimed_by = Column(String, nullable=True)  # worker holding the due row
    processing_claimed_at = Column(UTCDateTime, nullable=True)

    version = Column(Integer, nullable=False)
    created_at = Column(UTCDateTime, default=utcnow, nullable=False)
    updated_at = Column(UTCDateTime, default=utcnow, onupdate=utcnow, nullable=False)

    __mapper_args__ = {"version_id_col": version}

    __table_args__ = (
        Index("ix_reminders_status_due", "status", "due_at"),
        Index("ix_reminders_line_due", "line_id", "due_at"),
        Index("ix_reminders_claimed_at", "processing_claimed_at"),
    )

    @property
    def status_enum(self) -> ReminderStatus:
        return ReminderStatus(self.status)

    @property
    def is_paused(self) -> bool:
        return self.status == ReminderStatus.PAUSED.value

    @property
    def is_terminal(self) -> bool:
        return self.status_enum in TERMINAL_STATUSES


class ReminderEvent(Base):
    """Append-only audit trail, written in the same transaction as each transition"""
    __tablename__ = "reminder_events"

    id = Column(Integer, primary_key=True, autoincrement=True)
    reminder_id = Column(String(36), ForeignKey("reminders.id"), nullable=False, index=True)
    line_id = Column(String, nullable=False, index=True)
    event_type = Column(String, nullable=False)
    triggered_by = Column(String, nullable=False)
    call_session_id = Column(String, nullable=True)
    details = Column(JSON, nullable=True)
    created_at = Column(UTCDateTime, default=utcnow, nullable=False)

    __table_args__ = (
        Index("ix_reminder_events_reminder_created", "reminder_id", "created_at"),
    )
