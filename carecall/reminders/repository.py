from datetime import datetime
from typing import List, Optional

from sqlalchemy import or_, select, update
from sqlalchemy.orm import Session

from carecall.core.config import settings
from carecall.db.retry import read_with_retry
from carecall.utils.timezone import to_utc_aware

from .models import Reminder, ReminderEvent, ReminderStatus

ACTIVE_STATUSES = (ReminderStatus.SCHEDULED.value, ReminderStatus.SNOOZED.value)


def get_reminder(db: Session, reminder_id: str) -> Optional[Reminder]:
    return read_with_retry(db, lambda: db.get(Reminder, reminder_id), "get_reminder")


def refresh_reminder(db: Session, reminder_id: str) -> Optional[Reminder]:
    """Re-read a row bypassing the identity map (used after losing a version check)."""
    return db.get(Reminder, reminder_id, populate_existing=True)


def list_reminders(
    db: Session,
    line_id: Optional[str] = None,
    status: Optional[str] = None,
    start: Optional[datetime] = None,
    end: Optional[datetime] = None,
    limit: int = 100,
) -> List[Reminder]:
    stmt = select(Reminder).order_by(Reminder.due_at.asc()).limit(limit)
    if line_id:
        stmt = stmt.where(Reminder.line_id == line_id)
    if status:
        stmt = stmt.where(Reminder.status == status)
    if start:
        stmt = stmt.where(Reminder.due_at >= to_utc_aware(start))
    if end:
        stmt = stmt.where(Reminder.due_at <= to_utc_aware(end))
    return read_with_retry(db, lambda: list(db.execute(stmt).scalars()), "list_reminders")


def get_due_reminders(db: Session, now: datetime, limit: Optional[int] = None) -> List[Reminder]:
    """Scheduled or snoozed reminders whose due time has arrived; paused and terminal rows are excluded."""
    stmt = (
        select(Reminder)
        .where(Reminder.status.in_(ACTIVE_STATUSES))
        .where(Reminder.due_at <= to_utc_aware(now))
        .order_by(Reminder.due_at.asc())
        .limit(limit or settings.SCHEDULER_BATCH_SIZE)
    )
    return read_with_retry(db, lambda: list(db.execute(stmt).scalars()), "get_due_reminders")


def list_events(db: Session, reminder_id: str, limit: int = 100) -> List[ReminderEvent]:
    stmt = (
        select(ReminderEvent)
        .where(ReminderEvent.reminder_id == reminder_id)
        .order_by(ReminderEvent.id.asc())
        .limit(limit)
    )
    return read_with_retry(db, lambda: list(db.execute(stmt).scalars()), "list_events")


def list_upcoming(db: Session, line_id: str, limit: int = 10) -> List[Reminder]:
    """Scheduled, snoozed and paused reminders for a line, soonest first."""
    stmt = (
        select(Reminder)
        .where(Reminder.line_id == line_id)
        .where(Reminder.status.in_(ACTIVE_STATUSES + (ReminderStatus.PAUSED.value,)))
        .order_by(Reminder.due_at.asc())
        .limit(limit)
    )
    return read_with_retry(db, lambda: list(db.execute(stmt).scalars()), "list_upcoming")


def get_claimable_reminders(
    db: Session,
    now: datetime,
    stale_before: datetime,
    limit: Optional[int] = None,
) -> List[Reminder]:
    """Due reminders that are unclaimed or whose claim is older than `stale_before`."""
    stmt = (
        select(Reminder)
        .where(Reminder.status.in_(ACTIVE_STATUSES))
        .where(Reminder.due_at <= to_utc_aware(now))
        .where(
            or_(
                Reminder.processing_claimed_by.is_(None),
                Reminder.processing_claimed_at < to_utc_aware(stale_before),
            )
        )
        .order_by(Reminder.due_at.asc())
        .limit(limit or settings.SCHEDULER_BATCH_SIZE)
        .execution_options(populate_existing=True)
    )
    return read_with_retry(db, lambda: list(db.execute(stmt).scalars()), "get_claimable_reminders")


def claim_reminder(db: Session, reminder_id: str, version: int, worker_id: str, now: datetime) -> bool:
    """Compare-and-set on the row version; False when another writer got there first."""
    result = db.execute(
        update(Reminder)
        .where(Reminder.id == reminder_id)
        .where(Reminder.version == version)
        .values(
            processing_claimed_by=worker_id,
            processing_claimed_at=to_utc_aware(now),
            version=version + 1,
            updated_at=to_utc_aware(now),
        )
        .execution_options(synchronize_session=False)
    )
    return result.rowcount == 1


def release_reminder_claim(db: Session, reminder_id: str, worker_id: str, now: datetime) -> bool:
    result = db.execute(
        update(Reminder)
        .where(Reminder.id == reminder_id)
        .where(Reminder.processing_claimed_by == worker_id)
        .values(
            processing_claimed_by=None,
            processing_claimed_at=None,
            version=Reminder.version + 1,
            updated_at=to_utc_aware(now),
        )
        .execution_options(synchronize_session=False)
    )
    return result.rowcount == 1


def reload_reminders(db: Session, reminder_ids: List[str]) -> List[Reminder]:
    if not reminder_ids:
        return []
    stmt = (
        select(Reminder)
        .where(Reminder.id.in_(reminder_ids))
        .order_by(Reminder.due_at.asc())
        .execution_options(populate_existing=True)
    )
    return read_with_retry(db, lambda: list(db.execute(stmt).scalars()), "reload_reminders")
