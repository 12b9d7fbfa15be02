from datetime import datetime
from typing import List, Optional

from sqlalchemy import or_, select, update
from sqlalchemy.orm import Session

from carecall.core.config import settings
from carecall.db.retry import read_with_retry
from carecall.utils.timezone import to_utc_aware

from .models import Schedule


def get_schedule(db: Session, schedule_id: str) -> Optional[Schedule]:
    return read_with_retry(db, lambda: db.get(Schedule, schedule_id), "get_schedule")


def list_schedules(db: Session, line_id: str, enabled: Optional[bool] = None) -> List[Schedule]:
    stmt = select(Schedule).where(Schedule.line_id == line_id).order_by(Schedule.created_at.asc())
    if enabled is not None:
        stmt = stmt.where(Schedule.enabled == enabled)
    return read_with_retry(db, lambda: list(db.execute(stmt).scalars()), "list_schedules")


def get_due_schedules(db: Session, now: datetime, limit: Optional[int] = None) -> List[Schedule]:
    stmt = (
        select(Schedule)
        .where(Schedule.enabled.is_(True))
        .where(Schedule.next_run_at.is_not(None))
        .where(Schedule.next_run_at <= to_utc_aware(now))
        .order_by(Schedule.next_run_at.asc())
        .limit(limit or settings.SCHEDULER_BATCH_SIZE)
    )
    return read_with_retry(db, lambda: list(db.execute(stmt).scalars()), "get_due_schedules")


def get_claimable_schedules(
    db: Session,
    now: datetime,
    stale_before: datetime,
    limit: Optional[int] = None,
) -> List[Schedule]:
    stmt = (
        select(Schedule)
        .where(Schedule.enabled.is_(True))
        .where(Schedule.next_run_at.is_not(None))
        .where(Schedule.next_run_at <= to_utc_aware(now))
        .where(
            or_(
                Schedule.processing_claimed_by.is_(None),
                Schedule.processing_claimed_at < to_utc_aware(stale_before),
            )
        )
        .order_by(Schedule.next_run_at.asc())
        .limit(limit or settings.SCHEDULER_BATCH_SIZE)
        .execution_options(populate_existing=True)
    )
    return read_with_retry(db, lambda: list(db.execute(stmt).scalars()), "get_claimable_schedules")


def claim_schedule(db: Session, schedule_id: str, version: int, worker_id: str, now: datetime) -> bool:
    result = db.execute(
        update(Schedule)
        .where(Schedule.id == schedule_id)
        .where(Schedule.version == version)
        .values(
            processing_claimed_by=worker_id,
            processing_claimed_at=to_utc_aware(now),
            version=version + 1,
            updated_at=to_utc_aware(now),
        )
        .execution_options(synchronize_session=False)
    )
    return result.rowcount == 1


def release_schedule_claim(db: Session, schedule_id: str, worker_id: str, now: datetime) -> bool:
    result = db.execute(
        update(Schedule)
        .where(Schedule.id == schedule_id)
        .where(Schedule.processing_claimed_by == worker_id)
        .values(
            processing_claimed_by=None,
            processing_claimed_at=None,
            version=Schedule.version + 1,
            updated_at=to_utc_aware(now),
        )
        .execution_options(synchronize_session=False)
    )
    return result.rowcount == 1


def reload_schedules(db: Session, schedule_ids: List[str]) -> List[Schedule]:
    if not schedule_ids:
        return []
    stmt = (
        select(Schedule)
        .where(Schedule.id.in_(schedule_ids))
        .order_by(Schedule.next_run_at.asc())
        .execution_options(populate_existing=True)
    )
    return read_with_retry(db, lambda: list(db.execute(stmt).scalars()), "reload_schedules")
