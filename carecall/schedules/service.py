"""
Call schedule manager: weekly call plans per line.
"""
import logging
from datetime import datetime, timedelta
from typing import Callable, List, Optional

from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session
from sqlalchemy.orm.exc import StaleDataError

from carecall.core.config import settings
from carecall.core.errors import DatabaseError, NotFoundError, ScheduleConflictError
from carecall.db.types import utcnow
from carecall.utils.timezone import (
    next_weekly_occurrence,
    parse_time_of_day,
    to_utc_aware,
    validate_days_of_week,
    validate_timezone,
)

from . import repository
from .models import Schedule, ScheduleResult
from .schemas import RetryPolicy, ScheduleCreate, ScheduleUpdate

logger = logging.getLogger(__name__)


class ScheduleService:
    def __init__(self, db: Session, clock: Optional[Callable[[], datetime]] = None):
        self.db = db
        self._clock = clock or utcnow

    def now(self) -> datetime:
        return to_utc_aware(self._clock())

    # Queries

    def get(self, schedule_id: str) -> Schedule:
        schedule = repository.get_schedule(self.db, schedule_id)
        if schedule is None:
            raise NotFoundError(f"Schedule {schedule_id} not found", {"schedule_id": schedule_id})
        return schedule

    def list_for_line(self, line_id: str, enabled: Optional[bool] = None) -> List[Schedule]:
        return repository.list_schedules(self.db, line_id, enabled=enabled)

    def get_due_schedules(self, now: Optional[datetime] = None, limit: Optional[int] = None) -> List[Schedule]:
        return repository.get_due_schedules(self.db, to_utc_aware(now) if now else self.now(), limit)

    @staticmethod
    def next_call(schedule: Schedule, after: datetime) -> datetime:
        return next_weekly_occurrence(schedule.time_of_day, schedule.timezone, schedule.days_of_week, after)

    # Mutations

    def create(self, data: ScheduleCreate) -> Schedule:
        validate_timezone(data.timezone)
        days = validate_days_of_week(data.days_of_week)
        parse_time_of_day(data.time_of_day)
        policy = data.retry_policy or RetryPolicy(
            max_retries=settings.SCHEDULE_DEFAULT_MAX_RETRIES,
            retry_window_minutes=settings.SCHEDULE_DEFAULT_RETRY_WINDOW_MINUTES,
        )
        now = self.now()

        if data.enabled:
            self._check_conflicts(data.line_id, data.time_of_day, days, exclude_id=None)

        schedule = Schedule(
            line_id=data.line_id,
            account_id=data.account_id,
            timezone=data.timezone,
            days_of_week=days,
            time_of_day=data.time_of_day,
            enabled=data.enabled,
            retry_max_retries=policy.max_retries,
            retry_window_minutes=policy.retry_window_minutes,
            created_at=now,
            updated_at=now,
        )
        if data.enabled:
            schedule.next_run_at = self.next_call(schedule, now)

        try:
            self.db.add(schedule)
            self.db.commit()
        except SQLAlchemyError as e:
            self.db.rollback()
            logger.error(f"Failed to create schedule for line {data.line_id}: {e}")
            raise DatabaseError("Failed to create schedule") from e

        logger.info(
            f"schedule {schedule.id} created line={schedule.line_id} days={days} "
            f"time={schedule.time_of_day} tz={schedule.timezone} next_run_at={schedule.next_run_at}"
        )
        return schedule

    def update(self, schedule_id: str, data: ScheduleUpdate) -> Schedule:
        # Validate only the supplied fields, before touching the row
        fields = data.model_dump(exclude_unset=True)
        if "timezone" in fields:
            validate_timezone(data.timezone)
        days = validate_days_of_week(data.days_of_week) if "days_of_week" in fields else None
        if "time_of_day" in fields:
            parse_time_of_day(data.time_of_day)

        schedule = self.get(schedule_id)
        if data.expected_version is not None and data.expected_version != schedule.version:
            raise ScheduleConflictError(
                "Schedule was changed by someone else; reload and try again",
                {"schedule_id": schedule_id, "expected_version": data.expected_version, "version": schedule.version},
            )

        timezone = data.timezone if "timezone" in fields else schedule.timezone
        days = days if days is not None else list(schedule.days_of_week)
        time_of_day = data.time_of_day if "time_of_day" in fields else schedule.time_of_day
        enabled = data.enabled if data.enabled is not None else schedule.enabled
        timing_changed = (
            timezone != schedule.timezone
            or days != list(schedule.days_of_week)
            or time_of_day != schedule.time_of_day
        )
        needs_next_run = enabled and (timing_changed or not schedule.enabled)

        if needs_next_run:
            version = schedule.version
            self._check_conflicts(schedule.line_id, time_of_day, days, exclude_id=schedule.id)
            # A retried conflict read rolls the session back and expires the row
            schedule = self.get(schedule_id)
            if schedule.version != version:
                raise ScheduleConflictError(
                    "Schedule was changed by someone else; reload and try again",
                    {"schedule_id": schedule_id, "version": schedule.version},
                )

        now = self.now()
        schedule.timezone = timezone
        schedule.days_of_week = days
        schedule.time_of_day = time_of_day
        schedule.enabled = enabled
        if data.retry_policy is not None:
            schedule.retry_max_retries = data.retry_policy.max_retries
            schedule.retry_window_minutes = data.retry_policy.retry_window_minutes
        if needs_next_run:
            schedule.next_run_at = self.next_call(schedule, now)
        elif not enabled:
            # Disabled rows are kept but never come due
            schedule.next_run_at = None
            schedule.processing_claimed_by = None
            schedule.processing_claimed_at = None

        schedule.updated_at = now
        self._commit(schedule_id)
        logger.info(
            f"schedule {schedule.id} updated enabled={schedule.enabled} next_run_at={schedule.next_run_at}"
        )
        return schedule

    def claim_due_schedules(
        self,
        worker_id: str,
        now: Optional[datetime] = None,
        ttl_seconds: Optional[int] = None,
        limit: Optional[int] = None,
    ) -> List[Schedule]:
        """Claim due schedules for one dispatcher worker (compare-and-set on the row version)."""
        now = to_utc_aware(now) if now else self.now()
        ttl = settings.DISPATCH_CLAIM_TTL_SECONDS if ttl_seconds is None else ttl_seconds
        candidates = repository.get_claimable_schedules(self.db, now, now - timedelta(seconds=ttl), limit)

        claimed: List[str] = []
        try:
            for candidate in candidates:
                if candidate.processing_claimed_by is not None:
                    logger.warning(
                        f"schedule {candidate.id} claim by {candidate.processing_claimed_by} expired; "
                        f"reclaiming for {worker_id}"
                    )
                if repository.claim_schedule(self.db, candidate.id, candidate.version, worker_id, now):
                    claimed.append(candidate.id)
            self.db.commit()
        except SQLAlchemyError as e:
            self.db.rollback()
            logger.error(f"Failed to claim due schedules for worker {worker_id}: {e}")
            raise DatabaseError("Failed to claim due schedules") from e
        self.db.expire_all()

        if candidates:
            logger.info(f"worker {worker_id} claimed {len(claimed)} of {len(candidates)} due schedules")
        return repository.reload_schedules(self.db, claimed)

    def release_claim(self, schedule_id: str, worker_id: str) -> bool:
        try:
            released = repository.release_schedule_claim(self.db, schedule_id, worker_id, self.now())
            self.db.commit()
        except SQLAlchemyError as e:
            self.db.rollback()
            logger.error(f"Failed to release claim on schedule {schedule_id}: {e}")
            raise DatabaseError("Failed to release schedule claim") from e
        self.db.expire_all()
        if not released:
            logger.warning(f"schedule {schedule_id} is not claimed by {worker_id}; nothing released")
        return released

    def record_call_result(self, schedule_id: str, ran_at: datetime, result: ScheduleResult) -> Schedule:
        """Dispatcher callback: store the outcome and move next_run_at past the run."""
        schedule = self.get(schedule_id)
        ran_at = to_utc_aware(ran_at)
        if not schedule.enabled:
            logger.info(f"schedule {schedule_id} is disabled; ignoring call result {ScheduleResult(result).value}")
            return schedule
        if schedule.last_run_at is not None and ran_at <= schedule.last_run_at:
            logger.info(f"schedule {schedule_id} result for {ran_at.isoformat()} already recorded")
            return schedule

        after = max(ran_at, schedule.next_run_at) if schedule.next_run_at else ran_at
        schedule.last_run_at = ran_at
        schedule.last_result = ScheduleResult(result).value
        schedule.processing_claimed_by = None
        schedule.processing_claimed_at = None
        schedule.next_run_at = self.next_call(schedule, after)
        schedule.updated_at = self.now()
        self._commit(schedule_id)
        return schedule

    def _check_conflicts(self, line_id: str, time_of_day: str, days: List[int], exclude_id: Optional[str]) -> None:
        wanted = set(days)
        for other in repository.list_schedules(self.db, line_id, enabled=True):
            if other.id == exclude_id or other.time_of_day != time_of_day:
                continue
            overlap = sorted(wanted & set(other.days_of_week or []))
            if overlap:
                raise ScheduleConflictError(
                    f"Line already has a call at {time_of_day} on overlapping days",
                    {"conflicting_schedule_id": other.id, "days_of_week": overlap, "time_of_day": time_of_day},
                )

    def _commit(self, schedule_id: str) -> None:
        try:
            self.db.commit()
        except StaleDataError as e:
            self.db.rollback()
            logger.warning(f"schedule {schedule_id} changed concurrently")
            raise ScheduleConflictError(
                "Schedule was changed by someone else; reload and try again",
                {"schedule_id": schedule_id},
            ) from e
        except SQLAlchemyError as e:
            self.db.rollback()
            logger.error(f"Failed to update schedule {schedule_id}: {e}")
            raise DatabaseError("Failed to update schedule") from e
