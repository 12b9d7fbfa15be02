"""
Reminder lifecycle service: create, snooze, pause, resume, cancel, edit, skip, complete.

Each mutation is one read-modify-write guarded by the row's version column.
When a concurrent writer wins, the row is re-read and only the guard of the
requested transition is re-run: the caller gets the domain error the fresh
state implies, or ConcurrentModificationError. Mutations are never retried here.
"""
import logging
from datetime import datetime, timedelta
from typing import Any, Callable, Dict, List, Optional, Tuple

from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session
from sqlalchemy.orm.exc import StaleDataError

from carecall.core.config import settings
from carecall.core.errors import (
    CareCallError,
    ConcurrentModificationError,
    DatabaseError,
    InvalidInputError,
    InvalidTransitionError,
    LeadTimeTooShortError,
    NotFoundError,
    ReminderNotPausableError,
    SnoozeLimitReachedError,
)
from carecall.db.types import utcnow
from carecall.utils.timezone import (
    format_time_of_day,
    local_to_utc,
    local_weekday,
    parse_local_datetime,
    to_utc_aware,
    validate_timezone,
)

from . import repository
from .events import record_event
from .metrics import (
    reminder_concurrent_conflicts_total,
    reminder_duplicate_completions_total,
    reminder_rejections_total,
    reminders_created_total,
)
from .models import (
    ALLOWED_TRANSITIONS,
    DeliveryStatus,
    Reminder,
    ReminderEvent,
    ReminderEventType,
    ReminderSource,
    ReminderStatus,
)
from .recurrence_models import RecurrenceCalculator, RecurrenceDescriptor, RecurrenceFrequency
from .schemas import ReminderCreate

logger = logging.getLogger(__name__)

SNOOZABLE = frozenset({ReminderStatus.SCHEDULED, ReminderStatus.SNOOZED})
PAUSABLE = frozenset({ReminderStatus.SCHEDULED, ReminderStatus.SNOOZED})
COMPLETABLE = frozenset({ReminderStatus.SCHEDULED, ReminderStatus.SNOOZED, ReminderStatus.PAUSED})

Guard = Callable[[Reminder, datetime], None]
Apply = Callable[[Reminder, datetime], Tuple[ReminderEventType, Dict[str, Any]]]


def _status(reminder: Reminder) -> ReminderStatus:
    return ReminderStatus(reminder.status)


def _transition(reminder: Reminder, target: ReminderStatus) -> None:
    current = _status(reminder)
    if target not in ALLOWED_TRANSITIONS[current]:
        raise InvalidTransitionError(
            f"Cannot move reminder from {current.value} to {target.value}",
            {"reminder_id": reminder.id, "status": current.value, "target": target.value},
        )
    reminder.status = target.value


def _clear_snooze(reminder: Reminder) -> None:
    reminder.current_snooze_count = 0
    reminder.original_due_at = None
    reminder.snoozed_until = None


def _clear_claim(reminder: Reminder) -> None:
    reminder.processing_claimed_by = None
    reminder.processing_claimed_at = None


class ReminderLifecycleService:
    """Owns every reminder state transition"""

    def __init__(self, db: Session, clock: Optional[Callable[[], datetime]] = None):
        self.db = db
        self._clock = clock or utcnow

    def now(self) -> datetime:
        return to_utc_aware(self._clock())

    # ------------------------------------------------------------------
    # Queries
    # ------------------------------------------------------------------

    def get(self, reminder_id: str) -> Reminder:
        reminder = repository.get_reminder(self.db, reminder_id)
        if reminder is None:
            raise NotFoundError(f"Reminder {reminder_id} not found", {"reminder_id": reminder_id})
        return reminder

    def list_for_line(
        self,
        line_id: str,
        status: Optional[str] = None,
        start: Optional[datetime] = None,
        end: Optional[datetime] = None,
        limit: int = 100,
    ) -> List[Reminder]:
        """Reminders for a line, soonest first, optionally limited to due times in [start, end]."""
        return repository.list_reminders(self.db, line_id=line_id, status=status, start=start, end=end, limit=limit)

    def list_upcoming(self, line_id: str, limit: int = 10) -> List[Reminder]:
        return repository.list_upcoming(self.db, line_id, limit)

    def get_due_reminders(self, now: Optional[datetime] = None, limit: Optional[int] = None) -> List[Reminder]:
        return repository.get_due_reminders(self.db, to_utc_aware(now) if now else self.now(), limit)

    def list_events(self, reminder_id: str) -> List[ReminderEvent]:
        self.get(reminder_id)
        return repository.list_events(self.db, reminder_id)

    # ------------------------------------------------------------------
    # Create
    # ------------------------------------------------------------------

    def create(
        self,
        data: ReminderCreate,
        source: Optional[ReminderSource] = None,
        call_session_id: Optional[str] = None,
    ) -> Reminder:
        source = ReminderSource(source or data.source)
        call_session_id = call_session_id or data.call_session_id
        validate_timezone(data.timezone)
        message = self._clean_message(data.message)
        now = self.now()

        parsed = parse_local_datetime(data.due_at_local)
        if parsed.tzinfo is not None:
            # Explicit offset: an absolute instant
            due_at = to_utc_aware(parsed)
            local_time = due_at.astimezone(validate_timezone(data.timezone)).time()
        else:
            due_at = local_to_utc(parsed, data.timezone)
            local_time = parsed.time()

        recurrence = data.recurrence
        if source == ReminderSource.VOICE and recurrence is None:
            self._enforce_lead_time(due_at, now, data.timezone)
        elif due_at <= now:
            raise InvalidInputError(
                "Reminder time must be in the future",
                {"due_at": due_at.isoformat(), "now": now.isoformat()},
            )

        reminder = Reminder(
            line_id=data.line_id,
            account_id=data.account_id,
            due_at=due_at,
            timezone=data.timezone,
            message=message,
            status=ReminderStatus.SCHEDULED.value,
            privacy_scope=data.privacy_scope.value,
            current_snooze_count=0,
            occurrence_count=0,
            created_by_call_session_id=call_session_id,
            created_at=now,
            updated_at=now,
        )

        if recurrence is not None:
            local_due = due_at.astimezone(validate_timezone(data.timezone))
            days = list(recurrence.days_of_week)
            if recurrence.frequency == RecurrenceFrequency.WEEKLY and not days:
                days = [local_weekday(local_due.date())]
            day_of_month = recurrence.day_of_month
            if recurrence.frequency == RecurrenceFrequency.MONTHLY and day_of_month is None:
                day_of_month = local_due.day
            ends_at = None
            if recurrence.ends_at is not None:
                ends_at = (
                    to_utc_aware(recurrence.ends_at)
                    if recurrence.ends_at.tzinfo is not None
                    else local_to_utc(recurrence.ends_at, data.timezone)
                )
                if ends_at < due_at:
                    raise InvalidInputError(
                        "Recurrence end must not be before the first occurrence",
                        {"ends_at": ends_at.isoformat(), "due_at": due_at.isoformat()},
                    )
            reminder.is_recurring = True
            reminder.frequency = recurrence.frequency.value
            reminder.interval = recurrence.interval
            reminder.days_of_week = days or None
            reminder.day_of_month = day_of_month
            reminder.time_of_day = format_time_of_day(local_time)
            reminder.ends_at = ends_at

        try:
            self.db.add(reminder)
            self.db.flush()
            record_event(
                self.db,
                reminder,
                ReminderEventType.CREATED,
                source,
                now,
                call_session_id=call_session_id,
                details={"due_at": due_at, "is_recurring": reminder.is_recurring},
            )
            self.db.commit()
        except SQLAlchemyError as e:
            self.db.rollback()
            logger.error(f"Failed to create reminder for line {data.line_id}: {e}")
            raise DatabaseError("Failed to create reminder") from e

        reminders_created_total.labels(source=source.value, recurring=str(reminder.is_recurring).lower()).inc()
        return reminder

    def _enforce_lead_time(self, due_at: datetime, now: datetime, tz_name: str) -> None:
        earliest = now + timedelta(minutes=settings.REMINDER_MIN_LEAD_MINUTES)
        if due_at >= earliest:
            return
        # Offer the next whole minute at or after the minimum lead
        if earliest.second or earliest.microsecond:
            earliest = earliest.replace(second=0, microsecond=0) + timedelta(minutes=1)
        earliest_local = earliest.astimezone(validate_timezone(tz_name))
        reminder_rejections_total.labels(code=LeadTimeTooShortError.code.value).inc()
        raise LeadTimeTooShortError(
            f"Reminders must be at least {settings.REMINDER_MIN_LEAD_MINUTES} minutes in the future",
            {
                "minimum_lead_minutes": settings.REMINDER_MIN_LEAD_MINUTES,
                "requested_due_at": due_at.isoformat(),
                "earliest_allowed_utc": earliest.isoformat(),
                "earliest_allowed_local": earliest_local.strftime("%Y-%m-%dT%H:%M"),
                "timezone": tz_name,
            },
        )

    @staticmethod
    def _clean_message(message: Optional[str]) -> str:
        message = (message or "").strip()
        if not message:
            raise InvalidInputError("Reminder message must not be empty")
        if len(message) > settings.REMINDER_MESSAGE_MAX_LENGTH:
            raise InvalidInputError(
                f"Reminder message must be at most {settings.REMINDER_MESSAGE_MAX_LENGTH} characters",
                {"length": len(message)},
            )
        return message

    # ------------------------------------------------------------------
    # Transitions
    # ------------------------------------------------------------------

    def snooze(
        self,
        reminder_id: str,
        minutes: int,
        source: ReminderSource = ReminderSource.DASHBOARD,
        call_session_id: Optional[str] = None,
    ) -> Reminder:
        if minutes not in settings.REMINDER_VALID_SNOOZE_MINUTES:
            raise InvalidInputError(
                f"Snooze must be one of {settings.REMINDER_VALID_SNOOZE_MINUTES} minutes",
                {"snooze_minutes": minutes, "valid_minutes": settings.REMINDER_VALID_SNOOZE_MINUTES},
            )

        def guard(r: Reminder, now: datetime) -> None:
            status = _status(r)
            if status == ReminderStatus.PAUSED:
                raise InvalidTransitionError(
                    "Paused reminders must be resumed before snoozing",
                    {"reminder_id": r.id, "status": status.value},
                )
            if status not in SNOOZABLE:
                raise InvalidTransitionError(
                    "Only scheduled or snoozed reminders can be snoozed",
                    {"reminder_id": r.id, "status": status.value},
                )
            if r.current_snooze_count + 1 > settings.REMINDER_MAX_SNOOZE_COUNT:
                raise SnoozeLimitReachedError(
                    f"Reminder already snoozed {r.current_snooze_count} times",
                    {"reminder_id": r.id, "max_snooze_count": settings.REMINDER_MAX_SNOOZE_COUNT},
                )

        def apply(r: Reminder, now: datetime):
            if r.original_due_at is None:
                r.original_due_at = r.due_at
            # New due time counts from now, not from the original due time
            r.due_at = now + timedelta(minutes=minutes)
            r.snoozed_until = r.due_at
            r.current_snooze_count += 1
            _transition(r, ReminderStatus.SNOOZED)
            return ReminderEventType.SNOOZED, {
                "minutes": minutes,
                "snooze_count": r.current_snooze_count,
                "original_due_at": r.original_due_at,
                "new_due_at": r.due_at,
            }

        return self._mutate(reminder_id, guard, apply, source, call_session_id)

    def pause(
        self,
        reminder_id: str,
        source: ReminderSource = ReminderSource.DASHBOARD,
        call_session_id: Optional[str] = None,
    ) -> Reminder:
        def guard(r: Reminder, now: datetime) -> None:
            status = _status(r)
            if status not in PAUSABLE:
                detail = "already paused" if status == ReminderStatus.PAUSED else f"is {status.value}"
                raise ReminderNotPausableError(
                    f"Reminder {detail} and cannot be paused",
                    {"reminder_id": r.id, "status": status.value},
                )

        def apply(r: Reminder, now: datetime):
            _transition(r, ReminderStatus.PAUSED)
            r.paused_at = now
            return ReminderEventType.PAUSED, {"due_at": r.due_at}

        return self._mutate(reminder_id, guard, apply, source, call_session_id)

    def resume(
        self,
        reminder_id: str,
        source: ReminderSource = ReminderSource.DASHBOARD,
        call_session_id: Optional[str] = None,
    ) -> Reminder:
        def guard(r: Reminder, now: datetime) -> None:
            if _status(r) != ReminderStatus.PAUSED:
                raise InvalidTransitionError(
                    "Only paused reminders can be resumed",
                    {"reminder_id": r.id, "status": r.status},
                )

        def apply(r: Reminder, now: datetime):
            _transition(r, ReminderStatus.SCHEDULED)
            r.paused_at = None
            base_due = r.original_due_at or r.due_at
            _clear_snooze(r)
            details: Dict[str, Any] = {"previous_due_at": r.due_at}
            if r.due_at <= now:
                if r.is_recurring:
                    next_due = RecurrenceCalculator.first_occurrence_after(
                        RecurrenceDescriptor.from_reminder(r), base_due, now
                    )
                    if next_due is None:
                        _transition(r, ReminderStatus.COMPLETED)
                        details["series_completed"] = True
                        return ReminderEventType.COMPLETED, details
                    r.due_at = next_due
                else:
                    # Missed while paused: due immediately
                    r.due_at = now
                    details["due_immediately"] = True
            details["due_at"] = r.due_at
            return ReminderEventType.RESUMED, details

        return self._mutate(reminder_id, guard, apply, source, call_session_id)

    def cancel(
        self,
        reminder_id: str,
        source: ReminderSource = ReminderSource.DASHBOARD,
        call_session_id: Optional[str] = None,
    ) -> Reminder:
        def guard(r: Reminder, now: datetime) -> None:
            if r.is_terminal:
                raise InvalidTransitionError(
                    f"Reminder is already {r.status}",
                    {"reminder_id": r.id, "status": r.status},
                )

        def apply(r: Reminder, now: datetime):
            _transition(r, ReminderStatus.CANCELED)
            r.paused_at = None
            return ReminderEventType.CANCELED, {"is_recurring": r.is_recurring}

        return self._mutate(reminder_id, guard, apply, source, call_session_id)

    def edit(
        self,
        reminder_id: str,
        new_message: Optional[str] = None,
        new_time_local: Optional[str] = None,
        timezone: Optional[str] = None,
        source: ReminderSource = ReminderSource.DASHBOARD,
        call_session_id: Optional[str] = None,
    ) -> Reminder:
        if new_message is None and new_time_local is None:
            raise InvalidInputError("Provide a new message or a new time to edit a reminder")
        if timezone is not None and new_time_local is None:
            raise InvalidInputError(
                "A new time zone must come with a new time for the reminder",
                {"timezone": timezone},
            )
        message = self._clean_message(new_message) if new_message is not None else None
        parsed = parse_local_datetime(new_time_local) if new_time_local is not None else None
        if timezone is not None:
            validate_timezone(timezone)

        def guard(r: Reminder, now: datetime) -> None:
            if r.is_terminal:
                raise InvalidTransitionError(
                    "This reminder is no longer active and cannot be edited",
                    {"reminder_id": r.id, "status": r.status},
                )

        def apply(r: Reminder, now: datetime):
            old: Dict[str, Any] = {}
            new: Dict[str, Any] = {}
            if message is not None and message != r.message:
                old["message"], new["message"] = r.message, message
            if parsed is not None:
                tz_name = timezone or r.timezone
                if parsed.tzinfo is not None:
                    new_due = to_utc_aware(parsed)
                    local_time = new_due.astimezone(validate_timezone(tz_name)).time()
                else:
                    new_due = local_to_utc(parsed, tz_name)
                    local_time = parsed.time()
                if new_due <= now:
                    raise InvalidInputError(
                        "That time is in the past. Please choose a future time.",
                        {"due_at": new_due.isoformat()},
                    )
                old["due_at"], new["due_at"] = r.due_at, new_due
                r.due_at = new_due
                if tz_name != r.timezone:
                    old["timezone"], new["timezone"] = r.timezone, tz_name
                    r.timezone = tz_name
                if r.is_recurring:
                    new["time_of_day"] = r.time_of_day = format_time_of_day(local_time)
                # A new time replaces any snoozed time
                _clear_snooze(r)
                if _status(r) == ReminderStatus.SNOOZED:
                    _transition(r, ReminderStatus.SCHEDULED)
            if not new:
                raise InvalidInputError("Nothing changed; provide a different message or time")
            if "message" in new:
                r.message = message
            return ReminderEventType.EDITED, {"old_values": old, "new_values": new}

        return self._mutate(reminder_id, guard, apply, source, call_session_id)

    def skip_next_occurrence(
        self,
        reminder_id: str,
        source: ReminderSource = ReminderSource.DASHBOARD,
        call_session_id: Optional[str] = None,
    ) -> Reminder:
        def guard(r: Reminder, now: datetime) -> None:
            if not r.is_recurring:
                raise InvalidTransitionError(
                    "Only recurring reminders can skip an occurrence",
                    {"reminder_id": r.id},
                )
            if r.is_terminal:
                raise InvalidTransitionError(
                    f"Reminder is already {r.status}",
                    {"reminder_id": r.id, "status": r.status},
                )

        def apply(r: Reminder, now: datetime):
            base_due = r.original_due_at or r.due_at
            skipped = r.due_at
            next_due = RecurrenceCalculator.first_occurrence_after(
                RecurrenceDescriptor.from_reminder(r), base_due, max(base_due, now)
            )
            _clear_snooze(r)
            if next_due is None:
                _transition(r, ReminderStatus.CANCELED)
                return ReminderEventType.SKIPPED, {"skipped_due_at": skipped, "series_ended": True}
            r.due_at = next_due
            if _status(r) == ReminderStatus.SNOOZED:
                _transition(r, ReminderStatus.SCHEDULED)
            return ReminderEventType.SKIPPED, {"skipped_due_at": skipped, "next_due_at": next_due}

        return self._mutate(reminder_id, guard, apply, source, call_session_id)

    # ------------------------------------------------------------------
    # Dispatcher callbacks
    # ------------------------------------------------------------------

    def claim_due_reminders(
        self,
        worker_id: str,
        now: Optional[datetime] = None,
        ttl_seconds: Optional[int] = None,
        limit: Optional[int] = None,
    ) -> List[Reminder]:
        """
        Claim due reminders for one dispatcher worker.

        Each claim is a compare-and-set on the row version, so two workers polling
        at the same time never receive the same reminder. A claim older than the
        TTL is treated as abandoned and can be taken over. Completion, failure or
        `release_claim` clears it.
        """
        now = to_utc_aware(now) if now else self.now()
        ttl = settings.DISPATCH_CLAIM_TTL_SECONDS if ttl_seconds is None else ttl_seconds
        candidates = repository.get_claimable_reminders(self.db, now, now - timedelta(seconds=ttl), limit)

        claimed: List[str] = []
        try:
            for candidate in candidates:
                if candidate.processing_claimed_by is not None:
                    logger.warning(
                        f"reminder {candidate.id} claim by {candidate.processing_claimed_by} "
                        f"expired at {candidate.processing_claimed_at}; reclaiming for {worker_id}"
                    )
                if repository.claim_reminder(self.db, candidate.id, candidate.version, worker_id, now):
                    claimed.append(candidate.id)
            self.db.commit()
        except SQLAlchemyError as e:
            self.db.rollback()
            logger.error(f"Failed to claim due reminders for worker {worker_id}: {e}")
            raise DatabaseError("Failed to claim due reminders") from e
        # Rows changed underneath the identity map
        self.db.expire_all()

        if candidates:
            logger.info(f"worker {worker_id} claimed {len(claimed)} of {len(candidates)} due reminders")
        return repository.reload_reminders(self.db, claimed)

    def release_claim(self, reminder_id: str, worker_id: str) -> bool:
        """Hand a claimed reminder back without a delivery outcome."""
        try:
            released = repository.release_reminder_claim(self.db, reminder_id, worker_id, self.now())
            self.db.commit()
        except SQLAlchemyError as e:
            self.db.rollback()
            logger.error(f"Failed to release claim on reminder {reminder_id}: {e}")
            raise DatabaseError("Failed to release reminder claim") from e
        self.db.expire_all()
        if not released:
            logger.warning(f"reminder {reminder_id} is not claimed by {worker_id}; nothing released")
        return released

    def complete_occurrence(
        self,
        reminder_id: str,
        fired_at: datetime,
        occurrence_due_at: Optional[datetime] = None,
        source: ReminderSource = ReminderSource.SYSTEM,
        call_session_id: Optional[str] = None,
    ) -> Reminder:
        """Apply a delivered occurrence. Repeated or stale signals are no-ops."""
        fired_at = to_utc_aware(fired_at)
        occurrence_due_at = to_utc_aware(occurrence_due_at)

        def already_applied(r: Reminder) -> bool:
            return self._completion_is_stale(r, fired_at, occurrence_due_at)

        def apply(r: Reminder, now: datetime):
            r.last_fired_at = fired_at
            r.paused_at = None
            r.last_delivery_status = DeliveryStatus.COMPLETED.value
            _clear_claim(r)
            r.occurrence_count = (r.occurrence_count or 0) + 1
            fired_due = r.due_at
            if r.is_recurring:
                next_due = RecurrenceCalculator.first_occurrence_after(
                    RecurrenceDescriptor.from_reminder(r), r.original_due_at or r.due_at, fired_at
                )
                _clear_snooze(r)
                if next_due is not None:
                    r.due_at = next_due
                    _transition(r, ReminderStatus.SCHEDULED)
                    return ReminderEventType.COMPLETED, {
                        "fired_at": fired_at,
                        "occurrence_due_at": fired_due,
                        "next_due_at": next_due,
                    }
            _transition(r, ReminderStatus.COMPLETED)
            return ReminderEventType.COMPLETED, {
                "fired_at": fired_at,
                "occurrence_due_at": fired_due,
                "series_completed": r.is_recurring,
            }

        return self._mutate(reminder_id, None, apply, source, call_session_id, skip_if=already_applied)

    def record_failure(
        self,
        reminder_id: str,
        reason: str,
        fired_at: Optional[datetime] = None,
        source: ReminderSource = ReminderSource.SYSTEM,
        call_session_id: Optional[str] = None,
    ) -> Reminder:
        """A failed delivery ends a one-time reminder; a recurring series moves on to its next occurrence."""
        attempted_at = to_utc_aware(fired_at) if fired_at else None

        def already_applied(r: Reminder) -> bool:
            return self._completion_is_stale(r, attempted_at or self.now(), None)

        def apply(r: Reminder, now: datetime):
            at = attempted_at or now
            failed_due = r.due_at
            r.paused_at = None
            no_answer = reason == DeliveryStatus.NO_ANSWER.value
            r.last_delivery_status = (DeliveryStatus.NO_ANSWER if no_answer else DeliveryStatus.FAILED).value
            _clear_claim(r)
            if r.is_recurring:
                next_due = RecurrenceCalculator.first_occurrence_after(
                    RecurrenceDescriptor.from_reminder(r), r.original_due_at or r.due_at, at
                )
                _clear_snooze(r)
                if next_due is not None:
                    r.due_at = next_due
                    _transition(r, ReminderStatus.SCHEDULED)
                else:
                    _transition(r, ReminderStatus.COMPLETED)
                return ReminderEventType.FAILED, {
                    "reason": reason,
                    "occurrence_due_at": failed_due,
                    "next_due_at": next_due,
                }
            _transition(r, ReminderStatus.FAILED)
            return ReminderEventType.FAILED, {"reason": reason, "occurrence_due_at": failed_due}

        return self._mutate(reminder_id, None, apply, source, call_session_id, skip_if=already_applied)

    @staticmethod
    def _completion_is_stale(
        r: Reminder,
        fired_at: datetime,
        occurrence_due_at: Optional[datetime],
    ) -> bool:
        if _status(r) not in COMPLETABLE:
            return True
        if r.last_fired_at is not None and fired_at <= r.last_fired_at:
            return True
        if r.due_at > fired_at:
            return True
        if occurrence_due_at is not None and occurrence_due_at != r.due_at:
            return True
        return False

    # ------------------------------------------------------------------
    # Optimistic read-modify-write
    # ------------------------------------------------------------------

    def _mutate(
        self,
        reminder_id: str,
        guard: Optional[Guard],
        apply: Apply,
        source: ReminderSource,
        call_session_id: Optional[str],
        skip_if: Optional[Callable[[Reminder], bool]] = None,
    ) -> Reminder:
        source = ReminderSource(source)
        now = self.now()
        reminder = self.get(reminder_id)

        if skip_if is not None and skip_if(reminder):
            reminder_duplicate_completions_total.inc()
            logger.info(f"reminder {reminder_id} signal ignored (already applied) status={reminder.status}")
            return reminder

        try:
            if guard is not None:
                guard(reminder, now)
            event_type, details = apply(reminder, now)
        except CareCallError as e:
            self.db.rollback()
            reminder_rejections_total.labels(code=e.code.value).inc()
            raise

        reminder.updated_at = now
        record_event(self.db, reminder, event_type, source, now, call_session_id=call_session_id, details=details)
        try:
            self.db.commit()
        except StaleDataError:
            self.db.rollback()
            reminder_concurrent_conflicts_total.inc()
            logger.warning(f"reminder {reminder_id} changed concurrently; re-checking against fresh state")
            fresh = repository.refresh_reminder(self.db, reminder_id)
            if fresh is None:
                raise NotFoundError(f"Reminder {reminder_id} not found", {"reminder_id": reminder_id})
            if skip_if is not None and skip_if(fresh):
                reminder_duplicate_completions_total.inc()
                return fresh
            if guard is not None:
                try:
                    guard(fresh, now)
                except CareCallError as e:
                    reminder_rejections_total.labels(code=e.code.value).inc()
                    raise
            raise ConcurrentModificationError(
                "Reminder was modified by another request; please retry",
                {"reminder_id": reminder_id, "version": fresh.version},
            )
        except SQLAlchemyError as e:
            self.db.rollback()
            logger.error(f"Failed to update reminder {reminder_id}: {e}")
            raise DatabaseError("Failed to update reminder") from e
        return reminder
