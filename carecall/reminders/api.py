from datetime import datetime
from typing import List, Optional

from fastapi import APIRouter, Depends
from sqlalchemy.orm import Session

from carecall.db.session import get_db

from .models import ReminderSource
from .schemas import (
    ClaimRelease,
    DispatchClaim,
    ReminderCompletion,
    ReminderCreate,
    ReminderEdit,
    ReminderEventRead,
    ReminderFailure,
    ReminderRead,
    ReminderSnooze,
)
from .service import ReminderLifecycleService


router = APIRouter()


def get_reminder_service(db: Session = Depends(get_db)) -> ReminderLifecycleService:
    return ReminderLifecycleService(db)


@router.post("/", response_model=ReminderRead, status_code=201)
def create_reminder_endpoint(payload: ReminderCreate, service: ReminderLifecycleService = Depends(get_reminder_service)):
    return service.create(payload)


@router.get("/", response_model=List[ReminderRead])
def list_reminders_endpoint(
    line_id: str,
    status: Optional[str] = None,
    due_after: Optional[datetime] = None,
    due_before: Optional[datetime] = None,
    limit: int = 100,
    service: ReminderLifecycleService = Depends(get_reminder_service),
):
    return service.list_for_line(line_id, status=status, start=due_after, end=due_before, limit=min(limit, 500))


@router.get("/{reminder_id}", response_model=ReminderRead)
def get_reminder_endpoint(reminder_id: str, service: ReminderLifecycleService = Depends(get_reminder_service)):
    return service.get(reminder_id)


@router.get("/{reminder_id}/events", response_model=List[ReminderEventRead])
def list_reminder_events_endpoint(reminder_id: str, service: ReminderLifecycleService = Depends(get_reminder_service)):
    return service.list_events(reminder_id)


@router.post("/{reminder_id}/snooze", response_model=ReminderRead)
def snooze_reminder_endpoint(
    reminder_id: str,
    payload: ReminderSnooze,
    service: ReminderLifecycleService = Depends(get_reminder_service),
):
    return service.snooze(reminder_id, payload.snooze_minutes, source=ReminderSource.DASHBOARD)


@router.post("/{reminder_id}/pause", response_model=ReminderRead)
def pause_reminder_endpoint(reminder_id: str, service: ReminderLifecycleService = Depends(get_reminder_service)):
    return service.pause(reminder_id, source=ReminderSource.DASHBOARD)


@router.post("/{reminder_id}/resume", response_model=ReminderRead)
def resume_reminder_endpoint(reminder_id: str, service: ReminderLifecycleService = Depends(get_reminder_service)):
    return service.resume(reminder_id, source=ReminderSource.DASHBOARD)


@router.post("/{reminder_id}/cancel", response_model=ReminderRead)
def cancel_reminder_endpoint(reminder_id: str, service: ReminderLifecycleService = Depends(get_reminder_service)):
    return service.cancel(reminder_id, source=ReminderSource.DASHBOARD)


@router.patch("/{reminder_id}", response_model=ReminderRead)
def edit_reminder_endpoint(
    reminder_id: str,
    payload: ReminderEdit,
    service: ReminderLifecycleService = Depends(get_reminder_service),
):
    """Change the message and/or the local due time of a reminder."""
    return service.edit(
        reminder_id,
        new_message=payload.message,
        new_time_local=payload.due_at_local,
        timezone=payload.timezone,
        source=ReminderSource.DASHBOARD,
    )


@router.post("/{reminder_id}/skip", response_model=ReminderRead)
def skip_reminder_endpoint(reminder_id: str, service: ReminderLifecycleService = Depends(get_reminder_service)):
    return service.skip_next_occurrence(reminder_id, source=ReminderSource.DASHBOARD)


# Dispatcher callbacks

@router.post("/{reminder_id}/complete", response_model=ReminderRead)
def complete_reminder_endpoint(
    reminder_id: str,
    payload: ReminderCompletion,
    service: ReminderLifecycleService = Depends(get_reminder_service),
):
    return service.complete_occurrence(
        reminder_id, payload.fired_at, payload.occurrence_due_at, source=ReminderSource.SYSTEM
    )


@router.post("/{reminder_id}/fail", response_model=ReminderRead)
def fail_reminder_endpoint(
    reminder_id: str,
    payload: ReminderFailure,
    service: ReminderLifecycleService = Depends(get_reminder_service),
):
    return service.record_failure(reminder_id, payload.reason, source=ReminderSource.SYSTEM)


@router.post("/claim", response_model=List[ReminderRead])
def claim_due_reminders_endpoint(
    payload: DispatchClaim,
    service: ReminderLifecycleService = Depends(get_reminder_service),
):
    """Claim due reminders for one dispatcher worker; concurrent workers never share a reminder."""
    return service.claim_due_reminders(payload.worker_id, ttl_seconds=payload.ttl_seconds, limit=payload.limit)


@router.post("/{reminder_id}/release")
def release_reminder_claim_endpoint(
    reminder_id: str,
    payload: ClaimRelease,
    service: ReminderLifecycleService = Depends(get_reminder_service),
):
    service.get(reminder_id)
    return {"released": service.release_claim(reminder_id, payload.worker_id)}
