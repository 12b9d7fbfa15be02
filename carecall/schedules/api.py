from typing import List, Optional

from fastapi import APIRouter, Depends
from sqlalchemy.orm import Session

from carecall.db.session import get_db

from .schemas import (
    ScheduleCallResult,
    ScheduleClaim,
    ScheduleClaimRelease,
    ScheduleCreate,
    ScheduleRead,
    ScheduleUpdate,
)
from .service import ScheduleService


router = APIRouter()


def get_schedule_service(db: Session = Depends(get_db)) -> ScheduleService:
    return ScheduleService(db)


@router.post("/", response_model=ScheduleRead, status_code=201)
def create_schedule_endpoint(payload: ScheduleCreate, service: ScheduleService = Depends(get_schedule_service)):
    return service.create(payload)


@router.get("/", response_model=List[ScheduleRead])
def list_schedules_endpoint(
    line_id: str,
    enabled: Optional[bool] = None,
    service: ScheduleService = Depends(get_schedule_service),
):
    return service.list_for_line(line_id, enabled=enabled)


@router.get("/{schedule_id}", response_model=ScheduleRead)
def get_schedule_endpoint(schedule_id: str, service: ScheduleService = Depends(get_schedule_service)):
    return service.get(schedule_id)


@router.patch("/{schedule_id}", response_model=ScheduleRead)
def update_schedule_endpoint(
    schedule_id: str,
    payload: ScheduleUpdate,
    service: ScheduleService = Depends(get_schedule_service),
):
    return service.update(schedule_id, payload)


@router.post("/{schedule_id}/result", response_model=ScheduleRead)
def record_call_result_endpoint(
    schedule_id: str,
    payload: ScheduleCallResult,
    service: ScheduleService = Depends(get_schedule_service),
):
    """Dispatcher callback after a scheduled call ran."""
    return service.record_call_result(schedule_id, payload.ran_at, payload.result)


@router.post("/claim", response_model=List[ScheduleRead])
def claim_due_schedules_endpoint(payload: ScheduleClaim, service: ScheduleService = Depends(get_schedule_service)):
    return service.claim_due_schedules(payload.worker_id, ttl_seconds=payload.ttl_seconds, limit=payload.limit)


@router.post("/{schedule_id}/release")
def release_schedule_claim_endpoint(
    schedule_id: str,
    payload: ScheduleClaimRelease,
    service: ScheduleService = Depends(get_schedule_service),
):
    service.get(schedule_id)
    return {"released": service.release_claim(schedule_id, payload.worker_id)}
