from datetime import datetime
from typing import List, Optional

from pydantic import BaseModel, ConfigDict, Field

from carecall.core.config import settings

from .models import ScheduleResult

TIME_OF_DAY_PATTERN = r"^([01]\d|2[0-3]):[0-5]\d$"


class RetryPolicy(BaseModel):
    max_retries: int = Field(default=settings.SCHEDULE_DEFAULT_MAX_RETRIES, ge=0, le=10)
    retry_window_minutes: int = Field(default=settings.SCHEDULE_DEFAULT_RETRY_WINDOW_MINUTES, ge=5, le=1440)


class ScheduleCreate(BaseModel):
    line_id: str = Field(..., min_length=1)
    account_id: Optional[str] = None
    timezone: str
    days_of_week: List[int] = Field(..., description="0=Sunday ... 6=Saturday")
    time_of_day: str = Field(..., pattern=TIME_OF_DAY_PATTERN)
    enabled: bool = True
    retry_policy: Optional[RetryPolicy] = None


class ScheduleUpdate(BaseModel):
    """Only supplied fields are validated and applied"""
    timezone: Optional[str] = None
    days_of_week: Optional[List[int]] = None
    time_of_day: Optional[str] = Field(default=None, pattern=TIME_OF_DAY_PATTERN)
    enabled: Optional[bool] = None
    retry_policy: Optional[RetryPolicy] = None
    expected_version: Optional[int] = None


class ScheduleCallResult(BaseModel):
    ran_at: datetime
    result: ScheduleResult


class ScheduleClaim(BaseModel):
    worker_id: str = Field(..., min_length=1, max_length=200)
    ttl_seconds: Optional[int] = Field(default=None, ge=1, le=3600)
    limit: Optional[int] = Field(default=None, ge=1, le=500)


class ScheduleClaimRelease(BaseModel):
    worker_id: str = Field(..., min_length=1, max_length=200)


class ScheduleRead(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: str
    line_id: str
    account_id: Optional[str] = None
    timezone: str
    days_of_week: List[int]
    time_of_day: str
    enabled: bool
    retry_max_retries: int
    retry_window_minutes: int
    next_run_at: Optional[datetime] = None
    last_run_at: Optional[datetime] = None
    last_result: Optional[str] = None
    processing_claimed_by: Optional[str] = None
    processing_claimed_at: Optional[datetime] = None
    version: int
    created_at: datetime
    updated_at: datetime
