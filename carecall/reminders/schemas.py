"""
Reminder command and read schemas
"""
from datetime import datetime
from typing import Any, Dict, List, Optional

from pydantic import BaseModel, ConfigDict, Field, field_validator

from .models import PrivacyScope, ReminderSource
from .recurrence_models import RecurrenceFrequency


class RecurrenceInput(BaseModel):
    """Structured recurrence; natural-language phrases are parsed upstream"""
    frequency: RecurrenceFrequency
    interval: int = Field(default=1, ge=1, le=365)
    days_of_week: List[int] = Field(default_factory=list, description="0=Sunday ... 6=Saturday")
    day_of_month: Optional[int] = Field(default=None, ge=1, le=31)
    ends_at: Optional[datetime] = None  # naive values are read in the reminder's zone

    @field_validator("days_of_week")
    @classmethod
    def days_in_range(cls, v: List[int]) -> List[int]:
        if any(d < 0 or d > 6 for d in v):
            raise ValueError("days_of_week values must be 0-6 (0 = Sunday)")
        return sorted(set(v))


class ReminderCreate(BaseModel):
    """Schema for creating any type of reminder"""
    line_id: str = Field(..., min_length=1)
    account_id: Optional[str] = None
    timezone: str
    due_at_local: str = Field(..., description="YYYY-MM-DDTHH:mm in `timezone`; an explicit offset is taken as absolute")
    message: str = Field(..., min_length=1, max_length=500)
    privacy_scope: PrivacyScope = PrivacyScope.LINE_ONLY
    recurrence: Optional[RecurrenceInput] = None  # None creates a one-time reminder
    source: ReminderSource = ReminderSource.DASHBOARD
    call_session_id: Optional[str] = None

    @field_validator("message")
    @classmethod
    def message_not_blank(cls, v: str) -> str:
        v = v.strip()
        if not v:
            raise ValueError("message must not be blank")
        return v


class ReminderSnooze(BaseModel):
    snooze_minutes: int


class ReminderEdit(BaseModel):
    """At least one of message or due_at_local is required; timezone only applies with due_at_local"""
    message: Optional[str] = Field(default=None, min_length=1, max_length=500)
    due_at_local: Optional[str] = None
    timezone: Optional[str] = None


class ReminderCompletion(BaseModel):
    fired_at: datetime
    occurrence_due_at: Optional[datetime] = None


class ReminderFailure(BaseModel):
    reason: str = Field(default="call_failed", max_length=200)


class DispatchClaim(BaseModel):
    worker_id: str = Field(..., min_length=1, max_length=200)
    ttl_seconds: Optional[int] = Field(default=None, ge=1, le=3600)
    limit: Optional[int] = Field(default=None, ge=1, le=500)


class ClaimRelease(BaseModel):
    worker_id: str = Field(..., min_length=1, max_length=200)


class ReminderRead(BaseModel):
    """Schema for reading any type of reminder"""
    model_config = ConfigDict(from_attributes=True)

    id: str
    line_id: str
    account_id: Optional[str] = None
    due_at: datetime
    timezone: str
    message: str
    status: str
    privacy_scope: str
    is_paused: bool
    current_snooze_count: int
    original_due_at: Optional[datetime] = None
    snoozed_until: Optional[datetime] = None
    paused_at: Optional[datetime] = None
    last_fired_at: Optional[datetime] = None
    last_delivery_status: Optional[str] = None
    processing_claimed_by: Optional[str] = None
    processing_claimed_at: Optional[datetime] = None

    # Recurrence fields
    is_recurring: bool
    frequency: Optional[str] = None
    interval: int = 1
    days_of_week: Optional[List[int]] = None
    day_of_month: Optional[int] = None
    time_of_day: Optional[str] = None
    ends_at: Optional[datetime] = None
    occurrence_count: int = 0

    version: int
    created_at: datetime
    updated_at: datetime


class ReminderEventRead(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: int
    reminder_id: str
    line_id: str
    event_type: str
    triggered_by: str
    call_session_id: Optional[str] = None
    details: Optional[Dict[str, Any]] = None
    created_at: datetime
