"""
Weekly call schedule model
"""
import uuid
from enum import Enum

from sqlalchemy import JSON, Boolean, Column, Index, Integer, String

from carecall.db.base import Base
from carecall.db.types import UTCDateTime, utcnow


class ScheduleResult(str, Enum):
    SUCCESS = "success"
    MISSED = "missed"
    SUPPRESSED_QUIET_HOURS = "suppressed_quiet_hours"
    FAILED = "failed"


class Schedule(Base):
    """Recurring weekly call plan for one line"""
    __tablename__ = "schedules"

    id = Column(String(36), primary_key=True, default=lambda: str(uuid.uuid4()))
    line_id = Column(String, nullable=False, index=True)
    account_id = Column(String, nullable=True, index=True)
    timezone = Column(String, nullable=False)
    days_of_week = Column(JSON, nullable=False)  # 0 = Sunday
    time_of_day = Column(String(5), nullable=False)  # local "HH:mm"
    enabled = Column(Boolean, nullable=False, default=True)

    # Retry policy read by the dispatcher
    retry_max_retries = Column(Integer, nullable=False, default=2)
    retry_window_minutes = Column(Integer, nullable=False, default=30)

    next_run_at = Column(UTCDateTime, nullable=True)
    last_run_at = Column(UTCDateTime, nullable=True)
    last_result = Column(String, nullable=True)
    processing_claimed_by = Column(String, nullable=True)  # worker holding the due row
    processing_claimed_at = Column(UTCDateTime, nullable=True)

    version = Column(Integer, nullable=False)
    created_at = Column(UTCDateTime, default=utcnow, nullable=False)
    updated_at = Column(UTCDateTime, default=utcnow, onupdate=utcnow, nullable=False)

    __mapper_args__ = {"version_id_col": version}

    __table_args__ = (
        Index("ix_schedules_enabled_next_run", "enabled", "next_run_at"),
        Index("ix_schedules_claimed_at", "processing_claimed_at"),
    )
