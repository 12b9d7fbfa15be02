"""
Reminder audit events.

Events are added to the caller's session and committed together with the
transition they describe, so the trail never records a change that rolled back.
"""
import logging
from datetime import datetime
from typing import Any, Dict, Optional

from sqlalchemy.orm import Session

from .metrics import reminder_transitions_total
from .models import Reminder, ReminderEvent, ReminderEventType, ReminderSource

logger = logging.getLogger(__name__)


def _jsonable(value: Any) -> Any:
    if isinstance(value, datetime):
        return value.isoformat()
    if isinstance(value, dict):
        return {key: _jsonable(item) for key, item in value.items()}
    if isinstance(value, (list, tuple)):
        return [_jsonable(item) for item in value]
    return value


def record_event(
    db: Session,
    reminder: Reminder,
    event_type: ReminderEventType,
    source: ReminderSource,
    now: datetime,
    call_session_id: Optional[str] = None,
    details: Optional[Dict[str, Any]] = None,
) -> ReminderEvent:
    event = ReminderEvent(
        reminder_id=reminder.id,
        line_id=reminder.line_id,
        event_type=event_type.value,
        triggered_by=ReminderSource(source).value,
        call_session_id=call_session_id,
        details=_jsonable(details) if details else None,
        created_at=now,
    )
    db.add(event)
    reminder_transitions_total.labels(event_type=event_type.value, source=ReminderSource(source).value).inc()
    logger.info(
        f"reminder {reminder.id} {event_type.value} by {ReminderSource(source).value} "
        f"status={reminder.status} due_at={reminder.due_at.isoformat() if reminder.due_at else None}"
    )
    return event
