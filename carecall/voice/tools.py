"""
Reminder tools for the voice agent.

Every tool takes the call's CallSessionContext, runs the lifecycle command
with source=voice and answers with a short sentence the agent can speak.
"""
import logging
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Callable, Dict, Optional

from pydantic import ValidationError
from sqlalchemy.orm import Session

from carecall.core.config import settings
from carecall.core.errors import CareCallError, ErrorCode, InvalidInputError, NotFoundError
from carecall.ratelimit.config import IdentifierKind, RateLimitAction
from carecall.ratelimit.guard import QuotaGuard
from carecall.reminders.models import Reminder, ReminderSource, ReminderStatus
from carecall.reminders.schemas import RecurrenceInput, ReminderCreate
from carecall.reminders.service import ReminderLifecycleService
from carecall.utils.timezone import format_in_timezone

from .context import CallSessionContext

logger = logging.getLogger(__name__)

CONTROL_DISABLED_MESSAGE = (
    "I'm sorry, but your caregiver has disabled reminder management by phone. "
    "Please ask them to make changes through the app."
)
NOT_FOUND_MESSAGE = "I couldn't find that reminder. Would you like me to list your reminders?"
GENERIC_FAILURE_MESSAGE = "I'm sorry, something went wrong with that reminder. Could you try again in a moment?"

ERROR_MESSAGES = {
    ErrorCode.REMINDER_NOT_PAUSABLE: "This reminder can't be paused right now.",
    ErrorCode.SNOOZE_LIMIT_REACHED: (
        f"You've already snoozed this reminder {settings.REMINDER_MAX_SNOOZE_COUNT} times. I can't snooze it again."
    ),
    ErrorCode.INVALID_TRANSITION: "This reminder is no longer active.",
    ErrorCode.INVALID_TIMEZONE: "I couldn't work out the time zone for that reminder.",
    ErrorCode.INVALID_INPUT: "I didn't quite get that. Could you say it differently?",
    ErrorCode.CONCURRENT_MODIFICATION: "That reminder was just changed. Could you ask me again?",
    ErrorCode.RATE_LIMITED: "I've set quite a few reminders on this call already. Let's add more next time.",
    ErrorCode.NOT_FOUND: NOT_FOUND_MESSAGE,
}


@dataclass
class ToolResponse:
    success: bool
    message: str
    code: Optional[str] = None
    data: Dict[str, Any] = field(default_factory=dict)


def describe_snooze(minutes: int) -> str:
    if minutes == 1440:
        return "until tomorrow"
    if minutes >= 60:
        hours = minutes // 60
        return f"for {hours} hour{'s' if hours > 1 else ''}"
    return f"for {minutes} minutes"


class VoiceReminderTools:
    def __init__(
        self,
        db: Session,
        guard: Optional[QuotaGuard] = None,
        clock: Optional[Callable[[], datetime]] = None,
    ):
        self.reminders = ReminderLifecycleService(db, clock=clock)
        self.guard = guard

    # ------------------------------------------------------------------

    def set_reminder(
        self,
        ctx: CallSessionContext,
        due_at_local: str,
        message: str,
        recurrence: Optional[RecurrenceInput] = None,
        privacy_scope: str = "line_only",
    ) -> ToolResponse:
        if self.guard is not None:
            limit = self.guard.check(
                RateLimitAction.SET_REMINDER,
                {IdentifierKind.SESSION: ctx.call_session_id, IdentifierKind.ACCOUNT: ctx.account_id},
            )
            if not limit.allowed:
                return self._respond(ctx, "set_reminder", ToolResponse(
                    False, ERROR_MESSAGES[ErrorCode.RATE_LIMITED], ErrorCode.RATE_LIMITED.value,
                    {"retry_after_seconds": limit.retry_after_seconds},
                ))

        try:
            payload = ReminderCreate(
                line_id=ctx.line_id,
                account_id=ctx.account_id,
                timezone=ctx.timezone,
                due_at_local=due_at_local,
                message=message,
                privacy_scope=privacy_scope,
                recurrence=recurrence,
                source=ReminderSource.VOICE,
                call_session_id=ctx.call_session_id,
            )
        except ValidationError as e:
            return self._error(ctx, "set_reminder", InvalidInputError("Invalid reminder request", {"errors": e.errors()}))

        try:
            reminder = self.reminders.create(payload)
        except CareCallError as e:
            if e.code == ErrorCode.LEAD_TIME_TOO_SHORT:
                earliest = datetime.fromisoformat(e.details["earliest_allowed_utc"])
                spoken = format_in_timezone(earliest, ctx.timezone)
                return self._respond(ctx, "set_reminder", ToolResponse(
                    False,
                    f"I need at least {settings.REMINDER_MIN_LEAD_MINUTES} minutes' notice. "
                    f"The earliest I can set it for is {spoken}. Would that work?",
                    e.code.value,
                    e.details,
                ))
            return self._error(ctx, "set_reminder", e)

        when = format_in_timezone(reminder.due_at, reminder.timezone)
        repeat = " It will repeat." if reminder.is_recurring else ""
        return self._respond(ctx, "set_reminder", ToolResponse(
            True,
            f"Okay, I'll remind you on {when}: \"{reminder.message}\".{repeat}",
            data={"reminder_id": reminder.id, "due_at": reminder.due_at.isoformat()},
        ), reminder_id=reminder.id)

    def snooze_reminder(self, ctx: CallSessionContext, minutes: int, reminder_id: Optional[str] = None) -> ToolResponse:
        if minutes not in settings.REMINDER_VALID_SNOOZE_MINUTES:
            return self._respond(ctx, "snooze_reminder", ToolResponse(
                False,
                "Please choose 15 minutes, 30 minutes, 1 hour, 2 hours, or tomorrow.",
                ErrorCode.INVALID_INPUT.value,
            ))

        def run(rid: str) -> ToolResponse:
            reminder = self.reminders.snooze(rid, minutes, source=ReminderSource.VOICE, call_session_id=ctx.call_session_id)
            remaining = settings.REMINDER_MAX_SNOOZE_COUNT - reminder.current_snooze_count
            note = (
                f" You can snooze {remaining} more time{'s' if remaining > 1 else ''}."
                if remaining > 0
                else " That was your last snooze for this reminder."
            )
            return ToolResponse(
                True,
                f"Okay, I've snoozed your reminder {describe_snooze(minutes)}.{note} Is there anything else?",
                data={"reminder_id": rid, "new_due_at": reminder.due_at.isoformat()},
            )

        return self._run_on_reminder(ctx, "snooze_reminder", reminder_id, run, which="snooze")

    def pause_reminder(self, ctx: CallSessionContext, reminder_id: Optional[str] = None) -> ToolResponse:
        def run(rid: str) -> ToolResponse:
            reminder = self.reminders.pause(rid, source=ReminderSource.VOICE, call_session_id=ctx.call_session_id)
            return ToolResponse(
                True,
                f"I've paused your reminder \"{reminder.message}\". It won't fire until you resume it. "
                "Would you like me to do anything else?",
                data={"reminder_id": rid},
            )

        return self._run_on_reminder(ctx, "pause_reminder", reminder_id, run, which="pause")

    def resume_reminder(self, ctx: CallSessionContext, reminder_id: Optional[str] = None) -> ToolResponse:
        def run(rid: str) -> ToolResponse:
            reminder = self.reminders.resume(rid, source=ReminderSource.VOICE, call_session_id=ctx.call_session_id)
            if reminder.status == ReminderStatus.COMPLETED.value:
                return ToolResponse(
                    True,
                    f"Your reminder \"{reminder.message}\" has no more upcoming times, so it's now finished.",
                    data={"reminder_id": rid},
                )
            when = format_in_timezone(reminder.due_at, reminder.timezone)
            return ToolResponse(
                True,
                f"I've resumed your reminder \"{reminder.message}\". It will fire on {when}. Is there anything else?",
                data={"reminder_id": rid, "due_at": reminder.due_at.isoformat()},
            )

        return self._run_on_reminder(ctx, "resume_reminder", reminder_id, run, which="resume")

    def cancel_reminder(self, ctx: CallSessionContext, reminder_id: Optional[str] = None) -> ToolResponse:
        def run(rid: str) -> ToolResponse:
            reminder = self.reminders.cancel(rid, source=ReminderSource.VOICE, call_session_id=ctx.call_session_id)
            series = " The entire recurring series has been canceled." if reminder.is_recurring else ""
            return ToolResponse(
                True,
                f"I've canceled your reminder \"{reminder.message}\".{series} Is there anything else you'd like me to do?",
                data={"reminder_id": rid},
            )

        return self._run_on_reminder(ctx, "cancel_reminder", reminder_id, run, which="cancel")

    def edit_reminder(
        self,
        ctx: CallSessionContext,
        reminder_id: Optional[str] = None,
        new_message: Optional[str] = None,
        new_time_local: Optional[str] = None,
    ) -> ToolResponse:
        if not new_message and not new_time_local:
            return self._respond(ctx, "edit_reminder", ToolResponse(
                False,
                "What would you like to change? I can update the message or the time.",
                ErrorCode.INVALID_INPUT.value,
            ))

        def run(rid: str) -> ToolResponse:
            reminder = self.reminders.edit(
                rid,
                new_message=new_message or None,
                new_time_local=new_time_local or None,
                timezone=ctx.timezone if new_time_local else None,
                source=ReminderSource.VOICE,
                call_session_id=ctx.call_session_id,
            )
            changes = " and ".join(part for part, given in (("message", new_message), ("time", new_time_local)) if given)
            time_info = f" It's now set for {format_in_timezone(reminder.due_at, reminder.timezone)}." if new_time_local else ""
            return ToolResponse(
                True,
                f"I've updated the {changes} for your reminder.{time_info} "
                f"The reminder now says \"{reminder.message}\". Is there anything else?",
                data={"reminder_id": rid, "due_at": reminder.due_at.isoformat()},
            )

        return self._run_on_reminder(ctx, "edit_reminder", reminder_id, run, which="change")

    def list_reminders(self, ctx: CallSessionContext) -> ToolResponse:
        try:
            upcoming = self.reminders.list_upcoming(ctx.line_id, limit=10)
        except CareCallError as e:
            return self._error(ctx, "list_reminders", e)
        if not upcoming:
            return self._respond(ctx, "list_reminders", ToolResponse(
                True, "You have no upcoming reminders scheduled.", data={"reminders": []}
            ))

        items = []
        for r in upcoming:
            status = ""
            if r.is_paused:
                status = " (paused)"
            elif r.current_snooze_count > 0:
                status = " (snoozed)"
            items.append({
                "id": r.id,
                "message": r.message,
                "when": format_in_timezone(r.due_at, r.timezone),
                "is_recurring": r.is_recurring,
                "is_paused": r.is_paused,
                "status": status,
            })

        count = len(items)
        spoken = f"You have {count} upcoming reminder{'s' if count > 1 else ''}. "
        for i, item in enumerate(items[:3], start=1):
            spoken += f"{i}: \"{item['message']}\" on {item['when']}{item['status']}. "
        if count > 3:
            spoken += f"And {count - 3} more."
        return self._respond(ctx, "list_reminders", ToolResponse(True, spoken.strip(), data={"reminders": items}))

    # ------------------------------------------------------------------

    def _run_on_reminder(
        self,
        ctx: CallSessionContext,
        tool: str,
        reminder_id: Optional[str],
        run: Callable[[str], ToolResponse],
        which: str,
    ) -> ToolResponse:
        if not ctx.allow_voice_reminder_control:
            return self._respond(ctx, tool, ToolResponse(False, CONTROL_DISABLED_MESSAGE, "VOICE_CONTROL_DISABLED"))

        rid = reminder_id or ctx.current_reminder_id
        if not rid:
            return self._respond(ctx, tool, ToolResponse(
                False,
                f"I'm not sure which reminder you want to {which}. Could you tell me which one?",
                ErrorCode.INVALID_INPUT.value,
            ))

        try:
            self._owned_reminder(ctx, rid)
            response = run(rid)
        except CareCallError as e:
            return self._error(ctx, tool, e, reminder_id=rid)
        return self._respond(ctx, tool, response, reminder_id=rid)

    def _owned_reminder(self, ctx: CallSessionContext, reminder_id: str) -> Reminder:
        reminder = self.reminders.get(reminder_id)
        if reminder.line_id != ctx.line_id:
            # Other lines' reminders are reported as missing
            raise NotFoundError(f"Reminder {reminder_id} not found", {"reminder_id": reminder_id})
        return reminder

    def _error(self, ctx: CallSessionContext, tool: str, error: CareCallError, **details: Any) -> ToolResponse:
        message = ERROR_MESSAGES.get(error.code, GENERIC_FAILURE_MESSAGE)
        if error.code == ErrorCode.INVALID_TRANSITION and error.details.get("status") == ReminderStatus.PAUSED.value:
            message = "This reminder is paused. You'll need to resume it first."
        elif error.code == ErrorCode.INVALID_TRANSITION and tool == "resume_reminder" and error.details.get("status") in (
            ReminderStatus.SCHEDULED.value,
            ReminderStatus.SNOOZED.value,
        ):
            message = "This reminder isn't paused. It's already active."
        elif error.code == ErrorCode.REMINDER_NOT_PAUSABLE and error.details.get("status") == ReminderStatus.PAUSED.value:
            message = "This reminder is already paused."
        elif error.code == ErrorCode.REMINDER_NOT_PAUSABLE:
            message = "This reminder is no longer active and cannot be paused."
        elif error.code == ErrorCode.INVALID_INPUT and ("past" in error.message or "future" in error.message):
            message = "That time is in the past. Please choose a future time."
        logger.info(f"voice tool {tool} rejected code={error.code.value} call_session={ctx.call_session_id}")
        return self._respond(ctx, tool, ToolResponse(False, message, error.code.value, error.details), **details)

    @staticmethod
    def _respond(ctx: CallSessionContext, tool: str, response: ToolResponse, **details: Any) -> ToolResponse:
        ctx.record_tool_call(tool, success=response.success, code=response.code, **details)
        return response
