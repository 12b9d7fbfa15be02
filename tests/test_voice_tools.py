import pytest

from carecall.core.errors import InvalidInputError, InvalidTimezoneError
from carecall.reminders.models import ReminderStatus
from carecall.reminders.recurrence_models import RecurrenceFrequency
from carecall.reminders.schemas import RecurrenceInput
from carecall.voice import context as context_module
from carecall.voice.context import CallSessionContext
from carecall.voice.tools import VoiceReminderTools, describe_snooze

NY = "America/New_York"


@pytest.fixture
def ctx():
    return CallSessionContext(call_session_id="call-1", line_id="line-1", account_id="acct-1", timezone=NY)


@pytest.fixture
def tools(db, quota_guard, clock):
    return VoiceReminderTools(db, guard=quota_guard, clock=clock)


@pytest.fixture
def reminder_id(tools, ctx):
    return tools.set_reminder(ctx, "2025-01-06T12:00", "Take your blood pressure pill").data["reminder_id"]


class TestSetReminder:
    def test_confirms_in_local_time(self, tools, ctx, reminders):
        response = tools.set_reminder(ctx, "2025-01-06T12:00", "Take your blood pressure pill")
        assert response.success
        assert "Monday, January 6 at 12:00 PM" in response.message

        reminder_id = response.data["reminder_id"]
        event = reminders.list_events(reminder_id)[0]
        assert event.triggered_by == "voice"
        assert event.call_session_id == "call-1"
        assert ctx.tool_invocations == 1

    def test_recurring(self, tools, ctx):
        response = tools.set_reminder(
            ctx, "2025-01-07T09:00", "Morning walk", recurrence=RecurrenceInput(frequency=RecurrenceFrequency.DAILY)
        )
        assert response.success
        assert "It will repeat." in response.message

    def test_too_soon_offers_earliest_time(self, tools, ctx):
        response = tools.set_reminder(ctx, "2025-01-06T10:02", "Call the pharmacy")
        assert not response.success
        assert response.code == "LEAD_TIME_TOO_SHORT"
        assert "Monday, January 6 at 10:05 AM" in response.message

    def test_blank_message(self, tools, ctx):
        response = tools.set_reminder(ctx, "2025-01-06T12:00", "   ")
        assert not response.success
        assert response.code == "INVALID_INPUT"

    def test_quota_per_call(self, tools, ctx):
        for hour in range(12, 17):
            assert tools.set_reminder(ctx, f"2025-01-06T{hour}:00", "Drink water").success
        response = tools.set_reminder(ctx, "2025-01-06T18:00", "Drink water")
        assert not response.success
        assert response.code == "RATE_LIMITED"
        assert response.data["retry_after_seconds"] > 0


class TestSnooze:
    def test_uses_reminder_under_discussion(self, tools, ctx, reminder_id):
        ctx.current_reminder_id = reminder_id
        response = tools.snooze_reminder(ctx, 15)
        assert response.success
        assert "for 15 minutes" in response.message
        assert "2 more times" in response.message

    def test_unsupported_duration(self, tools, ctx, reminder_id):
        response = tools.snooze_reminder(ctx, 45, reminder_id)
        assert response.code == "INVALID_INPUT"
        assert "15 minutes" in response.message

    def test_limit(self, tools, ctx, reminder_id):
        for _ in range(3):
            assert tools.snooze_reminder(ctx, 15, reminder_id).success
        response = tools.snooze_reminder(ctx, 15, reminder_id)
        assert response.code == "SNOOZE_LIMIT_REACHED"
        assert "3 times" in response.message

    def test_paused_reminder(self, tools, ctx, reminder_id):
        tools.pause_reminder(ctx, reminder_id)
        response = tools.snooze_reminder(ctx, 15, reminder_id)
        assert response.code == "INVALID_TRANSITION"
        assert "resume it first" in response.message


class TestPauseResumeCancel:
    def test_pause_twice(self, tools, ctx, reminder_id):
        assert tools.pause_reminder(ctx, reminder_id).success
        response = tools.pause_reminder(ctx, reminder_id)
        assert response.code == "REMINDER_NOT_PAUSABLE"
        assert "already paused" in response.message

    def test_resume(self, tools, ctx, reminder_id):
        tools.pause_reminder(ctx, reminder_id)
        response = tools.resume_reminder(ctx, reminder_id)
        assert response.success
        assert "It will fire on Monday, January 6 at 12:00 PM" in response.message

    def test_resume_active_reminder(self, tools, ctx, reminder_id):
        response = tools.resume_reminder(ctx, reminder_id)
        assert not response.success
        assert "isn't paused" in response.message

    def test_cancel_recurring_series(self, tools, ctx, reminders):
        created = tools.set_reminder(
            ctx, "2025-01-07T09:00", "Morning walk", recurrence=RecurrenceInput(frequency=RecurrenceFrequency.DAILY)
        )
        response = tools.cancel_reminder(ctx, created.data["reminder_id"])
        assert response.success
        assert "entire recurring series" in response.message
        assert reminders.get(created.data["reminder_id"]).status == ReminderStatus.CANCELED.value

    def test_cancel_canceled(self, tools, ctx, reminder_id):
        tools.cancel_reminder(ctx, reminder_id)
        response = tools.cancel_reminder(ctx, reminder_id)
        assert response.code == "INVALID_TRANSITION"


class TestEdit:
    def test_new_time(self, tools, ctx, reminder_id):
        response = tools.edit_reminder(ctx, reminder_id, new_time_local="2025-01-06T15:00")
        assert response.success
        assert "3:00 PM" in response.message

    def test_time_in_past(self, tools, ctx, reminder_id):
        response = tools.edit_reminder(ctx, reminder_id, new_time_local="2025-01-06T08:00")
        assert not response.success
        assert response.message == "That time is in the past. Please choose a future time."

    def test_nothing_to_change(self, tools, ctx, reminder_id):
        response = tools.edit_reminder(ctx, reminder_id)
        assert response.code == "INVALID_INPUT"


class TestAccess:
    def test_voice_control_disabled(self, tools, ctx, reminder_id, reminders):
        ctx.allow_voice_reminder_control = False
        response = tools.pause_reminder(ctx, reminder_id)
        assert response.code == "VOICE_CONTROL_DISABLED"
        assert reminders.get(reminder_id).status == ReminderStatus.SCHEDULED.value

    def test_other_line_looks_missing(self, tools, reminder_id):
        stranger = CallSessionContext(call_session_id="call-2", line_id="line-2", timezone=NY)
        response = tools.cancel_reminder(stranger, reminder_id)
        assert response.code == "NOT_FOUND"

    def test_unknown_reminder(self, tools, ctx):
        assert tools.pause_reminder(ctx, "does-not-exist").code == "NOT_FOUND"

    def test_which_reminder(self, tools, ctx):
        response = tools.pause_reminder(ctx)
        assert not response.success
        assert "which one" in response.message


class TestListReminders:
    def test_empty(self, tools, ctx):
        assert tools.list_reminders(ctx).message == "You have no upcoming reminders scheduled."

    def test_marks_paused(self, tools, ctx):
        first = tools.set_reminder(ctx, "2025-01-06T12:00", "Lunch pill").data["reminder_id"]
        tools.set_reminder(ctx, "2025-01-06T18:00", "Dinner pill")
        tools.pause_reminder(ctx, first)

        response = tools.list_reminders(ctx)
        assert response.message.startswith("You have 2 upcoming reminders.")
        assert "(paused)" in response.message
        assert [item["message"] for item in response.data["reminders"]] == ["Lunch pill", "Dinner pill"]


class TestCallSessionContext:
    def test_requires_valid_zone(self):
        with pytest.raises(InvalidTimezoneError):
            CallSessionContext(call_session_id="call-1", line_id="line-1", timezone="PST")

    def test_closed_by_with_block(self, tools):
        with CallSessionContext(call_session_id="call-3", line_id="line-1", timezone=NY) as session:
            tools.list_reminders(session)
        assert session.closed
        assert len(session.tool_calls) == 0
        with pytest.raises(InvalidInputError):
            tools.list_reminders(session)

    def test_tool_call_cap(self, ctx, monkeypatch):
        monkeypatch.setattr(context_module, "MAX_TOOL_INVOCATIONS", 2)
        ctx.record_tool_call("list_reminders")
        ctx.record_tool_call("list_reminders")
        with pytest.raises(InvalidInputError):
            ctx.record_tool_call("list_reminders")


@pytest.mark.parametrize(
    "minutes, phrase",
    [(15, "for 15 minutes"), (60, "for 1 hour"), (120, "for 2 hours"), (1440, "until tomorrow")],
)
def test_describe_snooze(minutes, phrase):
    assert describe_snooze(minutes) == phrase
