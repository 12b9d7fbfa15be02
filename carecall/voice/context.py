"""
Per-call context for the voice tool layer.

A context lives exactly as long as one call: open it when the call session
starts, pass it to every tool, and let the `with` block tear it down.
"""
import logging
from collections import deque
from dataclasses import dataclass, field
from datetime import datetime, timezone as dt_timezone
from typing import Any, Deque, Dict, Optional

from carecall.core.config import settings
from carecall.core.errors import InvalidInputError
from carecall.utils.timezone import validate_timezone

logger = logging.getLogger(__name__)

MAX_TOOL_INVOCATIONS = 100
MAX_RECORDED_TOOL_CALLS = 50


@dataclass
class CallSessionContext:
    call_session_id: str
    line_id: str
    account_id: Optional[str] = None
    timezone: str = settings.DEFAULT_TIMEZONE
    allow_voice_reminder_control: bool = True
    current_reminder_id: Optional[str] = None  # the reminder a reminder call is about
    tool_invocations: int = 0
    tool_calls: Deque[Dict[str, Any]] = field(default_factory=lambda: deque(maxlen=MAX_RECORDED_TOOL_CALLS))
    closed: bool = False

    def __post_init__(self):
        if not self.call_session_id or not self.line_id:
            raise InvalidInputError("call_session_id and line_id are required")
        validate_timezone(self.timezone)

    def __enter__(self) -> "CallSessionContext":
        logger.info(f"call session {self.call_session_id} opened for line {self.line_id}")
        return self

    def __exit__(self, exc_type, exc, tb) -> None:
        self.close()

    def close(self) -> None:
        if self.closed:
            return
        self.closed = True
        logger.info(f"call session {self.call_session_id} closed after {self.tool_invocations} tool calls")
        self.tool_calls.clear()
        self.current_reminder_id = None

    def record_tool_call(self, tool: str, **details: Any) -> None:
        if self.closed:
            raise InvalidInputError(f"Call session {self.call_session_id} has ended")
        if self.tool_invocations >= MAX_TOOL_INVOCATIONS:
            raise InvalidInputError(f"Call session {self.call_session_id} exceeded {MAX_TOOL_INVOCATIONS} tool calls")
        self.tool_invocations += 1
        self.tool_calls.append({"tool": tool, "at": datetime.now(dt_timezone.utc).isoformat(), **details})
