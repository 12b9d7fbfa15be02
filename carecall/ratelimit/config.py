"""
Quota rules per action.

Thresholds come from settings so they can be tuned per environment
(CARECALL_RATE_LIMIT_* variables). The ip and account counters are shared by
verify_send and verify_check; the phone counter is per action.
"""
from dataclasses import dataclass
from enum import Enum
from typing import Dict, List

from carecall.core.config import Settings, settings


class RateLimitAction(str, Enum):
    VERIFY_SEND = "verify_send"
    VERIFY_CHECK = "verify_check"
    SMS = "sms"
    SET_REMINDER = "set_reminder"


class IdentifierKind(str, Enum):
    PHONE = "phone"
    IP = "ip"
    ACCOUNT = "account"
    SESSION = "session"


@dataclass(frozen=True)
class RateLimitRule:
    kind: IdentifierKind
    limit: int
    window_seconds: int
    namespace: str

    def key_for(self, value: str) -> str:
        return f"ratelimit:{self.namespace}:{self.kind.value}:{value}"


def build_rules(cfg: Settings = settings) -> Dict[RateLimitAction, List[RateLimitRule]]:
    hourly = cfg.RATE_LIMIT_HOURLY_WINDOW_SECONDS
    daily = cfg.RATE_LIMIT_DAILY_WINDOW_SECONDS
    return {
        RateLimitAction.VERIFY_SEND: [
            RateLimitRule(IdentifierKind.PHONE, cfg.RATE_LIMIT_VERIFY_SEND_PER_PHONE, hourly, "verify_send"),
            RateLimitRule(IdentifierKind.IP, cfg.RATE_LIMIT_PER_IP, hourly, "verify"),
            RateLimitRule(IdentifierKind.ACCOUNT, cfg.RATE_LIMIT_PER_ACCOUNT, hourly, "verify"),
        ],
        RateLimitAction.VERIFY_CHECK: [
            RateLimitRule(IdentifierKind.PHONE, cfg.RATE_LIMIT_VERIFY_CHECK_PER_PHONE, hourly, "verify_check"),
            RateLimitRule(IdentifierKind.IP, cfg.RATE_LIMIT_PER_IP, hourly, "verify"),
            RateLimitRule(IdentifierKind.ACCOUNT, cfg.RATE_LIMIT_PER_ACCOUNT, hourly, "verify"),
        ],
        RateLimitAction.SMS: [
            RateLimitRule(IdentifierKind.ACCOUNT, cfg.RATE_LIMIT_SMS_PER_ACCOUNT, daily, "sms"),
        ],
        RateLimitAction.SET_REMINDER: [
            RateLimitRule(IdentifierKind.SESSION, cfg.RATE_LIMIT_REMINDERS_PER_SESSION, daily, "set_reminder"),
        ],
    }
