"""
Quota guard for the mutation surface (verification, SMS, voice-created reminders).
"""
import ipaddress
import logging
import math
from dataclasses import dataclass, field
from typing import Any, Dict, Iterable, List, Mapping, Optional, Union

from carecall.core.config import settings
from carecall.core.redis import get_redis

from .anomaly import AnomalyObserver
from .config import IdentifierKind, RateLimitAction, RateLimitRule, build_rules
from .metrics import ratelimit_decisions_total, ratelimit_store_errors_total
from .store import (
    CounterCheck,
    CounterStore,
    CounterStoreUnavailable,
    InMemoryCounterStore,
    RedisCounterStore,
)

logger = logging.getLogger(__name__)


@dataclass
class RateLimitResult:
    allowed: bool
    limit_type: Optional[IdentifierKind] = None
    retry_after_seconds: int = 0
    remaining: Optional[int] = None
    store_available: bool = True
    reason: Optional[str] = None  # blocked, store_unavailable, action_disabled, bypassed, no_identifiers
    metadata: Dict[str, Any] = field(default_factory=dict)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "allowed": self.allowed,
            "limit_type": self.limit_type.value if self.limit_type else None,
            "retry_after_seconds": self.retry_after_seconds,
            "remaining": self.remaining,
            "store_available": self.store_available,
            "reason": self.reason,
            "metadata": self.metadata,
        }


def build_counter_store() -> CounterStore:
    client = get_redis()
    if client is None:
        logger.warning("Quota guard using a process-local counter store; limits are not shared across workers")
        return InMemoryCounterStore()
    return RedisCounterStore(client)


PRIVATE_NETWORKS = tuple(
    ipaddress.ip_network(cidr) for cidr in ("10.0.0.0/8", "172.16.0.0/12", "192.168.0.0/16")
)


def is_private_address(value: Optional[str]) -> bool:
    """Loopback or RFC 1918 only; documentation, link-local and other reserved ranges are not bypassed."""
    if not value:
        return False
    normalized = value[7:] if value.startswith("::ffff:") else value
    try:
        addr = ipaddress.ip_address(normalized)
    except ValueError:
        return False
    if addr.is_loopback:
        return True
    return addr.version == 4 and any(addr in network for network in PRIVATE_NETWORKS)


class QuotaGuard:
    def __init__(
        self,
        store: Optional[CounterStore] = None,
        rules: Optional[Dict[RateLimitAction, List[RateLimitRule]]] = None,
        observer: Optional[AnomalyObserver] = None,
        fail_open: Optional[bool] = None,
        disabled_actions: Optional[Iterable[str]] = None,
        bypass_private_networks: Optional[bool] = None,
    ):
        self.store = store if store is not None else build_counter_store()
        self.rules = rules or build_rules()
        self.observer = observer if observer is not None else AnomalyObserver(self.store)
        self.fail_open = settings.RATE_LIMIT_FAIL_OPEN if fail_open is None else fail_open
        self.disabled_actions = set(settings.RATE_LIMIT_DISABLED_ACTIONS if disabled_actions is None else disabled_actions)
        if bypass_private_networks is None:
            bypass_private_networks = settings.RATE_LIMIT_BYPASS_PRIVATE_NETWORKS
        self.bypass_private_networks = bypass_private_networks and not settings.is_production

    # Administrative kill switch

    def disable_action(self, action: Union[RateLimitAction, str]) -> None:
        action = RateLimitAction(action)
        self.store.set_action_disabled(action.value, True)
        logger.warning(f"Rate-limited action {action.value} disabled at runtime")

    def enable_action(self, action: Union[RateLimitAction, str]) -> None:
        action = RateLimitAction(action)
        self.store.set_action_disabled(action.value, False)
        logger.info(f"Rate-limited action {action.value} re-enabled")

    def _is_disabled(self, action: RateLimitAction) -> bool:
        if action.value in self.disabled_actions:
            return True
        try:
            return self.store.is_action_disabled(action.value)
        except CounterStoreUnavailable as e:
            logger.warning(f"Could not read kill switch for {action.value}: {e}")
            return False

    # Decision

    def check(
        self,
        action: Union[RateLimitAction, str],
        identifiers: Mapping[Union[IdentifierKind, str], Optional[str]],
    ) -> RateLimitResult:
        action = RateLimitAction(action)
        supplied = {IdentifierKind(k): v for k, v in identifiers.items() if v}

        if self._is_disabled(action):
            return self._finish(action, supplied, RateLimitResult(
                allowed=False, reason="action_disabled", store_available=True,
            ))

        if self.bypass_private_networks and is_private_address(supplied.get(IdentifierKind.IP)):
            return self._finish(action, supplied, RateLimitResult(allowed=True, reason="bypassed"))

        applicable = [(rule, supplied[rule.kind]) for rule in self.rules.get(action, []) if rule.kind in supplied]
        if not applicable:
            return self._finish(action, supplied, RateLimitResult(allowed=True, reason="no_identifiers"))

        checks = [CounterCheck(rule.key_for(value), rule.limit, rule.window_seconds) for rule, value in applicable]
        try:
            outcome = self.store.check_and_increment(checks)
        except CounterStoreUnavailable as e:
            ratelimit_store_errors_total.inc()
            logger.warning(
                f"Rate limit store unavailable for {action.value}; failing {'open' if self.fail_open else 'closed'}: {e}"
            )
            return self._finish(action, supplied, RateLimitResult(
                allowed=self.fail_open,
                store_available=False,
                reason="store_unavailable",
                retry_after_seconds=0 if self.fail_open else 60,
            ))

        if outcome.allowed:
            remaining = min(state.limit - state.count for state in outcome.states)
            return self._finish(action, supplied, RateLimitResult(allowed=True, remaining=max(0, remaining)))

        # Report the offending key that stays blocked the longest
        offending = [
            (rule, state) for (rule, _), state in zip(applicable, outcome.states) if state.over_limit
        ]
        rule, state = max(offending, key=lambda pair: pair[1].ttl_seconds)
        retry_after = max(1, math.ceil(state.ttl_seconds))
        return self._finish(action, supplied, RateLimitResult(
            allowed=False,
            limit_type=rule.kind,
            retry_after_seconds=retry_after,
            remaining=0,
            reason="blocked",
        ))

    def _finish(
        self,
        action: RateLimitAction,
        identifiers: Dict[IdentifierKind, str],
        result: RateLimitResult,
    ) -> RateLimitResult:
        outcome = "allowed" if result.allowed else "blocked"
        if result.reason in ("store_unavailable", "action_disabled", "bypassed"):
            outcome = result.reason
        ratelimit_decisions_total.labels(action=action.value, outcome=outcome).inc()
        if not result.allowed:
            logger.info(
                f"Rate limit {outcome} action={action.value} limit_type="
                f"{result.limit_type.value if result.limit_type else None} retry_after={result.retry_after_seconds}s"
            )

        if result.store_available and result.reason not in ("action_disabled", "bypassed"):
            try:
                self.observer.observe(
                    action,
                    identifiers,
                    result.allowed,
                    result.limit_type,
                    result.retry_after_seconds,
                )
            except Exception as e:
                logger.error(f"Anomaly observer failed for {action.value}: {e}")
        return result
