"""
Advisory anomaly detection on quota guard outcomes.

Flags a key that keeps getting blocked within a five minute bucket, an IP
that walks through many phone numbers within an hour (enumeration), and the
first block of an IP in each hour. Findings go to the log, a Prometheus
counter and an optional callback; they never change a guard decision.
"""
import logging
import time
from dataclasses import dataclass, field
from datetime import datetime, timezone as dt_timezone
from typing import Any, Callable, Dict, Optional

from carecall.core.config import settings

from .config import IdentifierKind, RateLimitAction
from .metrics import ratelimit_anomalies_total
from .store import CounterStore

logger = logging.getLogger(__name__)

REPEATED_HITS_BUCKET_SECONDS = 5 * 60
ENUMERATION_WINDOW_SECONDS = 60 * 60


@dataclass
class AnomalyEvent:
    anomaly_type: str  # repeated_hits, enumeration, ip_blocked
    source: str
    source_kind: IdentifierKind
    action: RateLimitAction
    details: Dict[str, Any] = field(default_factory=dict)
    account_id: Optional[str] = None
    detected_at: datetime = field(default_factory=lambda: datetime.now(dt_timezone.utc))


class AnomalyObserver:
    def __init__(
        self,
        store: CounterStore,
        repeated_hits_threshold: Optional[int] = None,
        enumeration_threshold: Optional[int] = None,
        alert_callback: Optional[Callable[[AnomalyEvent], None]] = None,
        clock: Callable[[], float] = time.time,
    ):
        self.store = store
        self.repeated_hits_threshold = repeated_hits_threshold or settings.ANOMALY_REPEATED_HITS_THRESHOLD
        self.enumeration_threshold = enumeration_threshold or settings.ANOMALY_ENUMERATION_THRESHOLD
        self.alert_callback = alert_callback
        self._clock = clock

    def observe(
        self,
        action: RateLimitAction,
        identifiers: Dict[IdentifierKind, str],
        allowed: bool,
        limit_type: Optional[IdentifierKind] = None,
        retry_after_seconds: int = 0,
    ) -> None:
        now = self._clock()
        hour_bucket = int(now // ENUMERATION_WINDOW_SECONDS)
        ip = identifiers.get(IdentifierKind.IP)
        phone = identifiers.get(IdentifierKind.PHONE)
        account_id = identifiers.get(IdentifierKind.ACCOUNT)

        if action == RateLimitAction.VERIFY_SEND and ip and phone:
            added, unique_phones = self.store.add_to_set(
                f"anomaly:ip_phones:{ip}:{hour_bucket}", phone, 2 * ENUMERATION_WINDOW_SECONDS
            )
            if added and unique_phones >= self.enumeration_threshold:
                self._emit(AnomalyEvent(
                    "enumeration", ip, IdentifierKind.IP, action,
                    {"unique_phones": unique_phones, "window_hours": 1}, account_id,
                ))

        if allowed or limit_type is None:
            return

        source = identifiers.get(limit_type)
        if source:
            bucket = int(now // REPEATED_HITS_BUCKET_SECONDS)
            hits = self.store.incr(f"anomaly:hits:{limit_type.value}:{source}:{bucket}", 2 * REPEATED_HITS_BUCKET_SECONDS)
            if hits == self.repeated_hits_threshold:
                self._emit(AnomalyEvent(
                    "repeated_hits", source, limit_type, action,
                    {"hit_count": hits, "window_minutes": 5}, account_id,
                ))

        if limit_type == IdentifierKind.IP and ip:
            if self.store.set_if_absent(f"anomaly:alerted:ip:{ip}:{hour_bucket}", ENUMERATION_WINDOW_SECONDS):
                self._emit(AnomalyEvent(
                    "ip_blocked", ip, IdentifierKind.IP, action,
                    {"retry_after_seconds": retry_after_seconds}, account_id,
                ))

    def _emit(self, event: AnomalyEvent) -> None:
        ratelimit_anomalies_total.labels(anomaly_type=event.anomaly_type).inc()
        logger.warning(
            f"Rate limit anomaly type={event.anomaly_type} action={event.action.value} "
            f"{event.source_kind.value}={event.source} details={event.details}"
        )
        if self.alert_callback is not None:
            try:
                self.alert_callback(event)
            except Exception as e:
                logger.error(f"Anomaly alert callback failed: {e}")
