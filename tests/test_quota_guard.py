import logging

import pytest
import redis

from carecall.core.config import Environment, settings
from carecall.ratelimit.anomaly import AnomalyObserver
from carecall.ratelimit.config import IdentifierKind, RateLimitAction, RateLimitRule
from carecall.ratelimit.guard import QuotaGuard, is_private_address
from carecall.ratelimit.store import CounterCheck, CounterStore, CounterStoreUnavailable, RedisCounterStore

PHONE = "+15555550100"
IP = "203.0.113.7"


def rule(kind, limit, window, namespace="test"):
    return RateLimitRule(kind, limit, window, namespace)


def make_guard(store, rules=None, **kwargs):
    kwargs.setdefault("fail_open", True)
    kwargs.setdefault("disabled_actions", [])
    kwargs.setdefault("bypass_private_networks", False)
    return QuotaGuard(store=store, rules=rules, **kwargs)


class UnavailableStore(CounterStore):
    def check_and_increment(self, checks):
        raise CounterStoreUnavailable("connection refused")

    def is_action_disabled(self, action):
        raise CounterStoreUnavailable("connection refused")

    def set_action_disabled(self, action, disabled):
        raise CounterStoreUnavailable("connection refused")


class ExplodingObserver:
    def observe(self, *args, **kwargs):
        raise RuntimeError("alert sink down")


class TestLimits:
    def test_blocks_after_limit(self, quota_guard):
        for expected_remaining in (4, 3, 2, 1, 0):
            result = quota_guard.check(RateLimitAction.VERIFY_SEND, {"phone": PHONE})
            assert result.allowed
            assert result.remaining == expected_remaining

        blocked = quota_guard.check(RateLimitAction.VERIFY_SEND, {"phone": PHONE})
        assert not blocked.allowed
        assert blocked.limit_type == IdentifierKind.PHONE
        assert blocked.retry_after_seconds == 3600
        assert blocked.reason == "blocked"

    def test_rejected_request_consumes_no_quota(self, counter_store):
        rules = {RateLimitAction.VERIFY_SEND: [rule(IdentifierKind.PHONE, 1, 60), rule(IdentifierKind.IP, 3, 3600)]}
        guard = make_guard(counter_store, rules)

        assert guard.check("verify_send", {"phone": "a", "ip": IP}).allowed
        # Blocked on phone; the ip counter must stay at 1
        assert not guard.check("verify_send", {"phone": "a", "ip": IP}).allowed
        assert guard.check("verify_send", {"phone": "b", "ip": IP}).allowed
        assert guard.check("verify_send", {"phone": "c", "ip": IP}).allowed

        blocked = guard.check("verify_send", {"phone": "d", "ip": IP})
        assert not blocked.allowed
        assert blocked.limit_type == IdentifierKind.IP

    def test_reports_longest_block(self, counter_store, ticker):
        rules = {RateLimitAction.VERIFY_SEND: [rule(IdentifierKind.PHONE, 1, 60), rule(IdentifierKind.IP, 1, 3600)]}
        guard = make_guard(counter_store, rules)
        guard.check("verify_send", {"phone": PHONE, "ip": IP})
        ticker.advance(30)

        blocked = guard.check("verify_send", {"phone": PHONE, "ip": IP})
        assert blocked.limit_type == IdentifierKind.IP
        assert blocked.retry_after_seconds == 3570

    def test_window_resets(self, quota_guard, ticker):
        for _ in range(5):
            quota_guard.check(RateLimitAction.VERIFY_SEND, {"phone": PHONE})
        assert not quota_guard.check(RateLimitAction.VERIFY_SEND, {"phone": PHONE}).allowed

        ticker.advance(3600)
        assert quota_guard.check(RateLimitAction.VERIFY_SEND, {"phone": PHONE}).allowed

    def test_ip_quota_shared_between_send_and_check(self, quota_guard):
        for i in range(20):
            action = RateLimitAction.VERIFY_SEND if i % 2 else RateLimitAction.VERIFY_CHECK
            assert quota_guard.check(action, {"phone": f"+1555000{i:04d}", "ip": IP}).allowed

        blocked = quota_guard.check(RateLimitAction.VERIFY_CHECK, {"phone": "+15559999999", "ip": IP})
        assert not blocked.allowed
        assert blocked.limit_type == IdentifierKind.IP

    def test_phone_quota_is_per_action(self, quota_guard):
        for _ in range(5):
            quota_guard.check(RateLimitAction.VERIFY_SEND, {"phone": PHONE})
        assert quota_guard.check(RateLimitAction.VERIFY_CHECK, {"phone": PHONE}).allowed

    def test_missing_identifiers_are_skipped(self, quota_guard):
        result = quota_guard.check(RateLimitAction.VERIFY_SEND, {"phone": None, "ip": ""})
        assert result.allowed
        assert result.reason == "no_identifiers"

    def test_reminders_per_call_session(self, quota_guard):
        for _ in range(5):
            assert quota_guard.check(RateLimitAction.SET_REMINDER, {"session": "call-1"}).allowed
        assert not quota_guard.check(RateLimitAction.SET_REMINDER, {"session": "call-1"}).allowed
        assert quota_guard.check(RateLimitAction.SET_REMINDER, {"session": "call-2"}).allowed


class TestDegradedStore:
    def test_fail_open(self):
        result = make_guard(UnavailableStore(), fail_open=True).check("sms", {"account": "acct-1"})
        assert result.allowed
        assert result.store_available is False
        assert result.reason == "store_unavailable"

    def test_fail_closed(self):
        result = make_guard(UnavailableStore(), fail_open=False).check("sms", {"account": "acct-1"})
        assert not result.allowed
        assert result.store_available is False
        assert result.retry_after_seconds == 60

    def test_unreachable_redis(self):
        client = redis.Redis(host="127.0.0.1", port=1, socket_connect_timeout=0.2, socket_timeout=0.2)
        guard = make_guard(RedisCounterStore(client), fail_open=True)
        result = guard.check(RateLimitAction.VERIFY_SEND, {"phone": PHONE})
        assert result.allowed
        assert result.store_available is False


class TestKillSwitch:
    def test_disabled_by_settings(self, counter_store):
        guard = make_guard(counter_store, disabled_actions=["sms"])
        result = guard.check("sms", {"account": "acct-1"})
        assert not result.allowed
        assert result.reason == "action_disabled"
        assert guard.check("verify_send", {"phone": PHONE}).allowed

    def test_runtime_toggle(self, quota_guard):
        quota_guard.disable_action(RateLimitAction.VERIFY_SEND)
        assert quota_guard.check("verify_send", {"phone": PHONE}).reason == "action_disabled"
        quota_guard.enable_action("verify_send")
        assert quota_guard.check("verify_send", {"phone": PHONE}).allowed


class TestPrivateNetworkBypass:
    @pytest.mark.parametrize("value", ["127.0.0.1", "10.0.0.5", "172.31.255.1", "192.168.1.20", "::1", "::ffff:172.16.0.3"])
    def test_private(self, value):
        assert is_private_address(value)

    @pytest.mark.parametrize(
        "value",
        ["8.8.8.8", IP, "192.0.2.1", "198.51.100.4", "169.254.10.1", "0.0.0.0", "fc00::1", "not-an-ip", "", None],
    )
    def test_not_private(self, value):
        assert not is_private_address(value)

    def test_bypass_outside_production(self, counter_store):
        rules = {RateLimitAction.VERIFY_SEND: [rule(IdentifierKind.IP, 1, 3600)]}
        guard = make_guard(counter_store, rules, bypass_private_networks=True)
        for _ in range(3):
            assert guard.check("verify_send", {"ip": "10.0.0.5"}).reason == "bypassed"
        assert guard.check("verify_send", {"ip": IP}).allowed
        assert not guard.check("verify_send", {"ip": IP}).allowed

    def test_never_bypassed_in_production(self, counter_store, monkeypatch):
        monkeypatch.setattr(settings, "ENVIRONMENT", Environment.PRODUCTION)
        guard = make_guard(counter_store, bypass_private_networks=True)
        assert guard.bypass_private_networks is False


class TestAnomalies:
    @pytest.fixture
    def alerts(self):
        return []

    @pytest.fixture
    def observer(self, counter_store, ticker, alerts):
        return AnomalyObserver(
            counter_store,
            repeated_hits_threshold=3,
            enumeration_threshold=3,
            alert_callback=alerts.append,
            clock=ticker,
        )

    def test_repeated_hits(self, counter_store, observer, alerts, caplog):
        rules = {RateLimitAction.VERIFY_SEND: [rule(IdentifierKind.PHONE, 1, 3600)]}
        guard = make_guard(counter_store, rules, observer=observer)
        with caplog.at_level(logging.WARNING, logger="carecall.ratelimit.anomaly"):
            for _ in range(5):
                guard.check("verify_send", {"phone": PHONE})

        repeated = [a for a in alerts if a.anomaly_type == "repeated_hits"]
        assert len(repeated) == 1
        assert repeated[0].source == PHONE
        assert repeated[0].details["hit_count"] == 3
        assert any("repeated_hits" in r.message for r in caplog.records)

    def test_enumeration(self, counter_store, observer, alerts):
        guard = make_guard(counter_store, observer=observer)
        for phone in ("+15550000001", "+15550000002", "+15550000003", "+15550000003"):
            guard.check("verify_send", {"phone": phone, "ip": IP})

        enumeration = [a for a in alerts if a.anomaly_type == "enumeration"]
        assert len(enumeration) == 1
        assert enumeration[0].source == IP
        assert enumeration[0].details["unique_phones"] == 3

    def test_ip_blocked_alerts_once_per_hour(self, counter_store, observer, alerts, ticker):
        rules = {RateLimitAction.VERIFY_CHECK: [rule(IdentifierKind.IP, 1, 7200)]}
        guard = make_guard(counter_store, rules, observer=observer)
        guard.check("verify_check", {"ip": IP})
        guard.check("verify_check", {"ip": IP})
        guard.check("verify_check", {"ip": IP})
        assert [a.anomaly_type for a in alerts].count("ip_blocked") == 1

        ticker.advance(3600)
        guard.check("verify_check", {"ip": IP})
        assert [a.anomaly_type for a in alerts].count("ip_blocked") == 2

    def test_broken_callback_is_contained(self, counter_store, ticker):
        def explode(event):
            raise RuntimeError("pager offline")

        observer = AnomalyObserver(counter_store, repeated_hits_threshold=1, alert_callback=explode, clock=ticker)
        rules = {RateLimitAction.VERIFY_SEND: [rule(IdentifierKind.PHONE, 1, 3600)]}
        guard = make_guard(counter_store, rules, observer=observer)
        guard.check("verify_send", {"phone": PHONE})
        assert not guard.check("verify_send", {"phone": PHONE}).allowed

    def test_observer_failure_never_changes_decision(self, counter_store):
        guard = make_guard(counter_store, observer=ExplodingObserver())
        assert guard.check("verify_send", {"phone": PHONE}).allowed


class TestInMemoryStore:
    def test_expired_keys_are_swept(self, counter_store, ticker):
        for i in range(50):
            counter_store.check_and_increment([CounterCheck(f"counter:{i}", 5, 60)])
            counter_store.add_to_set(f"set:{i}", "+15555550100", 60)
            counter_store.set_if_absent(f"flag:{i}", 60)
        assert counter_store.tracked_keys() == 150

        ticker.advance(120)
        counter_store.check_and_increment([CounterCheck("counter:fresh", 5, 60)])
        assert counter_store.tracked_keys() == 1

    def test_live_keys_survive_a_sweep(self, counter_store, ticker):
        counter_store.check_and_increment([CounterCheck("short", 5, 30)])
        counter_store.check_and_increment([CounterCheck("long", 5, 3600)])
        ticker.advance(90)
        outcome = counter_store.check_and_increment([CounterCheck("long", 5, 3600)])
        assert outcome.states[0].count == 2
        assert counter_store.tracked_keys() == 1
