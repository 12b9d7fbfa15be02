"""
Counter stores for the quota guard.

Both stores implement fixed-window counters where the window starts at the
first hit of a key and lasts for the rule's window. `check_and_increment`
looks at every key first and increments all of them only when every key is
under its limit, so a rejected request never consumes quota.
"""
import logging
import threading
import time
from dataclasses import dataclass
from typing import Callable, Dict, List, Optional, Sequence, Set, Tuple

import redis

logger = logging.getLogger(__name__)


class CounterStoreUnavailable(Exception):
    """The backing store could not be reached or timed out"""


@dataclass(frozen=True)
class CounterCheck:
    key: str
    limit: int
    window_seconds: int


@dataclass(frozen=True)
class CounterState:
    key: str
    count: int
    limit: int
    ttl_seconds: float  # time left in the key's current window

    @property
    def over_limit(self) -> bool:
        return self.count >= self.limit


@dataclass(frozen=True)
class CheckOutcome:
    allowed: bool
    states: List[CounterState]


class CounterStore:
    """Interface shared by the Redis and in-memory stores"""

    def check_and_increment(self, checks: Sequence[CounterCheck]) -> CheckOutcome:
        raise NotImplementedError

    def is_action_disabled(self, action: str) -> bool:
        raise NotImplementedError

    def set_action_disabled(self, action: str, disabled: bool) -> None:
        raise NotImplementedError

    def incr(self, key: str, ttl_seconds: int) -> int:
        raise NotImplementedError

    def add_to_set(self, key: str, member: str, ttl_seconds: int) -> Tuple[bool, int]:
        """Add `member`; returns (newly_added, set_size)."""
        raise NotImplementedError

    def set_if_absent(self, key: str, ttl_seconds: int) -> bool:
        raise NotImplementedError


# KEYS: counter keys; ARGV: limit_1, window_1, limit_2, window_2, ...
# Returns {allowed, count_1, pttl_1, count_2, pttl_2, ...}
_CHECK_AND_INCREMENT_LUA = """
local allowed = 1
local counts = {}
local ttls = {}
for i = 1, #KEYS do
  counts[i] = tonumber(redis.call('GET', KEYS[i]) or '0')
  ttls[i] = redis.call('PTTL', KEYS[i])
  if counts[i] >= tonumber(ARGV[2 * i - 1]) then
    allowed = 0
  end
end
if allowed == 1 then
  for i = 1, #KEYS do
    counts[i] = redis.call('INCR', KEYS[i])
    if ttls[i] < 0 then
      ttls[i] = tonumber(ARGV[2 * i]) * 1000
      redis.call('PEXPIRE', KEYS[i], ttls[i])
    end
  end
end
local out = {allowed}
for i = 1, #KEYS do
  out[#out + 1] = counts[i]
  out[#out + 1] = ttls[i]
end
return out
"""

_DISABLED_ACTIONS_KEY = "ratelimit:disabled_actions"


class RedisCounterStore(CounterStore):
    def __init__(self, client: redis.Redis):
        self.client = client
        self._script = client.register_script(_CHECK_AND_INCREMENT_LUA)

    def _call(self, fn: Callable, *args, **kwargs):
        try:
            return fn(*args, **kwargs)
        except redis.RedisError as e:
            raise CounterStoreUnavailable(str(e)) from e

    def check_and_increment(self, checks: Sequence[CounterCheck]) -> CheckOutcome:
        if not checks:
            return CheckOutcome(True, [])
        keys = [c.key for c in checks]
        args: List[int] = []
        for c in checks:
            args.extend([c.limit, c.window_seconds])
        raw = self._call(self._script, keys=keys, args=args)
        allowed = int(raw[0]) == 1
        states = []
        for i, c in enumerate(checks):
            count = int(raw[1 + 2 * i])
            pttl = int(raw[2 + 2 * i])
            ttl = pttl / 1000.0 if pttl >= 0 else float(c.window_seconds)
            states.append(CounterState(c.key, count, c.limit, ttl))
        return CheckOutcome(allowed, states)

    def is_action_disabled(self, action: str) -> bool:
        return bool(self._call(self.client.sismember, _DISABLED_ACTIONS_KEY, action))

    def set_action_disabled(self, action: str, disabled: bool) -> None:
        if disabled:
            self._call(self.client.sadd, _DISABLED_ACTIONS_KEY, action)
        else:
            self._call(self.client.srem, _DISABLED_ACTIONS_KEY, action)

    def incr(self, key: str, ttl_seconds: int) -> int:
        count = int(self._call(self.client.incr, key))
        if count == 1:
            self._call(self.client.expire, key, ttl_seconds)
        return count

    def add_to_set(self, key: str, member: str, ttl_seconds: int) -> Tuple[bool, int]:
        pipe = self.client.pipeline()
        pipe.sadd(key, member)
        pipe.scard(key)
        pipe.expire(key, ttl_seconds)
        added, size, _ = self._call(pipe.execute)
        return int(added) == 1, int(size)

    def set_if_absent(self, key: str, ttl_seconds: int) -> bool:
        return bool(self._call(self.client.set, key, "1", nx=True, ex=ttl_seconds))


class InMemoryCounterStore(CounterStore):
    """Process-local store for development and tests"""

    SWEEP_INTERVAL_SECONDS = 60.0

    def __init__(self, clock: Callable[[], float] = time.monotonic):
        self._clock = clock
        self._lock = threading.Lock()
        self._counters: Dict[str, Tuple[int, float]] = {}  # key -> (count, expires_at)
        self._sets: Dict[str, Tuple[Set[str], float]] = {}
        self._flags: Dict[str, float] = {}
        self._disabled: Set[str] = set()
        self._next_sweep_at = 0.0

    def _sweep(self, now: float) -> None:
        """Drop expired keys; caller holds the lock."""
        if now < self._next_sweep_at:
            return
        self._next_sweep_at = now + self.SWEEP_INTERVAL_SECONDS
        before = self._tracked_keys()
        self._counters = {key: entry for key, entry in self._counters.items() if entry[1] > now}
        self._sets = {key: entry for key, entry in self._sets.items() if entry[1] > now}
        self._flags = {key: expires_at for key, expires_at in self._flags.items() if expires_at > now}
        swept = before - self._tracked_keys()
        if swept:
            logger.debug(f"in-memory counter store swept {swept} expired keys")

    def _tracked_keys(self) -> int:
        return len(self._counters) + len(self._sets) + len(self._flags)

    def tracked_keys(self) -> int:
        with self._lock:
            return self._tracked_keys()

    def _live_count(self, key: str, now: float) -> Tuple[int, Optional[float]]:
        entry = self._counters.get(key)
        if entry is None or entry[1] <= now:
            self._counters.pop(key, None)
            return 0, None
        return entry

    def check_and_increment(self, checks: Sequence[CounterCheck]) -> CheckOutcome:
        with self._lock:
            now = self._clock()
            self._sweep(now)
            current = [self._live_count(c.key, now) for c in checks]
            allowed = all(count < c.limit for (count, _), c in zip(current, checks))
            states = []
            for (count, expires_at), c in zip(current, checks):
                if allowed:
                    count += 1
                    if expires_at is None:
                        expires_at = now + c.window_seconds
                    self._counters[c.key] = (count, expires_at)
                ttl = (expires_at - now) if expires_at is not None else float(c.window_seconds)
                states.append(CounterState(c.key, count, c.limit, ttl))
            return CheckOutcome(allowed, states)

    def is_action_disabled(self, action: str) -> bool:
        return action in self._disabled

    def set_action_disabled(self, action: str, disabled: bool) -> None:
        with self._lock:
            if disabled:
                self._disabled.add(action)
            else:
                self._disabled.discard(action)

    def incr(self, key: str, ttl_seconds: int) -> int:
        with self._lock:
            now = self._clock()
            self._sweep(now)
            count, expires_at = self._live_count(key, now)
            count += 1
            self._counters[key] = (count, expires_at if expires_at is not None else now + ttl_seconds)
            return count

    def add_to_set(self, key: str, member: str, ttl_seconds: int) -> Tuple[bool, int]:
        with self._lock:
            now = self._clock()
            self._sweep(now)
            members, expires_at = self._sets.get(key, (set(), 0.0))
            if expires_at <= now:
                members = set()
            added = member not in members
            members.add(member)
            self._sets[key] = (members, now + ttl_seconds)
            return added, len(members)

    def set_if_absent(self, key: str, ttl_seconds: int) -> bool:
        with self._lock:
            now = self._clock()
            self._sweep(now)
            if self._flags.get(key, 0.0) > now:
                return False
            self._flags[key] = now + ttl_seconds
            return True
