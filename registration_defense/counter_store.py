"""Shared counter store backing all rate limiting.

Counts are approximated over a sliding window with the rolling two-window
scheme: the previous fixed window is weighted by the fraction of it that still
overlaps the sliding window and added to the current window's raw count. Both
backends perform the roll and the increment as a single atomic operation.
"""

from __future__ import annotations

import logging
import math
import time
from threading import Lock
from typing import Dict, List, Optional, Protocol, Tuple

import redis

from .errors import DependencyUnavailable
from .models import Counter

logger = logging.getLogger(__name__)


def sliding_count(current: int, previous: int, elapsed: float, window_seconds: int) -> int:
    weight = max(0.0, 1.0 - elapsed / window_seconds)
    return int(math.ceil(round(previous * weight, 9))) + current


def window_remaining(now: float, window_seconds: int) -> int:
    index = math.floor(now / window_seconds)
    remaining = (index + 1) * window_seconds - now
    return max(1, int(math.ceil(remaining)))


def retry_delay(current: int, previous: int, elapsed: float, window_seconds: int, limit: int) -> int:
    """Seconds until one more attempt fits under ``limit``, assuming no other traffic.

    Solves ``ceil(previous * (1 - e / W)) + current + 1 <= limit`` for the
    elapsed time ``e``, first inside the current window and otherwise in the
    next one, where today's count becomes the weighted previous count.
    """
    window = float(window_seconds)
    room = limit - current - 1
    if room >= 0:
        if previous <= room:
            return 0
        delay = window * (1.0 - room / previous) - elapsed
        return max(1, int(math.ceil(round(delay, 9))))

    room = max(0, limit - 1)
    into_next = 0.0 if current <= room else window * (1.0 - room / current)
    return max(1, int(math.ceil(round(window - elapsed + into_next, 9))))


class CounterStore(Protocol):
    def increment(self, key: str, window_seconds: int, now: Optional[float] = None) -> Tuple[int, int]:
        ...

    def peek(self, key: str, window_seconds: Optional[int] = None, now: Optional[float] = None) -> int:
        ...

    def window_state(
        self, key: str, window_seconds: Optional[int] = None, now: Optional[float] = None
    ) -> Tuple[int, int, float]:
        ...

    def reset(self, key: str) -> None:
        ...

    def purge_expired(self, now: Optional[float] = None) -> int:
        ...


class MemoryCounterStore:
    """Process-local counter store guarded by a single lock."""

    def __init__(self) -> None:
        self._lock = Lock()
        self._counters: Dict[str, Counter] = {}

    def increment(self, key: str, window_seconds: int, now: Optional[float] = None) -> Tuple[int, int]:
        now = time.time() if now is None else now
        window_seconds = int(window_seconds)
        with self._lock:
            counter = self._roll(key, window_seconds, now)
            counter.count += 1
            counter.expires_at = counter.window_start + 2 * window_seconds
            count = sliding_count(counter.count, counter.previous_count, now - counter.window_start, window_seconds)
        return count, window_remaining(now, window_seconds)

    def peek(self, key: str, window_seconds: Optional[int] = None, now: Optional[float] = None) -> int:
        now = time.time() if now is None else now
        with self._lock:
            counter = self._counters.get(key)
            window = int(window_seconds or (counter.window_seconds if counter else 1))
        current, previous, elapsed = self.window_state(key, window, now)
        return sliding_count(current, previous, elapsed, window)

    def window_state(
        self, key: str, window_seconds: Optional[int] = None, now: Optional[float] = None
    ) -> Tuple[int, int, float]:
        """Raw (current, previous, elapsed) counts as they stand at ``now``."""
        now = time.time() if now is None else now
        with self._lock:
            counter = self._counters.get(key)
            if counter is None:
                window = int(window_seconds or 1)
                return 0, 0, now - math.floor(now / window) * window
            window = int(window_seconds or counter.window_seconds)
            current, previous, start = counter.count, counter.previous_count, counter.window_start
        window_start = math.floor(now / window) * window
        if start == window_start - window:
            current, previous = 0, current
        elif start != window_start:
            current, previous = 0, 0
        return current, previous, now - window_start

    def reset(self, key: str) -> None:
        with self._lock:
            self._counters.pop(key, None)

    def purge_expired(self, now: Optional[float] = None) -> int:
        now = time.time() if now is None else now
        with self._lock:
            candidates: List[str] = [key for key, counter in self._counters.items() if counter.expires_at <= now]
        removed = 0
        for key in candidates:
            with self._lock:
                counter = self._counters.get(key)
                if counter is not None and counter.expires_at <= now:
                    del self._counters[key]
                    removed += 1
        return removed

    def _roll(self, key: str, window_seconds: int, now: float) -> Counter:
        window_start = math.floor(now / window_seconds) * window_seconds
        counter = self._counters.get(key)
        if counter is None or counter.window_seconds != window_seconds:
            counter = Counter(
                key=key,
                window_start=window_start,
                count=0,
                expires_at=window_start + 2 * window_seconds,
                window_seconds=window_seconds,
            )
            self._counters[key] = counter
        elif counter.window_start < window_start:
            adjacent = counter.window_start == window_start - window_seconds
            counter.previous_count = counter.count if adjacent else 0
            counter.count = 0
            counter.window_start = window_start
        return counter


class RedisCounterStore:
    """Redis-backed counters; the roll and increment run inside one Lua script."""

    LUA_INCREMENT = """
    -- KEYS[1]=counter hash; ARGV[1]=window seconds, ARGV[2]=now
    local window = tonumber(ARGV[1])
    local now = tonumber(ARGV[2])
    local idx = math.floor(now / window)
    local data = redis.call('HMGET', KEYS[1], 'idx', 'cur', 'prev', 'window')
    local stored = tonumber(data[1])
    local cur = tonumber(data[2]) or 0
    local prev = tonumber(data[3]) or 0
    if stored == nil or tonumber(data[4]) ~= window then
        cur = 0
        prev = 0
        stored = idx
    elseif stored == idx - 1 then
        prev = cur
        cur = 0
        stored = idx
    elseif stored < idx - 1 then
        prev = 0
        cur = 0
        stored = idx
    end
    cur = cur + 1
    redis.call('HSET', KEYS[1], 'idx', stored, 'cur', cur, 'prev', prev, 'window', window)
    redis.call('EXPIRE', KEYS[1], window * 2)
    return {cur, prev, tostring(now - stored * window)}
    """

    def __init__(self, client: "redis.Redis", prefix: str = "regdef:ctr") -> None:
        self.client = client
        self.prefix = prefix
        self._increment = client.register_script(self.LUA_INCREMENT)

    @classmethod
    def from_url(cls, url: str, timeout_seconds: float = 0.25) -> "RedisCounterStore":
        client = redis.Redis.from_url(url, socket_timeout=timeout_seconds, socket_connect_timeout=timeout_seconds)
        return cls(client)

    def _key(self, key: str) -> str:
        return f"{self.prefix}:{key}"

    def increment(self, key: str, window_seconds: int, now: Optional[float] = None) -> Tuple[int, int]:
        now = time.time() if now is None else now
        window_seconds = int(window_seconds)
        try:
            current, previous, elapsed = self._increment(keys=[self._key(key)], args=[window_seconds, now])
        except redis.RedisError as exc:
            logger.warning("Counter store increment failed for %s: %s", key, exc)
            raise DependencyUnavailable("counter_store", str(exc)) from exc
        count = sliding_count(int(current), int(previous), float(elapsed), window_seconds)
        return count, window_remaining(now, window_seconds)

    def peek(self, key: str, window_seconds: Optional[int] = None, now: Optional[float] = None) -> int:
        now = time.time() if now is None else now
        stored, current, previous, window = self._read(key, window_seconds, now)
        if stored is None:
            return 0
        return sliding_count(current, previous, now - math.floor(now / window) * window, window)

    def window_state(
        self, key: str, window_seconds: Optional[int] = None, now: Optional[float] = None
    ) -> Tuple[int, int, float]:
        now = time.time() if now is None else now
        _, current, previous, window = self._read(key, window_seconds, now)
        return current, previous, now - math.floor(now / window) * window

    def _read(self, key: str, window_seconds: Optional[int], now: float) -> Tuple[Optional[int], int, int, int]:
        try:
            stored, current, previous, window = self.client.hmget(self._key(key), "idx", "cur", "prev", "window")
        except redis.RedisError as exc:
            raise DependencyUnavailable("counter_store", str(exc)) from exc
        window = int(window_seconds or int(window or 1))
        if stored is None:
            return None, 0, 0, window
        index = math.floor(now / window)
        stored, current, previous = int(stored), int(current or 0), int(previous or 0)
        if stored == index - 1:
            current, previous = 0, current
        elif stored < index - 1:
            current, previous = 0, 0
        return stored, current, previous, window

    def reset(self, key: str) -> None:
        try:
            self.client.delete(self._key(key))
        except redis.RedisError as exc:
            raise DependencyUnavailable("counter_store", str(exc)) from exc

    def purge_expired(self, now: Optional[float] = None) -> int:
        # keys carry a TTL, Redis evicts them itself
        return 0
