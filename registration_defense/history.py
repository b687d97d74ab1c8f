from __future__ import annotations

from bisect import bisect_left
from collections import deque
from datetime import datetime, timedelta
from threading import Lock
from typing import Deque, List

from .models import Attempt


class AttemptHistory:
    """Append-only, time-ordered window of recent attempts.

    Attempts arrive in roughly chronological order; an out-of-order append is
    placed at its sorted position so window queries stay correct.
    """

    def __init__(self, retention: timedelta):
        self.retention = retention
        self._lock = Lock()
        self._attempts: Deque[Attempt] = deque()

    def append(self, attempt: Attempt) -> None:
        with self._lock:
            if self._attempts and attempt.timestamp < self._attempts[-1].timestamp:
                ordered = list(self._attempts)
                index = bisect_left([a.timestamp for a in ordered], attempt.timestamp)
                ordered.insert(index, attempt)
                self._attempts = deque(ordered)
            else:
                self._attempts.append(attempt)
            self._trim(attempt.timestamp)

    def since(self, start: datetime) -> List[Attempt]:
        with self._lock:
            snapshot = list(self._attempts)
        index = bisect_left([a.timestamp for a in snapshot], start)
        return snapshot[index:]

    def window(self, now: datetime, span: timedelta) -> List[Attempt]:
        return [attempt for attempt in self.since(now - span) if attempt.timestamp <= now]

    def purge(self, now: datetime) -> int:
        with self._lock:
            before = len(self._attempts)
            self._trim(now)
            return before - len(self._attempts)

    def _trim(self, now: datetime) -> None:
        while self._attempts and now - self._attempts[0].timestamp > self.retention:
            self._attempts.popleft()

    def __len__(self) -> int:
        return len(self._attempts)
