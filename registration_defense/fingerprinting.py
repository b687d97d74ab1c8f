from __future__ import annotations

import hashlib
from collections import defaultdict, deque
from datetime import datetime, timedelta
from threading import Lock
from typing import Deque, Dict, Optional, Set


def derive_fingerprint(user_agent: Optional[str], ip: str, accept_language: Optional[str] = None) -> str:
    """Fallback device fingerprint when the client did not supply one."""
    payload = "|".join([user_agent or "", ip, accept_language or ""])
    return hashlib.sha256(payload.encode()).hexdigest()


class FingerprintTracker:
    """Tracks how often a device fingerprint attempts registration."""

    def __init__(self, window: timedelta, max_attempts: int):
        self.window = window
        self.max_attempts = max_attempts
        self._lock = Lock()
        self._seen: Dict[str, Deque[datetime]] = defaultdict(deque)
        self._flagged: Set[str] = set()

    def observe(self, fingerprint: str, now: datetime) -> int:
        with self._lock:
            seen = self._seen[fingerprint]
            seen.append(now)
            self._trim(seen, now)
            return len(seen)

    def attempts(self, fingerprint: str, now: datetime) -> int:
        with self._lock:
            seen = self._seen.get(fingerprint)
            if not seen:
                return 0
            self._trim(seen, now)
            return len(seen)

    def is_suspicious(self, fingerprint: Optional[str], now: datetime) -> bool:
        if not fingerprint:
            return False
        if fingerprint in self._flagged:
            return True
        return self.attempts(fingerprint, now) > self.max_attempts

    def flag(self, fingerprint: str) -> bool:
        """Mark a fingerprint suspicious until its sightings age out. Returns True if newly flagged."""
        with self._lock:
            if fingerprint in self._flagged:
                return False
            self._flagged.add(fingerprint)
            return True

    def purge(self, now: datetime) -> int:
        removed = 0
        with self._lock:
            for fingerprint in list(self._seen):
                seen = self._seen[fingerprint]
                self._trim(seen, now)
                if not seen:
                    del self._seen[fingerprint]
                    self._flagged.discard(fingerprint)
                    removed += 1
        return removed

    def _trim(self, seen: Deque[datetime], now: datetime) -> None:
        while seen and now - seen[0] > self.window:
            seen.popleft()
