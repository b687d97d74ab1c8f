from __future__ import annotations

import logging
import time
from typing import Optional

from .counter_store import CounterStore, retry_delay
from .models import RateLimitResult

logger = logging.getLogger(__name__)

SCOPE_IP = "ip"
SCOPE_EMAIL = "email"
SCOPE_GLOBAL = "global"
SCOPE_RAPID = "rapid"


class RateLimiter:
    """Sliding-window throttling on top of a shared counter store.

    ``check_and_consume`` is a single atomic increment followed by a comparison
    against the limit, so concurrent callers can never both observe the last
    free slot. Rejected attempts still count, which keeps a flooding client
    locked out until its rate drops.
    """

    def __init__(self, store: CounterStore, prefix: str = "rl"):
        self.store = store
        self.prefix = prefix

    def _key(self, scope: str, key: str) -> str:
        return f"{self.prefix}:{scope}:{key}"

    def check_and_consume(
        self,
        scope: str,
        key: str,
        limit: int,
        window_seconds: int,
        now: Optional[float] = None,
    ) -> RateLimitResult:
        now = time.time() if now is None else now
        count, _ = self.store.increment(self._key(scope, key), int(window_seconds), now=now)
        allowed = count <= limit
        retry_after = 0
        if not allowed:
            logger.debug("Rate limit exceeded for scope=%s count=%s limit=%s", scope, count, limit)
            retry_after = self.retry_after(scope, key, limit, window_seconds, now)
        return RateLimitResult(
            allowed=allowed,
            remaining=max(0, limit - count),
            retry_after_seconds=retry_after,
            scope=scope,
            count=count,
        )

    def retry_after(self, scope: str, key: str, limit: int, window_seconds: int, now: float) -> int:
        current, previous, elapsed = self.store.window_state(self._key(scope, key), int(window_seconds), now=now)
        return max(1, retry_delay(current, previous, elapsed, int(window_seconds), limit))

    def peek(
        self,
        scope: str,
        key: str,
        limit: int,
        window_seconds: int,
        now: Optional[float] = None,
    ) -> RateLimitResult:
        """Report the state of a scope without consuming from it."""
        now = time.time() if now is None else now
        count = self.store.peek(self._key(scope, key), int(window_seconds), now=now)
        allowed = count < limit
        retry_after = 0
        if not allowed:
            retry_after = self.retry_after(scope, key, limit, window_seconds, now)
        return RateLimitResult(
            allowed=allowed,
            remaining=max(0, limit - count),
            retry_after_seconds=retry_after,
            scope=scope,
            count=count,
        )

    def reset(self, scope: str, key: str) -> None:
        self.store.reset(self._key(scope, key))
