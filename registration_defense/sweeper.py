from __future__ import annotations

import logging
from datetime import datetime, timezone
from typing import Callable, Optional

from .errors import DependencyUnavailable
from .models import SweepReport
from .orchestrator import RegistrationOrchestrator

logger = logging.getLogger(__name__)


class Sweeper:
    """Periodic cleanup, independent of the request path.

    Each step is isolated: a failing backend is logged and the remaining steps
    still run. Request-path locks are only taken for the short per-structure
    purges, never across the whole sweep.
    """

    def __init__(self, orchestrator: RegistrationOrchestrator):
        self.orchestrator = orchestrator

    def run_once(self, now: Optional[datetime] = None) -> SweepReport:
        now = now or datetime.now(timezone.utc)
        orchestrator = self.orchestrator
        retention = orchestrator.config.retention
        report = SweepReport()

        report.counters = self._step("counters", lambda: orchestrator.counter_store.purge_expired(now.timestamp()))
        report.blocks = self._step("blocks", lambda: orchestrator.blocklist.purge(now))
        orchestrator.history.purge(now)
        report.attempts = self._step(
            "attempts", lambda: orchestrator.repository.purge_attempts(now - retention.stored_attempts)
        )
        report.patterns = self._step(
            "patterns", lambda: orchestrator.repository.purge_patterns(now - retention.attack_patterns)
        )
        report.reputation_entries = orchestrator.reputation.cache.purge(now)

        orchestrator.fingerprints.purge(now)
        orchestrator.detector.forget(now)
        orchestrator.forget_signatures(now)

        # lets the posture cool down even when no attempts arrive
        try:
            orchestrator.escalation.evaluate((), now=now)
        except DependencyUnavailable as exc:
            logger.warning("Sweep step escalation skipped: %s", exc.message)

        logger.info(
            "Sweep removed counters=%d blocks=%d attempts=%d patterns=%d reputation=%d",
            report.counters,
            report.blocks,
            report.attempts,
            report.patterns,
            report.reputation_entries,
        )
        return report

    def _step(self, name: str, action: Callable[[], int]) -> int:
        try:
            return int(action())
        except DependencyUnavailable as exc:
            logger.warning("Sweep step %s skipped: %s", name, exc.message)
            return 0
