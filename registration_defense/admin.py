from __future__ import annotations

import logging
from collections import Counter
from datetime import datetime, timedelta
from typing import Any, Dict, List, Mapping, Optional

from .blocklist import normalize_subject
from .errors import ValidationError
from .models import AttackPattern, BlockEntry, DefenseMode, PolicyState, PolicyTransition, SubjectKind
from .orchestrator import RegistrationOrchestrator

logger = logging.getLogger(__name__)


def _check_range(start: datetime, end: datetime) -> None:
    if start > end:
        raise ValidationError("start must not be after end", "start")


class AdminControls:
    """Operator overrides on top of a running orchestrator."""

    def __init__(self, orchestrator: RegistrationOrchestrator):
        self.orchestrator = orchestrator
        self.escalation = orchestrator.escalation
        self.blocklist = orchestrator.blocklist
        self.repository = orchestrator.repository

    def emergency_disable(self, reason: str, operator: str, now: Optional[datetime] = None) -> PolicyState:
        logger.error("Emergency disable requested by %s: %s", operator, reason)
        return self.escalation.force_mode(DefenseMode.EMERGENCY_DISABLED, operator, reason, now=now)

    def restore_normal(self, reason: str, operator: str, now: Optional[datetime] = None) -> PolicyState:
        return self.escalation.force_mode(DefenseMode.NORMAL, operator, reason, now=now)

    def block_subject(
        self,
        subject: str,
        duration_minutes: Optional[int] = None,
        reason: str = "manual block",
        permanent: bool = False,
        operator: str = "admin",
        now: Optional[datetime] = None,
    ) -> BlockEntry:
        if permanent and duration_minutes is not None:
            raise ValidationError("a block is either permanent or has a duration", "duration_minutes")
        if not permanent:
            if duration_minutes is None:
                raise ValidationError("duration_minutes is required for temporary blocks", "duration_minutes")
            if duration_minutes <= 0:
                raise ValidationError("duration_minutes must be positive", "duration_minutes")
        duration = None if permanent else timedelta(minutes=duration_minutes)
        entry = self.blocklist.block(subject, reason=reason, duration=duration, created_by=operator, now=now)
        self.orchestrator.reputation.invalidate(entry.subject)
        logger.info("Operator %s blocked %s (%s)", operator, entry.subject, reason)
        return entry

    def unblock_subject(self, subject: str, operator: str = "admin", now: Optional[datetime] = None) -> bool:
        normalized, _ = normalize_subject(subject)
        removed = self.blocklist.unblock(normalized, now=now)
        self.orchestrator.reputation.invalidate(normalized)
        logger.info("Operator %s unblocked %s (found=%s)", operator, normalized, removed)
        return removed

    def blacklist_domain(
        self,
        domain: str,
        reason: str,
        operator: str = "admin",
        now: Optional[datetime] = None,
    ) -> BlockEntry:
        normalized, kind = normalize_subject(domain)
        if kind is not SubjectKind.DOMAIN:
            raise ValidationError(f"not an email domain: {domain}", "domain")
        self.orchestrator.reputation.unexempt_domain(normalized)
        return self.block_subject(normalized, reason=reason, permanent=True, operator=operator, now=now)

    def whitelist_domain(self, domain: str, operator: str = "admin", now: Optional[datetime] = None) -> bool:
        normalized, kind = normalize_subject(domain)
        if kind is not SubjectKind.DOMAIN:
            raise ValidationError(f"not an email domain: {domain}", "domain")
        self.orchestrator.ensure_seeded(now)
        self.orchestrator.reputation.exempt_domain(normalized)
        return self.unblock_subject(normalized, operator=operator, now=now)

    def configure(
        self,
        thresholds: Optional[Mapping[str, float]] = None,
        rollout_percentage: Optional[float] = None,
        operator: str = "admin",
        now: Optional[datetime] = None,
    ) -> PolicyState:
        if not thresholds and rollout_percentage is None:
            raise ValidationError("nothing to configure", "thresholds")
        return self.escalation.update_thresholds(thresholds, rollout_percentage, operator=operator, now=now)

    def get_metrics(self, start: datetime, end: datetime, now: Optional[datetime] = None) -> Dict[str, Any]:
        _check_range(start, end)
        attempts = self.repository.attempts_between(start, end)
        patterns = self.repository.patterns_between(start, end)
        outcomes = Counter(attempt.outcome.value for attempt in attempts)
        reasons = Counter(attempt.reason.value for attempt in attempts if attempt.reason is not None)
        total = len(attempts)
        return {
            "start": start,
            "end": end,
            "total_attempts": total,
            "outcomes": dict(outcomes),
            "reasons": dict(reasons),
            "unique_ips": len({attempt.source_ip for attempt in attempts}),
            "unique_emails": len({attempt.email for attempt in attempts}),
            "challenge_rate": round(outcomes.get("challenged", 0) / total, 4) if total else 0.0,
            "patterns": dict(Counter(pattern.type.value for pattern in patterns)),
            "mode": self.orchestrator.policy(now).mode.label,
        }

    def get_attack_patterns(self, start: datetime, end: datetime) -> List[AttackPattern]:
        _check_range(start, end)
        return self.repository.patterns_between(start, end)

    def list_blocks(self, now: Optional[datetime] = None) -> List[BlockEntry]:
        return self.blocklist.entries(now)

    def policy(self, now: Optional[datetime] = None) -> PolicyState:
        return self.escalation.current(now)

    def transitions(self, limit: int = 50) -> List[PolicyTransition]:
        return self.escalation.transitions(limit)
