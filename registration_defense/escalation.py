"""Platform-wide defense posture.

The policy lives in a single versioned record. Every change is a
compare-and-set against the version that was read; a lost race is retried
against the fresh record a bounded number of times. Escalation moves one level
per write so the transition log never skips a mode, even when an extreme spike
drives the posture straight to EmergencyDisabled within one cycle.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, replace
from datetime import datetime, timezone
from typing import Callable, Iterable, List, Mapping, Optional, Sequence, Tuple

from .config import DefenseConfig, validate_rollout, validate_thresholds
from .errors import ConcurrencyConflict, DependencyUnavailable, ValidationError
from .models import Alert, AttackPattern, DefenseMode, PatternType, PolicyState, PolicyTransition
from .persistence import DefenseRepository
from .webhook import AlertSink

logger = logging.getLogger(__name__)


@dataclass(slots=True)
class TrafficMetrics:
    """Aggregate counters sampled by the orchestrator for the current attempt."""

    rapid_count: int = 0
    rapid_limit: int = 0
    global_count: int = 0
    global_limit: int = 0

    @property
    def rapid_exceeded(self) -> bool:
        return self.rapid_limit > 0 and self.rapid_count > self.rapid_limit

    @property
    def global_exceeded(self) -> bool:
        return self.global_limit > 0 and self.global_count > self.global_limit


def distributed_unique_ips(patterns: Iterable[AttackPattern]) -> int:
    return max(
        (int(p.details.get("unique_ips", 0)) for p in patterns if p.type is PatternType.DISTRIBUTED),
        default=0,
    )


Mutation = Callable[[PolicyState], Optional[PolicyState]]


class EscalationController:
    def __init__(
        self,
        config: DefenseConfig,
        repository: DefenseRepository,
        alerts: Optional[AlertSink] = None,
        purge_pending: Optional[Callable[[], int]] = None,
    ):
        self.config = config
        self.repository = repository
        self.alerts = alerts
        self.purge_pending = purge_pending

    def initial_state(self, now: datetime) -> PolicyState:
        return PolicyState(
            mode=DefenseMode.NORMAL,
            entered_at=now,
            rollout_percentage=self.config.rollout_percentage,
            thresholds=self.config.initial_thresholds(),
        )

    def current(self, now: Optional[datetime] = None) -> PolicyState:
        now = now or datetime.now(timezone.utc)
        state = self.repository.load_policy()
        if state is None:
            state = self.repository.create_policy(self.initial_state(now))
        return state

    def transitions(self, limit: int = 50) -> List[PolicyTransition]:
        return self.repository.transitions(limit)

    def target_mode(
        self,
        state: PolicyState,
        patterns: Sequence[AttackPattern],
        metrics: TrafficMetrics,
        now: datetime,
    ) -> DefenseMode:
        settings = self.config.escalation
        unique_ips = distributed_unique_ips(patterns)
        if unique_ips >= settings.emergency_unique_ips:
            return DefenseMode.EMERGENCY_DISABLED
        if unique_ips >= settings.strict_unique_ips:
            return DefenseMode.STRICT

        qualifying = any(p.confidence >= settings.elevate_confidence for p in patterns)
        if (
            qualifying
            and state.mode is DefenseMode.ELEVATED
            and now - state.entered_at >= settings.elevated_stall
        ):
            return DefenseMode.STRICT
        if qualifying or metrics.rapid_exceeded or metrics.global_exceeded:
            return DefenseMode.ELEVATED
        return DefenseMode.NORMAL

    def cooled_down(self, state: PolicyState, now: datetime) -> bool:
        cooldown = self.config.escalation.cooldown
        quiet_since = state.last_pattern_at or state.entered_at
        return now - quiet_since >= cooldown and now - state.entered_at >= cooldown

    def evaluate(
        self,
        patterns: Iterable[AttackPattern],
        metrics: Optional[TrafficMetrics] = None,
        now: Optional[datetime] = None,
    ) -> PolicyState:
        now = now or datetime.now(timezone.utc)
        patterns = list(patterns)
        metrics = metrics or TrafficMetrics()
        hold = self.config.escalation.hold_confidence

        state = self.current(now)
        if any(p.confidence >= hold for p in patterns):
            state, _ = self._transact(
                lambda s: None
                if s.last_pattern_at is not None and s.last_pattern_at >= now
                else replace(s, last_pattern_at=now),
                now,
            )

        for _ in DefenseMode:
            previous, saved = self._transact(lambda s: self._step(s, patterns, metrics, now), now)
            if saved is None:
                return previous
            transition = PolicyTransition(
                from_mode=previous.mode,
                to_mode=saved.mode,
                at=now,
                version=saved.version,
                reason=saved.reason or "",
            )
            self._record(transition, saved, patterns)
            state = saved
            if saved.mode < previous.mode:
                break
        return state

    def _step(
        self,
        state: PolicyState,
        patterns: Sequence[AttackPattern],
        metrics: TrafficMetrics,
        now: datetime,
    ) -> Optional[PolicyState]:
        target = self.target_mode(state, patterns, metrics, now)
        if target > state.mode:
            return replace(
                state,
                mode=state.mode.step_up(),
                entered_at=now,
                manual=False,
                operator=None,
                reason=self._escalation_reason(patterns, metrics),
            )
        if state.manual or state.mode is DefenseMode.NORMAL or target >= state.mode:
            return None
        if not self.cooled_down(state, now):
            return None
        return replace(
            state,
            mode=state.mode.step_down(),
            entered_at=now,
            reason="cooldown elapsed without qualifying patterns",
        )

    def _escalation_reason(self, patterns: Sequence[AttackPattern], metrics: TrafficMetrics) -> str:
        if patterns:
            strongest = max(patterns, key=lambda p: p.confidence)
            return f"{strongest.type.value} pattern (confidence {strongest.confidence:.2f})"
        if metrics.rapid_exceeded:
            return f"rapid attempt rate {metrics.rapid_count}/{metrics.rapid_limit}"
        return f"global attempt rate {metrics.global_count}/{metrics.global_limit}"

    def force_mode(
        self,
        mode: DefenseMode,
        operator: str,
        reason: str,
        now: Optional[datetime] = None,
    ) -> PolicyState:
        if not operator:
            raise ValidationError("operator is required for manual transitions", "operator")
        now = now or datetime.now(timezone.utc)
        previous, saved = self._write(
            lambda s: replace(
                s,
                mode=mode,
                entered_at=now,
                manual=True,
                operator=operator,
                reason=reason,
                last_pattern_at=None if mode is DefenseMode.NORMAL else s.last_pattern_at,
            ),
            now,
        )
        transition = PolicyTransition(
            from_mode=previous.mode,
            to_mode=saved.mode,
            at=now,
            version=saved.version,
            reason=reason,
            manual=True,
            operator=operator,
        )
        logger.info("Operator %s forced defense mode %s: %s", operator, mode.label, reason)
        self._record(transition, saved, ())
        return saved

    def update_thresholds(
        self,
        thresholds: Optional[Mapping[str, float]] = None,
        rollout_percentage: Optional[float] = None,
        operator: Optional[str] = None,
        now: Optional[datetime] = None,
    ) -> PolicyState:
        now = now or datetime.now(timezone.utc)
        changes = validate_thresholds(thresholds or {})
        if rollout_percentage is not None:
            rollout_percentage = validate_rollout(rollout_percentage)

        def apply(state: PolicyState) -> PolicyState:
            merged = {**state.thresholds, **changes}
            validate_thresholds(merged)
            return replace(
                state,
                thresholds=merged,
                rollout_percentage=state.rollout_percentage if rollout_percentage is None else rollout_percentage,
            )

        _, saved = self._write(apply, now)
        logger.info(
            "Policy thresholds updated by %s: %s rollout=%s",
            operator or "unknown",
            sorted(changes),
            saved.rollout_percentage,
        )
        return saved

    def _transact(self, mutate: Mutation, now: datetime) -> Tuple[PolicyState, Optional[PolicyState]]:
        """Apply ``mutate`` to the freshest policy with a version check.

        Returns the state that was read and the stored result, or ``None`` as
        the result when the mutation declined to change anything.
        """
        retries = self.config.escalation.max_retries
        for attempt in range(retries + 1):
            state = self.current(now)
            proposal = mutate(state)
            if proposal is None:
                return state, None
            try:
                return state, self.repository.compare_and_set_policy(proposal, state.version)
            except ConcurrencyConflict as exc:
                logger.warning(
                    "Policy write rejected (attempt %d/%d): %s", attempt + 1, retries + 1, exc.message
                )
        raise DependencyUnavailable("policy_store", f"gave up after {retries} retries on version conflicts")

    def _write(self, mutate: Callable[[PolicyState], PolicyState], now: datetime) -> Tuple[PolicyState, PolicyState]:
        previous, saved = self._transact(mutate, now)
        return previous, previous if saved is None else saved

    def _record(self, transition: PolicyTransition, state: PolicyState, patterns: Sequence[AttackPattern]) -> None:
        self.repository.record_transition(transition)
        if transition.to_mode > transition.from_mode:
            logger.warning(
                "Defense mode escalated %s -> %s (v%d): %s",
                transition.from_mode.label,
                transition.to_mode.label,
                transition.version,
                transition.reason,
            )
        else:
            logger.info(
                "Defense mode %s -> %s (v%d): %s",
                transition.from_mode.label,
                transition.to_mode.label,
                transition.version,
                transition.reason,
            )

        if transition.to_mode is DefenseMode.EMERGENCY_DISABLED and transition.from_mode is not transition.to_mode:
            logger.error("Registration disabled: %s", transition.reason)
            self._purge_pending()
            self._alert("critical", transition, state, patterns)
        elif transition.to_mode is DefenseMode.STRICT and transition.from_mode < transition.to_mode:
            self._alert("high", transition, state, patterns)

    def _purge_pending(self) -> None:
        if self.purge_pending is None:
            return
        try:
            purged = self.purge_pending()
        except Exception as exc:
            logger.warning("Failed to purge pending registrations: %s", exc)
            return
        logger.info("Purged %s pending registrations", purged)

    def _alert(
        self,
        severity: str,
        transition: PolicyTransition,
        state: PolicyState,
        patterns: Sequence[AttackPattern],
    ) -> None:
        if self.alerts is None:
            return
        self.alerts.send(
            Alert(
                severity=severity,
                kind="defense_mode",
                title=f"Registration defense entered {transition.to_mode.label}",
                message=transition.reason,
                created_at=transition.at,
                details={
                    "from_mode": transition.from_mode.label,
                    "to_mode": transition.to_mode.label,
                    "version": transition.version,
                    "manual": transition.manual,
                    "operator": transition.operator,
                    "patterns": [
                        {"type": p.type.value, "confidence": p.confidence, "subject": p.subject}
                        for p in patterns
                    ],
                },
            )
        )
