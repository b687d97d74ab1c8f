import threading
from dataclasses import replace
from datetime import datetime, timedelta, timezone

import pytest

from registration_defense.config import DefenseConfig
from registration_defense.errors import DependencyUnavailable, ValidationError
from registration_defense.escalation import EscalationController, TrafficMetrics, distributed_unique_ips
from registration_defense.models import AttackPattern, DefenseMode, PatternType
from registration_defense.persistence import MemoryDefenseRepository
from registration_defense.webhook import LoggingAlertSink

T0 = datetime(2025, 1, 1, 12, 0, tzinfo=timezone.utc)


def make_pattern(confidence: float, pattern_type: PatternType = PatternType.CREDENTIAL_STUFFING, **details):
    return AttackPattern(
        pattern_id=f"p-{pattern_type.value}-{confidence}",
        type=pattern_type,
        confidence=confidence,
        window_start=T0 - timedelta(minutes=1),
        window_end=T0,
        contributing_attempt_ids=("a-1",),
        subject="203.0.113.5",
        details=details,
    )


def distributed(unique_ips: int) -> AttackPattern:
    return make_pattern(0.75, PatternType.DISTRIBUTED, unique_ips=unique_ips)


def build_controller(repository=None, purge_pending=None):
    alerts = LoggingAlertSink()
    controller = EscalationController(
        DefenseConfig(),
        repository or MemoryDefenseRepository(),
        alerts=alerts,
        purge_pending=purge_pending,
    )
    return controller, alerts


def modes(transitions):
    return [(t.from_mode, t.to_mode) for t in reversed(transitions)]


def test_initial_policy_is_normal():
    controller, _ = build_controller()
    state = controller.current(T0)

    assert state.mode is DefenseMode.NORMAL
    assert state.version == 0
    assert state.thresholds["ip_limit"] == 5.0
    assert state.rollout_percentage == 100.0


def test_qualifying_pattern_elevates():
    controller, alerts = build_controller()
    state = controller.evaluate([make_pattern(0.6)], now=T0)

    assert state.mode is DefenseMode.ELEVATED
    assert not state.manual
    assert state.last_pattern_at == T0
    assert modes(controller.transitions()) == [(DefenseMode.NORMAL, DefenseMode.ELEVATED)]
    assert alerts.sent == []


def test_weak_pattern_does_not_elevate():
    controller, _ = build_controller()
    assert controller.evaluate([make_pattern(0.4)], now=T0).mode is DefenseMode.NORMAL
    assert controller.transitions() == []


def test_rapid_rate_elevates():
    controller, _ = build_controller()
    metrics = TrafficMetrics(rapid_count=11, rapid_limit=10)

    assert metrics.rapid_exceeded
    assert not TrafficMetrics(rapid_count=10, rapid_limit=10).rapid_exceeded
    assert controller.evaluate([], metrics, now=T0).mode is DefenseMode.ELEVATED
    assert "rapid attempt rate" in controller.transitions()[0].reason


def test_distributed_attack_escalates_to_strict_through_elevated():
    controller, alerts = build_controller()
    state = controller.evaluate([distributed(150)], now=T0)

    assert state.mode is DefenseMode.STRICT
    assert modes(controller.transitions()) == [
        (DefenseMode.NORMAL, DefenseMode.ELEVATED),
        (DefenseMode.ELEVATED, DefenseMode.STRICT),
    ]
    assert [alert.severity for alert in alerts.sent] == ["high"]
    assert alerts.sent[0].details["to_mode"] == "Strict"


def test_extreme_spike_walks_every_level_to_emergency():
    purged = []

    def purge_pending():
        purged.append(T0)
        return 7

    controller, alerts = build_controller(purge_pending=purge_pending)
    state = controller.evaluate([distributed(600)], now=T0)

    assert state.mode is DefenseMode.EMERGENCY_DISABLED
    assert modes(controller.transitions()) == [
        (DefenseMode.NORMAL, DefenseMode.ELEVATED),
        (DefenseMode.ELEVATED, DefenseMode.STRICT),
        (DefenseMode.STRICT, DefenseMode.EMERGENCY_DISABLED),
    ]
    assert [t.version for t in reversed(controller.transitions())] == [2, 3, 4]
    assert len(purged) == 1
    assert [alert.severity for alert in alerts.sent] == ["high", "critical"]


def test_failing_purge_does_not_block_escalation():
    def purge_pending():
        raise RuntimeError("queue offline")

    controller, _ = build_controller(purge_pending=purge_pending)
    assert controller.evaluate([distributed(600)], now=T0).mode is DefenseMode.EMERGENCY_DISABLED


def test_deescalation_waits_for_cooldown():
    controller, _ = build_controller()
    controller.evaluate([make_pattern(0.6)], now=T0)

    assert controller.evaluate([], now=T0 + timedelta(minutes=29)).mode is DefenseMode.ELEVATED
    assert controller.evaluate([], now=T0 + timedelta(minutes=30)).mode is DefenseMode.NORMAL


def test_deescalation_steps_one_level_per_cooldown():
    controller, _ = build_controller()
    controller.evaluate([distributed(150)], now=T0)

    assert controller.evaluate([], now=T0 + timedelta(minutes=30)).mode is DefenseMode.ELEVATED
    assert controller.evaluate([], now=T0 + timedelta(minutes=31)).mode is DefenseMode.ELEVATED
    assert controller.evaluate([], now=T0 + timedelta(minutes=60)).mode is DefenseMode.NORMAL


def test_weak_patterns_hold_current_level():
    controller, _ = build_controller()
    controller.evaluate([make_pattern(0.6)], now=T0)
    controller.evaluate([make_pattern(0.35)], now=T0 + timedelta(minutes=20))

    assert controller.evaluate([], now=T0 + timedelta(minutes=31)).mode is DefenseMode.ELEVATED
    assert controller.evaluate([], now=T0 + timedelta(minutes=50)).mode is DefenseMode.NORMAL


def test_persistent_elevated_attack_moves_to_strict():
    controller, _ = build_controller()
    controller.evaluate([make_pattern(0.6)], now=T0)

    assert controller.evaluate([make_pattern(0.6)], now=T0 + timedelta(minutes=10)).mode is DefenseMode.ELEVATED
    assert controller.evaluate([make_pattern(0.6)], now=T0 + timedelta(minutes=16)).mode is DefenseMode.STRICT


def test_manual_emergency_is_never_reverted_automatically():
    purged = []
    controller, alerts = build_controller(purge_pending=lambda: purged.append(1) or 0)
    state = controller.force_mode(DefenseMode.EMERGENCY_DISABLED, "oncall", "attack drill", now=T0)

    assert state.manual
    assert state.operator == "oncall"
    assert controller.evaluate([], now=T0 + timedelta(hours=6)).mode is DefenseMode.EMERGENCY_DISABLED

    transition = controller.transitions()[0]
    assert transition.manual
    assert transition.operator == "oncall"
    assert transition.reason == "attack drill"
    assert purged == [1]
    assert alerts.sent[0].severity == "critical"


def test_manual_elevated_is_held():
    controller, _ = build_controller()
    controller.force_mode(DefenseMode.ELEVATED, "oncall", "precaution", now=T0)
    assert controller.evaluate([], now=T0 + timedelta(hours=2)).mode is DefenseMode.ELEVATED


def test_manual_normal_still_escalates_automatically():
    controller, _ = build_controller()
    controller.evaluate([make_pattern(0.6)], now=T0)
    restored = controller.force_mode(DefenseMode.NORMAL, "oncall", "false positive", now=T0 + timedelta(minutes=1))
    assert restored.last_pattern_at is None

    state = controller.evaluate([make_pattern(0.6)], now=T0 + timedelta(minutes=2))
    assert state.mode is DefenseMode.ELEVATED
    assert not state.manual


def test_force_mode_requires_operator():
    controller, _ = build_controller()
    with pytest.raises(ValidationError):
        controller.force_mode(DefenseMode.STRICT, "", "no operator", now=T0)


class RacingRepository(MemoryDefenseRepository):
    """Lets another writer win the race before each of the next ``races`` writes."""

    def __init__(self, races: int):
        super().__init__()
        self.races = races
        self.cas_calls = 0

    def compare_and_set_policy(self, state, expected_version):
        self.cas_calls += 1
        if self.races > 0:
            self.races -= 1
            current = self.load_policy()
            super().compare_and_set_policy(replace(current, rollout_percentage=50.0), current.version)
        return super().compare_and_set_policy(state, expected_version)


def test_lost_race_is_retried_against_fresh_state():
    repository = RacingRepository(races=1)
    controller, _ = build_controller(repository=repository)

    state = controller.force_mode(DefenseMode.ELEVATED, "oncall", "precaution", now=T0)

    assert repository.cas_calls == 2
    assert state.version == 2
    assert state.mode is DefenseMode.ELEVATED
    assert state.rollout_percentage == 50.0


def test_persistent_conflicts_surface_as_unavailable():
    repository = RacingRepository(races=10)
    controller, _ = build_controller(repository=repository)

    with pytest.raises(DependencyUnavailable) as excinfo:
        controller.force_mode(DefenseMode.ELEVATED, "oncall", "precaution", now=T0)

    assert excinfo.value.dependency == "policy_store"
    assert repository.cas_calls == 4


def test_concurrent_evaluations_never_skip_or_duplicate_transitions():
    controller, _ = build_controller()
    errors = []

    def worker():
        try:
            controller.evaluate([distributed(150)], now=T0)
        except Exception as exc:  # pragma: no cover - surfaced by the assertion below
            errors.append(exc)

    threads = [threading.Thread(target=worker) for _ in range(8)]
    for thread in threads:
        thread.start()
    for thread in threads:
        thread.join()

    assert errors == []
    assert controller.current(T0).mode is DefenseMode.STRICT
    assert modes(controller.transitions()) == [
        (DefenseMode.NORMAL, DefenseMode.ELEVATED),
        (DefenseMode.ELEVATED, DefenseMode.STRICT),
    ]


def test_update_thresholds_merges_and_validates():
    controller, _ = build_controller()
    state = controller.update_thresholds({"ip_limit": 10}, rollout_percentage=25, operator="oncall", now=T0)

    assert state.thresholds["ip_limit"] == 10.0
    assert state.thresholds["email_limit"] == 3.0
    assert state.rollout_percentage == 25.0
    assert state.mode is DefenseMode.NORMAL

    with pytest.raises(ValidationError):
        controller.update_thresholds({"challenge_threshold": 0.95}, now=T0)
    with pytest.raises(ValidationError):
        controller.update_thresholds({"unknown": 1}, now=T0)
    with pytest.raises(ValidationError):
        controller.update_thresholds(rollout_percentage=150, now=T0)
    assert controller.current(T0).version == state.version


def test_distributed_unique_ips_takes_largest_report():
    assert distributed_unique_ips([distributed(120), distributed(180), make_pattern(0.9)]) == 180
    assert distributed_unique_ips([]) == 0


def test_threshold_update_retries_and_keeps_concurrent_change():
    repository = RacingRepository(races=1)
    controller, _ = build_controller(repository=repository)

    state = controller.update_thresholds({"email_limit": 6}, operator="oncall", now=T0)

    assert repository.cas_calls == 2
    assert state.version == 2
    assert state.thresholds["email_limit"] == 6.0
    assert state.rollout_percentage == 50.0
    assert controller.current(T0) == state
