from dataclasses import replace
from datetime import datetime, timedelta, timezone
from unittest.mock import MagicMock, call

import pytest
from pymongo import ASCENDING, ReturnDocument
from pymongo.errors import DuplicateKeyError, ServerSelectionTimeoutError

from registration_defense.errors import ConcurrencyConflict, DependencyUnavailable
from registration_defense.models import (
    Attempt,
    AttemptOutcome,
    AttackPattern,
    DefenseMode,
    PatternType,
    PolicyState,
    PolicyTransition,
    ReasonCode,
)
from registration_defense.persistence import POLICY_ID, MemoryDefenseRepository, MongoDefenseRepository

NOW = datetime(2025, 1, 1, 12, 0, tzinfo=timezone.utc)


def make_policy(version: int = 0, mode: DefenseMode = DefenseMode.NORMAL) -> PolicyState:
    return PolicyState(
        mode=mode,
        entered_at=NOW,
        rollout_percentage=100.0,
        thresholds={"ip_limit": 5.0},
        version=version,
    )


def make_attempt(
    at: datetime, outcome: AttemptOutcome = AttemptOutcome.BLOCKED, ip: str = "198.51.100.7"
) -> Attempt:
    return Attempt(
        attempt_id=f"a-{ip}-{at.timestamp()}",
        timestamp=at,
        source_ip=ip,
        email="alice@example.com",
        outcome=outcome,
        suspicion_score=0.0,
        reason=ReasonCode.IP_BLOCKED,
    )


def build_mongo_repository():
    repository = MongoDefenseRepository("mongodb://unused", client=MagicMock())
    repository.attempts = MagicMock()
    repository.policy = MagicMock()
    return repository


def test_mongo_compare_and_set_bumps_version():
    repository = build_mongo_repository()
    state = make_policy(version=3, mode=DefenseMode.STRICT)
    repository.policy.find_one_and_update.return_value = repository.serialize_policy(replace(state, version=4))

    saved = repository.compare_and_set_policy(state, 3)

    assert saved.version == 4
    assert saved.mode is DefenseMode.STRICT
    query, update = repository.policy.find_one_and_update.call_args.args
    assert query == {"_id": POLICY_ID, "version": 3}
    assert update["$set"]["version"] == 4
    assert update["$set"]["mode"] == "Strict"
    assert repository.policy.find_one_and_update.call_args.kwargs["return_document"] is ReturnDocument.AFTER


def test_mongo_compare_and_set_reports_conflict():
    repository = build_mongo_repository()
    repository.policy.find_one_and_update.return_value = None
    repository.policy.find_one.return_value = {"_id": POLICY_ID, "version": 5}

    with pytest.raises(ConcurrencyConflict) as excinfo:
        repository.compare_and_set_policy(make_policy(version=3), 3)

    assert excinfo.value.expected_version == 3
    assert excinfo.value.actual_version == 5


def test_mongo_create_policy_returns_existing_record_on_race():
    repository = build_mongo_repository()
    existing = make_policy(version=7, mode=DefenseMode.ELEVATED)
    repository.policy.insert_one.side_effect = DuplicateKeyError("duplicate _id")
    repository.policy.find_one.return_value = repository.serialize_policy(existing)

    assert repository.create_policy(make_policy()) == existing


def test_mongo_errors_become_dependency_unavailable():
    repository = build_mongo_repository()
    repository.attempts.insert_one.side_effect = ServerSelectionTimeoutError("no servers")

    with pytest.raises(DependencyUnavailable) as excinfo:
        repository.record_attempt(make_attempt(NOW))
    assert excinfo.value.dependency == "persistent_store"


def test_mongo_indexes_are_created_on_construction():
    client = MagicMock()
    MongoDefenseRepository("mongodb://unused", client=client)

    # every collection resolves to the same mock
    created = client["registration_defense"]["block_entries"].create_index.call_args_list
    assert call("subject", unique=True) in created
    assert call("attempt_id", unique=True) in created
    assert call([("source_ip", ASCENDING), ("timestamp", ASCENDING)]) in created


def test_mongo_unreachable_at_startup_is_dependency_unavailable():
    client = MagicMock()
    client["registration_defense"]["attempts"].create_index.side_effect = ServerSelectionTimeoutError("no servers")

    with pytest.raises(DependencyUnavailable):
        MongoDefenseRepository("mongodb://unused", client=client)


def test_mongo_outcome_counts_query_decided_attempts():
    repository = build_mongo_repository()
    repository.attempts.count_documents.side_effect = [3, 7]
    since = NOW - timedelta(days=30)

    assert repository.ip_outcome_counts("198.51.100.7", since) == (3, 7)
    allowed_query, decided_query = [args[0] for args, _ in repository.attempts.count_documents.call_args_list]
    assert allowed_query == {"source_ip": "198.51.100.7", "timestamp": {"$gte": since}, "outcome": "allowed"}
    assert decided_query["outcome"] == {"$in": ["allowed", "blocked"]}


def test_mongo_attempt_documents_keep_reason_codes():
    repository = build_mongo_repository()
    attempt = make_attempt(NOW)
    document = repository.serialize_attempt(attempt)

    assert document["outcome"] == "blocked"
    assert document["reason"] == "IP_BLOCKED"
    assert repository.deserialize_attempt(document) == attempt


def test_memory_compare_and_set_rejects_stale_version():
    repository = MemoryDefenseRepository()
    created = repository.create_policy(make_policy())
    updated = repository.compare_and_set_policy(replace(created, mode=DefenseMode.ELEVATED), 0)

    assert updated.version == 1
    with pytest.raises(ConcurrencyConflict):
        repository.compare_and_set_policy(replace(created, mode=DefenseMode.STRICT), 0)
    assert repository.load_policy().mode is DefenseMode.ELEVATED
    assert repository.create_policy(make_policy()).version == 1


def test_memory_loaded_policy_is_a_copy():
    repository = MemoryDefenseRepository()
    repository.create_policy(make_policy())

    loaded = repository.load_policy()
    loaded.thresholds["ip_limit"] = 1.0
    assert repository.load_policy().thresholds["ip_limit"] == 5.0


def test_memory_retention_and_ranges():
    repository = MemoryDefenseRepository()
    for minutes in (0, 30, 90):
        repository.record_attempt(make_attempt(NOW + timedelta(minutes=minutes)))
    repository.save_pattern(
        AttackPattern(
            pattern_id="p-1",
            type=PatternType.SEQUENTIAL,
            confidence=0.5,
            window_start=NOW,
            window_end=NOW + timedelta(minutes=1),
            contributing_attempt_ids=(),
        )
    )

    assert len(repository.attempts_between(NOW, NOW + timedelta(minutes=30))) == 2
    assert repository.purge_attempts(NOW + timedelta(minutes=60)) == 2
    assert repository.purge_patterns(NOW + timedelta(days=1)) == 1
    assert repository.patterns_between(NOW, NOW + timedelta(days=1)) == []


def test_memory_outcome_counts_skip_challenges_and_old_attempts():
    repository = MemoryDefenseRepository()
    repository.record_attempt(make_attempt(NOW - timedelta(days=40), AttemptOutcome.ALLOWED))
    repository.record_attempt(make_attempt(NOW, AttemptOutcome.ALLOWED))
    repository.record_attempt(make_attempt(NOW + timedelta(seconds=1), AttemptOutcome.BLOCKED))
    repository.record_attempt(make_attempt(NOW + timedelta(seconds=2), AttemptOutcome.CHALLENGED))
    repository.record_attempt(make_attempt(NOW, AttemptOutcome.ALLOWED, ip="203.0.113.5"))

    assert repository.ip_outcome_counts("198.51.100.7", NOW - timedelta(days=30)) == (1, 2)
    assert repository.ip_outcome_counts("192.0.2.1", NOW - timedelta(days=30)) == (0, 0)


def test_memory_transitions_newest_first():
    repository = MemoryDefenseRepository()
    for version, (source, target) in enumerate(
        [(DefenseMode.NORMAL, DefenseMode.ELEVATED), (DefenseMode.ELEVATED, DefenseMode.STRICT)], start=1
    ):
        repository.record_transition(
            PolicyTransition(from_mode=source, to_mode=target, at=NOW, version=version, reason="test")
        )

    assert [t.version for t in repository.transitions()] == [2, 1]
    assert [t.version for t in repository.transitions(limit=1)] == [2]
