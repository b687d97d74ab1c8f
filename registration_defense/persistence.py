from __future__ import annotations

import logging
from contextlib import contextmanager
from dataclasses import replace
from datetime import datetime
from threading import Lock
from typing import Any, Dict, Iterator, List, Mapping, MutableMapping, Optional, Protocol, Tuple

from pymongo import ASCENDING, MongoClient, ReturnDocument
from pymongo.errors import DuplicateKeyError, PyMongoError

from .errors import ConcurrencyConflict, DependencyUnavailable
from .models import (
    Attempt,
    AttemptOutcome,
    AttackPattern,
    BlockEntry,
    DefenseMode,
    PatternType,
    PolicyState,
    PolicyTransition,
    ReasonCode,
    SubjectKind,
)

logger = logging.getLogger(__name__)

POLICY_ID = "registration_policy"


class DefenseRepository(Protocol):
    def record_attempt(self, attempt: Attempt) -> None: ...

    def attempts_between(self, start: datetime, end: datetime) -> List[Attempt]: ...

    def purge_attempts(self, before: datetime) -> int: ...

    def ip_outcome_counts(self, ip: str, since: datetime) -> Tuple[int, int]: ...

    def save_pattern(self, pattern: AttackPattern) -> None: ...

    def patterns_between(self, start: datetime, end: datetime) -> List[AttackPattern]: ...

    def purge_patterns(self, before: datetime) -> int: ...

    def upsert_block(self, entry: BlockEntry) -> BlockEntry: ...

    def remove_block(self, subject: str) -> bool: ...

    def list_blocks(self) -> List[BlockEntry]: ...

    def purge_blocks(self, now: datetime) -> int: ...

    def load_policy(self) -> Optional[PolicyState]: ...

    def create_policy(self, state: PolicyState) -> PolicyState: ...

    def compare_and_set_policy(self, state: PolicyState, expected_version: int) -> PolicyState: ...

    def record_transition(self, transition: PolicyTransition) -> None: ...

    def transitions(self, limit: int = 50) -> List[PolicyTransition]: ...


class MemoryDefenseRepository:
    """In-process repository for single-instance deployments and tests."""

    def __init__(self) -> None:
        self._lock = Lock()
        self._attempts: List[Attempt] = []
        self._patterns: List[AttackPattern] = []
        self._blocks: Dict[str, BlockEntry] = {}
        self._policy: Optional[PolicyState] = None
        self._transitions: List[PolicyTransition] = []

    def record_attempt(self, attempt: Attempt) -> None:
        with self._lock:
            self._attempts.append(attempt)

    def attempts_between(self, start: datetime, end: datetime) -> List[Attempt]:
        with self._lock:
            return [a for a in self._attempts if start <= a.timestamp <= end]

    def purge_attempts(self, before: datetime) -> int:
        with self._lock:
            kept = [a for a in self._attempts if a.timestamp >= before]
            removed = len(self._attempts) - len(kept)
            self._attempts = kept
        return removed

    def ip_outcome_counts(self, ip: str, since: datetime) -> Tuple[int, int]:
        """(allowed, decided) attempts from ``ip``; challenges are not decided yet."""
        with self._lock:
            outcomes = [a.outcome for a in self._attempts if a.source_ip == ip and a.timestamp >= since]
        allowed = outcomes.count(AttemptOutcome.ALLOWED)
        return allowed, allowed + outcomes.count(AttemptOutcome.BLOCKED)

    def save_pattern(self, pattern: AttackPattern) -> None:
        with self._lock:
            self._patterns.append(pattern)

    def patterns_between(self, start: datetime, end: datetime) -> List[AttackPattern]:
        with self._lock:
            return [p for p in self._patterns if start <= p.window_end <= end]

    def purge_patterns(self, before: datetime) -> int:
        with self._lock:
            kept = [p for p in self._patterns if p.window_end >= before]
            removed = len(self._patterns) - len(kept)
            self._patterns = kept
        return removed

    def upsert_block(self, entry: BlockEntry) -> BlockEntry:
        with self._lock:
            self._blocks[entry.subject] = entry
        return entry

    def remove_block(self, subject: str) -> bool:
        with self._lock:
            return self._blocks.pop(subject, None) is not None

    def list_blocks(self) -> List[BlockEntry]:
        with self._lock:
            return list(self._blocks.values())

    def purge_blocks(self, now: datetime) -> int:
        with self._lock:
            expired = [s for s, entry in self._blocks.items() if not entry.is_active(now)]
            for subject in expired:
                del self._blocks[subject]
        return len(expired)

    def load_policy(self) -> Optional[PolicyState]:
        with self._lock:
            return replace(self._policy, thresholds=dict(self._policy.thresholds)) if self._policy else None

    def create_policy(self, state: PolicyState) -> PolicyState:
        with self._lock:
            if self._policy is None:
                self._policy = replace(state, thresholds=dict(state.thresholds))
            return replace(self._policy, thresholds=dict(self._policy.thresholds))

    def compare_and_set_policy(self, state: PolicyState, expected_version: int) -> PolicyState:
        with self._lock:
            current = self._policy.version if self._policy else None
            if current != expected_version:
                raise ConcurrencyConflict(expected_version, current)
            self._policy = replace(state, version=expected_version + 1, thresholds=dict(state.thresholds))
            return replace(self._policy, thresholds=dict(self._policy.thresholds))

    def record_transition(self, transition: PolicyTransition) -> None:
        with self._lock:
            self._transitions.append(transition)

    def transitions(self, limit: int = 50) -> List[PolicyTransition]:
        with self._lock:
            return list(reversed(self._transitions[-limit:]))


@contextmanager
def _store_errors(operation: str) -> Iterator[None]:
    try:
        yield
    except PyMongoError as exc:
        logger.warning("Persistent store %s failed: %s", operation, exc)
        raise DependencyUnavailable("persistent_store", str(exc)) from exc


class MongoDefenseRepository:
    """MongoDB-backed repository for attempts, blocks, patterns and policy."""

    def __init__(
        self,
        uri: str,
        database: str = "registration_defense",
        timeout_ms: int = 500,
        client: Optional[MongoClient] = None,
    ) -> None:
        self.client = client or MongoClient(
            uri,
            tz_aware=True,
            serverSelectionTimeoutMS=timeout_ms,
            socketTimeoutMS=timeout_ms,
            connectTimeoutMS=timeout_ms,
        )
        self.db = self.client[database]
        self.attempts = self.db["attempts"]
        self.patterns = self.db["attack_patterns"]
        self.blocks = self.db["block_entries"]
        self.policy = self.db["policy_state"]
        self.transitions_log = self.db["policy_transitions"]
        self.ensure_indexes()

    def ensure_indexes(self) -> None:
        with _store_errors("ensure_indexes"):
            self.attempts.create_index([("timestamp", ASCENDING)])
            self.attempts.create_index("attempt_id", unique=True)
            self.attempts.create_index([("source_ip", ASCENDING), ("timestamp", ASCENDING)])
            self.patterns.create_index([("window_end", ASCENDING)])
            self.blocks.create_index("subject", unique=True)
            self.transitions_log.create_index([("at", ASCENDING)])

    def record_attempt(self, attempt: Attempt) -> None:
        with _store_errors("record_attempt"):
            self.attempts.insert_one(self.serialize_attempt(attempt))

    def attempts_between(self, start: datetime, end: datetime) -> List[Attempt]:
        with _store_errors("attempts_between"):
            cursor = self.attempts.find({"timestamp": {"$gte": start, "$lte": end}}).sort("timestamp", ASCENDING)
            return [self.deserialize_attempt(document) for document in cursor]

    def purge_attempts(self, before: datetime) -> int:
        with _store_errors("purge_attempts"):
            return self.attempts.delete_many({"timestamp": {"$lt": before}}).deleted_count

    def ip_outcome_counts(self, ip: str, since: datetime) -> Tuple[int, int]:
        query = {"source_ip": ip, "timestamp": {"$gte": since}}
        with _store_errors("ip_outcome_counts"):
            allowed = self.attempts.count_documents({**query, "outcome": AttemptOutcome.ALLOWED.value})
            decided = self.attempts.count_documents(
                {**query, "outcome": {"$in": [AttemptOutcome.ALLOWED.value, AttemptOutcome.BLOCKED.value]}}
            )
        return allowed, decided

    def save_pattern(self, pattern: AttackPattern) -> None:
        with _store_errors("save_pattern"):
            self.patterns.insert_one(self.serialize_pattern(pattern))

    def patterns_between(self, start: datetime, end: datetime) -> List[AttackPattern]:
        with _store_errors("patterns_between"):
            cursor = self.patterns.find({"window_end": {"$gte": start, "$lte": end}}).sort("window_end", ASCENDING)
            return [self.deserialize_pattern(document) for document in cursor]

    def purge_patterns(self, before: datetime) -> int:
        with _store_errors("purge_patterns"):
            return self.patterns.delete_many({"window_end": {"$lt": before}}).deleted_count

    def upsert_block(self, entry: BlockEntry) -> BlockEntry:
        with _store_errors("upsert_block"):
            self.blocks.replace_one({"subject": entry.subject}, self.serialize_block(entry), upsert=True)
        return entry

    def remove_block(self, subject: str) -> bool:
        with _store_errors("remove_block"):
            return self.blocks.delete_one({"subject": subject}).deleted_count > 0

    def list_blocks(self) -> List[BlockEntry]:
        with _store_errors("list_blocks"):
            return [self.deserialize_block(document) for document in self.blocks.find({})]

    def purge_blocks(self, now: datetime) -> int:
        with _store_errors("purge_blocks"):
            return self.blocks.delete_many({"expires_at": {"$ne": None, "$lte": now}}).deleted_count

    def load_policy(self) -> Optional[PolicyState]:
        with _store_errors("load_policy"):
            document = self.policy.find_one({"_id": POLICY_ID})
        return self.deserialize_policy(document) if document else None

    def create_policy(self, state: PolicyState) -> PolicyState:
        document = self.serialize_policy(state)
        document["_id"] = POLICY_ID
        with _store_errors("create_policy"):
            try:
                self.policy.insert_one(document)
            except DuplicateKeyError:
                existing = self.load_policy()
                if existing is not None:
                    return existing
        return state

    def compare_and_set_policy(self, state: PolicyState, expected_version: int) -> PolicyState:
        document = self.serialize_policy(replace(state, version=expected_version + 1))
        with _store_errors("compare_and_set_policy"):
            updated = self.policy.find_one_and_update(
                {"_id": POLICY_ID, "version": expected_version},
                {"$set": document},
                return_document=ReturnDocument.AFTER,
            )
            if updated is None:
                current = self.policy.find_one({"_id": POLICY_ID}, {"version": 1})
                raise ConcurrencyConflict(expected_version, current["version"] if current else None)
        return self.deserialize_policy(updated)

    def record_transition(self, transition: PolicyTransition) -> None:
        with _store_errors("record_transition"):
            self.transitions_log.insert_one(
                {
                    "from_mode": transition.from_mode.label,
                    "to_mode": transition.to_mode.label,
                    "at": transition.at,
                    "version": transition.version,
                    "reason": transition.reason,
                    "manual": transition.manual,
                    "operator": transition.operator,
                }
            )

    def transitions(self, limit: int = 50) -> List[PolicyTransition]:
        with _store_errors("transitions"):
            cursor = self.transitions_log.find({}).sort("at", -1).limit(limit)
            return [
                PolicyTransition(
                    from_mode=DefenseMode.from_label(document["from_mode"]),
                    to_mode=DefenseMode.from_label(document["to_mode"]),
                    at=document["at"],
                    version=int(document["version"]),
                    reason=document.get("reason", ""),
                    manual=bool(document.get("manual")),
                    operator=document.get("operator"),
                )
                for document in cursor
            ]

    def serialize_attempt(self, attempt: Attempt) -> Dict[str, Any]:
        return {
            "attempt_id": attempt.attempt_id,
            "timestamp": attempt.timestamp,
            "source_ip": attempt.source_ip,
            "email": attempt.email,
            "outcome": attempt.outcome.value,
            "suspicion_score": attempt.suspicion_score,
            "fingerprint_id": attempt.fingerprint_id,
            "reason": attempt.reason.value if attempt.reason else None,
        }

    def deserialize_attempt(self, document: Mapping[str, Any]) -> Attempt:
        return Attempt(
            attempt_id=document["attempt_id"],
            timestamp=document["timestamp"],
            source_ip=document["source_ip"],
            email=document["email"],
            outcome=AttemptOutcome(document["outcome"]),
            suspicion_score=float(document["suspicion_score"]),
            fingerprint_id=document.get("fingerprint_id"),
            reason=ReasonCode(document["reason"]) if document.get("reason") else None,
        )

    def serialize_pattern(self, pattern: AttackPattern) -> Dict[str, Any]:
        return {
            "pattern_id": pattern.pattern_id,
            "type": pattern.type.value,
            "confidence": pattern.confidence,
            "window_start": pattern.window_start,
            "window_end": pattern.window_end,
            "contributing_attempt_ids": list(pattern.contributing_attempt_ids),
            "subject": pattern.subject,
            "details": dict(pattern.details),
        }

    def deserialize_pattern(self, document: Mapping[str, Any]) -> AttackPattern:
        return AttackPattern(
            pattern_id=document["pattern_id"],
            type=PatternType(document["type"]),
            confidence=float(document["confidence"]),
            window_start=document["window_start"],
            window_end=document["window_end"],
            contributing_attempt_ids=tuple(document.get("contributing_attempt_ids", [])),
            subject=document.get("subject"),
            details=document.get("details", {}),
        )

    def serialize_block(self, entry: BlockEntry) -> Dict[str, Any]:
        return {
            "subject": entry.subject,
            "kind": entry.kind.value,
            "reason": entry.reason,
            "created_at": entry.created_at,
            "expires_at": entry.expires_at,
            "created_by": entry.created_by,
        }

    def deserialize_block(self, document: Mapping[str, Any]) -> BlockEntry:
        return BlockEntry(
            subject=document["subject"],
            kind=SubjectKind(document["kind"]),
            reason=document.get("reason", ""),
            created_at=document["created_at"],
            expires_at=document.get("expires_at"),
            created_by=document.get("created_by", "system"),
        )

    def serialize_policy(self, state: PolicyState) -> MutableMapping[str, Any]:
        return {
            "mode": state.mode.label,
            "entered_at": state.entered_at,
            "rollout_percentage": state.rollout_percentage,
            "thresholds": dict(state.thresholds),
            "version": state.version,
            "manual": state.manual,
            "operator": state.operator,
            "reason": state.reason,
            "last_pattern_at": state.last_pattern_at,
        }

    def deserialize_policy(self, document: Mapping[str, Any]) -> PolicyState:
        return PolicyState(
            mode=DefenseMode.from_label(document["mode"]),
            entered_at=document["entered_at"],
            rollout_percentage=float(document.get("rollout_percentage", 100.0)),
            thresholds={str(k): float(v) for k, v in document.get("thresholds", {}).items()},
            version=int(document.get("version", 0)),
            manual=bool(document.get("manual")),
            operator=document.get("operator"),
            reason=document.get("reason"),
            last_pattern_at=document.get("last_pattern_at"),
        )
