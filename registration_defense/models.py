from __future__ import annotations

import hashlib
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum, IntEnum
from typing import Any, Dict, Mapping, Optional, Tuple


class DefenseMode(IntEnum):
    """Platform-wide defense posture, ordered from least to most strict."""

    NORMAL = 0
    ELEVATED = 1
    STRICT = 2
    EMERGENCY_DISABLED = 3

    @property
    def label(self) -> str:
        return {
            DefenseMode.NORMAL: "Normal",
            DefenseMode.ELEVATED: "Elevated",
            DefenseMode.STRICT: "Strict",
            DefenseMode.EMERGENCY_DISABLED: "EmergencyDisabled",
        }[self]

    @classmethod
    def from_label(cls, value: str) -> "DefenseMode":
        for mode in cls:
            if value in (mode.label, mode.name):
                return mode
        raise ValueError(f"unknown defense mode: {value}")

    def step_up(self) -> "DefenseMode":
        return DefenseMode(min(self + 1, DefenseMode.EMERGENCY_DISABLED))

    def step_down(self) -> "DefenseMode":
        return DefenseMode(max(self - 1, DefenseMode.NORMAL))


class AttemptOutcome(str, Enum):
    ALLOWED = "allowed"
    CHALLENGED = "challenged"
    BLOCKED = "blocked"


class Outcome(str, Enum):
    ALLOWED = "Allowed"
    CHALLENGED = "Challenged"
    REJECTED = "Rejected"


class ReasonCode(str, Enum):
    CAPTCHA_REQUIRED = "CAPTCHA_REQUIRED"
    RATE_LIMIT_EXCEEDED = "RATE_LIMIT_EXCEEDED"
    IP_BLOCKED = "IP_BLOCKED"
    DOMAIN_BLOCKED = "DOMAIN_BLOCKED"
    REPUTATION_BLOCKED = "REPUTATION_BLOCKED"
    REGISTRATION_DISABLED = "REGISTRATION_DISABLED"
    GEO_RESTRICTED = "GEO_RESTRICTED"
    SERVICE_UNAVAILABLE = "SERVICE_UNAVAILABLE"


class PatternType(str, Enum):
    CREDENTIAL_STUFFING = "credential_stuffing"
    ENUMERATION = "enumeration"
    DISTRIBUTED = "distributed"
    SEQUENTIAL = "sequential"


class SubjectKind(str, Enum):
    IP = "ip"
    SUBNET = "subnet"
    DOMAIN = "domain"


@dataclass(frozen=True, slots=True)
class Attempt:
    attempt_id: str
    timestamp: datetime
    source_ip: str
    email: str
    outcome: AttemptOutcome
    suspicion_score: float
    fingerprint_id: Optional[str] = None
    reason: Optional[ReasonCode] = None

    @property
    def email_domain(self) -> str:
        return email_domain(self.email)


@dataclass(slots=True)
class Counter:
    key: str
    window_start: float
    count: int
    expires_at: float
    window_seconds: int = 0
    previous_count: int = 0


@dataclass(slots=True)
class ReputationEntry:
    subject: str
    score: float
    source: str
    computed_at: datetime
    expires_at: datetime
    is_vpn_or_proxy: bool = False
    is_known_bad_subnet: bool = False
    internal_score: Optional[float] = None

    def is_fresh(self, now: datetime) -> bool:
        return now < self.expires_at


@dataclass(slots=True)
class BlockEntry:
    subject: str
    kind: SubjectKind
    reason: str
    created_at: datetime
    expires_at: Optional[datetime] = None
    created_by: str = "system"

    @property
    def permanent(self) -> bool:
        return self.expires_at is None

    def is_active(self, now: datetime) -> bool:
        return self.expires_at is None or now < self.expires_at


@dataclass(frozen=True, slots=True)
class AttackPattern:
    pattern_id: str
    type: PatternType
    confidence: float
    window_start: datetime
    window_end: datetime
    contributing_attempt_ids: Tuple[str, ...]
    subject: Optional[str] = None
    details: Mapping[str, Any] = field(default_factory=dict)


@dataclass(slots=True)
class PolicyState:
    mode: DefenseMode
    entered_at: datetime
    rollout_percentage: float
    thresholds: Dict[str, float]
    version: int = 0
    manual: bool = False
    operator: Optional[str] = None
    reason: Optional[str] = None
    last_pattern_at: Optional[datetime] = None


@dataclass(frozen=True, slots=True)
class PolicyTransition:
    from_mode: DefenseMode
    to_mode: DefenseMode
    at: datetime
    version: int
    reason: str
    manual: bool = False
    operator: Optional[str] = None


@dataclass(slots=True)
class RateLimitResult:
    allowed: bool
    remaining: int
    retry_after_seconds: int
    scope: str = ""
    count: int = 0


@dataclass(slots=True)
class ReputationSignals:
    is_disposable_email: bool = False
    is_vpn_or_proxy: bool = False
    ip_reputation_score: float = 1.0
    is_known_bad_subnet: bool = False
    suspicious_email_pattern: bool = False
    suspicious_user_agent: bool = False
    suspicious_fingerprint: bool = False
    feed_unavailable: bool = False
    internal_history_score: Optional[float] = None


@dataclass(slots=True)
class ReputationResult:
    suspicion_score: float
    signals: ReputationSignals


@dataclass(slots=True)
class Decision:
    outcome: Outcome
    reason: Optional[ReasonCode] = None
    retry_after_seconds: Optional[int] = None
    suspicion_score: float = 0.0
    manual_review: bool = False
    attempt_id: Optional[str] = None

    @classmethod
    def allowed(cls, **kwargs: Any) -> "Decision":
        return cls(outcome=Outcome.ALLOWED, **kwargs)

    @classmethod
    def challenged(cls, **kwargs: Any) -> "Decision":
        return cls(outcome=Outcome.CHALLENGED, reason=ReasonCode.CAPTCHA_REQUIRED, **kwargs)

    @classmethod
    def rejected(cls, reason: ReasonCode, **kwargs: Any) -> "Decision":
        return cls(outcome=Outcome.REJECTED, reason=reason, **kwargs)

    @property
    def is_allowed(self) -> bool:
        return self.outcome is Outcome.ALLOWED

    def raise_for_rejection(self) -> None:
        if self.outcome is Outcome.REJECTED:
            from .errors import PolicyRejection

            raise PolicyRejection(self)


@dataclass(slots=True)
class Alert:
    severity: str
    kind: str
    title: str
    message: str
    created_at: datetime
    details: Dict[str, Any] = field(default_factory=dict)


@dataclass(slots=True)
class SweepReport:
    counters: int = 0
    blocks: int = 0
    attempts: int = 0
    patterns: int = 0
    reputation_entries: int = 0


def email_domain(email: str) -> str:
    return email.rsplit("@", 1)[-1].lower() if "@" in email else ""


def hash_email(email: str) -> str:
    return hashlib.sha256(email.strip().lower().encode()).hexdigest()
