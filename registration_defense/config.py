from __future__ import annotations

import os
from dataclasses import dataclass, field
from datetime import timedelta
from typing import Dict, FrozenSet, Mapping, Optional, Tuple

from .errors import ValidationError
from .models import DefenseMode

THRESHOLD_KEYS: Tuple[str, ...] = (
    "ip_limit",
    "ip_window_seconds",
    "email_limit",
    "email_window_seconds",
    "global_limit",
    "global_window_seconds",
    "challenge_threshold",
    "block_threshold",
)

DEFAULT_DISPOSABLE_DOMAINS: FrozenSet[str] = frozenset(
    {
        "10minutemail.com",
        "guerrillamail.com",
        "mailinator.com",
        "tempmail.com",
        "throwawaymail.com",
        "yopmail.com",
        "trashmail.com",
        "getnada.com",
        "sharklasers.com",
        "dispostable.com",
    }
)


@dataclass(slots=True)
class RateLimitConfig:
    ip_limit: int = 5
    ip_window: timedelta = timedelta(minutes=15)
    email_limit: int = 3
    email_window: timedelta = timedelta(minutes=15)
    # aggregate monitoring only, never rejects
    global_limit: int = 100
    global_window: timedelta = timedelta(hours=1)
    rapid_attempt_limit: int = 10
    rapid_attempt_window: timedelta = timedelta(minutes=5)
    strict_limit_factor: float = 0.5
    count_challenged_attempts: bool = True
    unavailable_retry_after: int = 30


@dataclass(slots=True)
class ReputationConfig:
    challenge_threshold: float = 0.5
    block_threshold: float = 0.9
    disposable_email_weight: float = 0.6
    bad_subnet_weight: float = 0.6
    vpn_proxy_weight: float = 0.2
    ip_reputation_weight: float = 0.4
    internal_history_weight: float = 0.3
    internal_history_window: timedelta = timedelta(days=30)
    internal_prior_attempts: int = 5
    email_pattern_weight: float = 0.2
    user_agent_weight: float = 0.2
    fingerprint_weight: float = 0.3
    cache_ttl: timedelta = timedelta(minutes=5)
    feed_timeout_seconds: float = 0.5
    disposable_domains: FrozenSet[str] = DEFAULT_DISPOSABLE_DOMAINS
    seed_disposable_blocks: bool = True
    vpn_ranges: Tuple[str, ...] = ()
    bad_subnets: Tuple[str, ...] = ()
    fingerprint_window: timedelta = timedelta(hours=24)
    fingerprint_max_attempts: int = 10


@dataclass(slots=True)
class DetectionConfig:
    window: timedelta = timedelta(minutes=15)
    stuffing_min_emails: int = 10
    stuffing_subnet_bits: int = 24
    enumeration_min_sequence: int = 3
    enumeration_dictionary_min: int = 5
    distributed_window: timedelta = timedelta(seconds=60)
    distributed_unique_ips: int = 100
    sequential_min_attempts: int = 8
    sequential_max_interval_seconds: float = 10.0
    sequential_max_jitter_seconds: float = 0.5
    reemit_interval: timedelta = timedelta(seconds=60)
    auto_block_stuffing: timedelta = timedelta(hours=6)
    auto_block_sequential: timedelta = timedelta(hours=1)


@dataclass(slots=True)
class EscalationConfig:
    elevate_confidence: float = 0.5
    # lower than elevate_confidence: weaker patterns still hold the current level
    hold_confidence: float = 0.3
    strict_unique_ips: int = 100
    emergency_unique_ips: int = 500
    elevated_stall: timedelta = timedelta(minutes=15)
    cooldown: timedelta = timedelta(minutes=30)
    max_retries: int = 3
    review_signature_window: timedelta = timedelta(hours=1)


@dataclass(slots=True)
class RetentionConfig:
    attempt_history: timedelta = timedelta(hours=2)
    stored_attempts: timedelta = timedelta(days=30)
    attack_patterns: timedelta = timedelta(days=7)
    sweep_interval_seconds: int = 60


@dataclass(slots=True)
class GeoConfig:
    allowed_countries: FrozenSet[str] = frozenset()
    blocked_countries: FrozenSet[str] = frozenset()


@dataclass(slots=True)
class DefenseConfig:
    """Tunable limits and thresholds for the registration defense core."""

    rate_limits: RateLimitConfig = field(default_factory=RateLimitConfig)
    reputation: ReputationConfig = field(default_factory=ReputationConfig)
    detection: DetectionConfig = field(default_factory=DetectionConfig)
    escalation: EscalationConfig = field(default_factory=EscalationConfig)
    retention: RetentionConfig = field(default_factory=RetentionConfig)
    geo: GeoConfig = field(default_factory=GeoConfig)
    rollout_percentage: float = 100.0

    def initial_thresholds(self) -> Dict[str, float]:
        limits = self.rate_limits
        return {
            "ip_limit": float(limits.ip_limit),
            "ip_window_seconds": limits.ip_window.total_seconds(),
            "email_limit": float(limits.email_limit),
            "email_window_seconds": limits.email_window.total_seconds(),
            "global_limit": float(limits.global_limit),
            "global_window_seconds": limits.global_window.total_seconds(),
            "challenge_threshold": self.reputation.challenge_threshold,
            "block_threshold": self.reputation.block_threshold,
        }

    def effective_limit(self, base: float, mode: DefenseMode) -> int:
        if mode >= DefenseMode.STRICT:
            return max(1, int(base * self.rate_limits.strict_limit_factor))
        return max(1, int(base))

    def validate(self) -> "DefenseConfig":
        validate_thresholds(self.initial_thresholds())
        validate_rollout(self.rollout_percentage)
        if self.escalation.hold_confidence > self.escalation.elevate_confidence:
            raise ValidationError("hold_confidence must not exceed elevate_confidence", "hold_confidence")
        if not 0.0 <= self.reputation.internal_history_weight <= 1.0:
            raise ValidationError("internal_history_weight must be within [0, 1]", "internal_history_weight")
        if self.detection.distributed_unique_ips < 1:
            raise ValidationError("distributed_unique_ips must be positive", "distributed_unique_ips")
        if not (
            self.detection.distributed_unique_ips
            <= self.escalation.strict_unique_ips
            <= self.escalation.emergency_unique_ips
        ):
            raise ValidationError(
                "unique-IP thresholds must be ordered: distributed <= strict <= emergency",
                "emergency_unique_ips",
            )
        return self


def validate_thresholds(thresholds: Mapping[str, float]) -> Dict[str, float]:
    cleaned: Dict[str, float] = {}
    for key, value in thresholds.items():
        if key not in THRESHOLD_KEYS:
            raise ValidationError(f"unknown threshold: {key}", key)
        try:
            number = float(value)
        except (TypeError, ValueError):
            raise ValidationError(f"threshold {key} must be numeric", key) from None
        if key in ("challenge_threshold", "block_threshold"):
            if not 0.0 <= number <= 1.0:
                raise ValidationError(f"{key} must be within [0, 1]", key)
        elif number < 1:
            raise ValidationError(f"{key} must be at least 1", key)
        cleaned[key] = number
    challenge = cleaned.get("challenge_threshold")
    block = cleaned.get("block_threshold")
    if challenge is not None and block is not None and challenge > block:
        raise ValidationError("challenge_threshold must not exceed block_threshold", "challenge_threshold")
    return cleaned


def validate_rollout(rollout_percentage: float) -> float:
    if not 0.0 <= float(rollout_percentage) <= 100.0:
        raise ValidationError("rollout_percentage must be within [0, 100]", "rollout_percentage")
    return float(rollout_percentage)


def _split(value: Optional[str]) -> Tuple[str, ...]:
    return tuple(part.strip() for part in (value or "").split(",") if part.strip())


def mongodb_uri() -> str:
    return os.getenv("MONGODB_URI", "mongodb://mongo:27017/")


def mongodb_database() -> str:
    return os.getenv("MONGODB_DATABASE", "registration_defense")


def redis_url() -> str:
    return os.getenv("DEFENSE_REDIS_URL", "redis://redis:6379/0")


def broker_url() -> str:
    return os.getenv("CELERY_BROKER_URL", redis_url())


def result_backend() -> str:
    return os.getenv("CELERY_RESULT_BACKEND", broker_url())


def recaptcha_secret() -> Optional[str]:
    return os.getenv("RECAPTCHA_SECRET") or None


def reputation_feed_url() -> Optional[str]:
    return os.getenv("REPUTATION_FEED_URL") or None


def reputation_feed_api_key() -> Optional[str]:
    return os.getenv("REPUTATION_FEED_API_KEY") or None


def admin_token() -> Optional[str]:
    return os.getenv("DEFENSE_ADMIN_TOKEN") or None


def config_from_env() -> DefenseConfig:
    """Static configuration with deployment overrides taken from the environment."""
    config = DefenseConfig()
    if os.getenv("DEFENSE_ROLLOUT_PERCENTAGE"):
        config.rollout_percentage = float(os.environ["DEFENSE_ROLLOUT_PERCENTAGE"])
    config.reputation.vpn_ranges = _split(os.getenv("DEFENSE_VPN_RANGES"))
    config.reputation.bad_subnets = _split(os.getenv("DEFENSE_BAD_SUBNETS"))
    config.geo.allowed_countries = frozenset(_split(os.getenv("DEFENSE_ALLOWED_COUNTRIES")))
    config.geo.blocked_countries = frozenset(_split(os.getenv("DEFENSE_BLOCKED_COUNTRIES")))
    if os.getenv("DEFENSE_SWEEP_INTERVAL_SECONDS"):
        config.retention.sweep_interval_seconds = int(os.environ["DEFENSE_SWEEP_INTERVAL_SECONDS"])
    return config.validate()
