from __future__ import annotations

import hashlib
import ipaddress
import logging
import re
from datetime import datetime, timezone
from threading import Lock
from typing import Callable, Dict, Iterable, List, Optional
from uuid import uuid4

from .blocklist import Blocklist
from .captcha import CaptchaVerifier, RecaptchaVerifier
from .config import (
    DefenseConfig,
    config_from_env,
    mongodb_database,
    mongodb_uri,
    recaptcha_secret,
    redis_url,
    reputation_feed_api_key,
    reputation_feed_url,
)
from .counter_store import CounterStore, MemoryCounterStore, RedisCounterStore
from .errors import DependencyUnavailable, ValidationError
from .escalation import EscalationController, TrafficMetrics
from .fingerprinting import FingerprintTracker
from .geo import GeoPolicy, GeoResolver
from .history import AttemptHistory
from .models import (
    Attempt,
    AttemptOutcome,
    AttackPattern,
    Decision,
    DefenseMode,
    Outcome,
    PatternType,
    PolicyState,
    ReasonCode,
    RateLimitResult,
    email_domain,
    hash_email,
)
from .patterns import PatternDetector, subnet_of
from .persistence import DefenseRepository, MemoryDefenseRepository, MongoDefenseRepository
from .rate_limiter import SCOPE_EMAIL, SCOPE_GLOBAL, SCOPE_IP, SCOPE_RAPID, RateLimiter
from .reputation import HttpReputationFeed, ReputationEvaluator, ReputationFeed
from .webhook import AlertSink

logger = logging.getLogger(__name__)

EMAIL_PATTERN = re.compile(r"^[^@\s]+@[^@\s]+\.[^@\s]+$")

_ATTEMPT_OUTCOMES = {
    Outcome.ALLOWED: AttemptOutcome.ALLOWED,
    Outcome.CHALLENGED: AttemptOutcome.CHALLENGED,
    Outcome.REJECTED: AttemptOutcome.BLOCKED,
}


def normalize_ip(ip: str) -> str:
    try:
        return str(ipaddress.ip_address((ip or "").strip()))
    except ValueError:
        raise ValidationError(f"invalid IP address: {ip!r}", "ip") from None


def normalize_email(email: str) -> str:
    value = (email or "").strip().lower()
    if len(value) > 254 or not EMAIL_PATTERN.match(value):
        raise ValidationError("invalid email address", "email")
    return value


def rollout_bucket(ip: str) -> int:
    """Stable 0-99 bucket for an address, identical on every instance."""
    return int(hashlib.sha256(ip.encode()).hexdigest()[:8], 16) % 100


class RegistrationOrchestrator:
    """Sequences the defense stages into one decision per registration attempt.

    Cheap global checks run first (policy posture, block list, geo, rollout),
    then the per-IP and per-email rate limits, then the reputation lookup.
    Every attempt that gets past the posture and input checks is recorded, so
    pattern detection sees rejected traffic as well as accepted traffic.
    """

    def __init__(
        self,
        config: Optional[DefenseConfig] = None,
        *,
        counter_store: Optional[CounterStore] = None,
        repository: Optional[DefenseRepository] = None,
        reputation_feed: Optional[ReputationFeed] = None,
        captcha: Optional[CaptchaVerifier] = None,
        geo_resolver: Optional[GeoResolver] = None,
        alerts: Optional[AlertSink] = None,
        purge_pending: Optional[Callable[[], int]] = None,
    ):
        self.config = (config or DefenseConfig()).validate()
        self.repository = repository if repository is not None else MemoryDefenseRepository()
        self.counter_store = counter_store if counter_store is not None else MemoryCounterStore()
        self.rate_limiter = RateLimiter(self.counter_store)
        self.fingerprints = FingerprintTracker(
            self.config.reputation.fingerprint_window,
            self.config.reputation.fingerprint_max_attempts,
        )
        self.reputation = ReputationEvaluator(
            self.config.reputation,
            feed=reputation_feed,
            fingerprints=self.fingerprints,
            history=self.repository,
        )
        self.history = AttemptHistory(self.config.retention.attempt_history)
        self.detector = PatternDetector(self.config.detection)
        self.blocklist = Blocklist(self.repository)
        self.escalation = EscalationController(self.config, self.repository, alerts, purge_pending)
        self.geo = GeoPolicy(self.config.geo, geo_resolver)
        self.captcha = captcha
        self._lock = Lock()
        self._signatures: Dict[str, datetime] = {}
        self._last_policy: Optional[PolicyState] = None
        self._seeded = False

    def policy(self, now: Optional[datetime] = None) -> PolicyState:
        """Current posture; falls back to the last successful read when the store is down."""
        now = now or datetime.now(timezone.utc)
        try:
            state = self.escalation.current(now)
        except DependencyUnavailable as exc:
            logger.warning("Policy store unavailable, using last known policy: %s", exc.message)
            return self._last_policy or self.escalation.initial_state(now)
        self._last_policy = state
        return state

    def ensure_seeded(self, now: Optional[datetime] = None) -> None:
        if self._seeded or not self.config.reputation.seed_disposable_blocks:
            return
        seeded = self.blocklist.seed_domains(
            self.config.reputation.disposable_domains,
            reason="disposable email provider",
            now=now,
        )
        self._seeded = True
        if seeded:
            logger.info("Seeded %d disposable email domains into the block list", seeded)

    def threshold(self, policy: PolicyState, key: str) -> float:
        value = policy.thresholds.get(key)
        if value is None:
            value = self.config.initial_thresholds()[key]
        return float(value)

    def evaluate_attempt(
        self,
        ip: str,
        email: str,
        fingerprint: Optional[str] = None,
        *,
        user_agent: Optional[str] = None,
        captcha_token: Optional[str] = None,
        now: Optional[datetime] = None,
    ) -> Decision:
        now = now or datetime.now(timezone.utc)
        policy = self.policy(now)
        if policy.mode is DefenseMode.EMERGENCY_DISABLED:
            return Decision.rejected(ReasonCode.REGISTRATION_DISABLED)

        ip = normalize_ip(ip)
        email = normalize_email(email)
        epoch = now.timestamp()

        try:
            self.ensure_seeded(now)
            blocked = self.blocklist.check(ip, email, now)
        except DependencyUnavailable as exc:
            logger.warning("Block list unavailable, failing closed: %s", exc.message)
            return self._unavailable()
        if blocked is not None:
            logger.info("Rejected attempt from %s for domain %s: %s", ip, email_domain(email), blocked.value)
            return self._finish(ip, email, fingerprint, Decision.rejected(blocked), None, now)

        if self.geo.is_restricted(ip):
            return self._finish(ip, email, fingerprint, Decision.rejected(ReasonCode.GEO_RESTRICTED), None, now)
        if rollout_bucket(ip) >= policy.rollout_percentage:
            return self._finish(
                ip, email, fingerprint, Decision.rejected(ReasonCode.REGISTRATION_DISABLED), None, now
            )

        limits = self.config.rate_limits
        email_key = hash_email(email)
        email_limit = self.config.effective_limit(self.threshold(policy, "email_limit"), policy.mode)
        email_window = int(self.threshold(policy, "email_window_seconds"))
        try:
            metrics = self._sample_traffic(policy, epoch)
            ip_result = self.rate_limiter.check_and_consume(
                SCOPE_IP,
                ip,
                self.config.effective_limit(self.threshold(policy, "ip_limit"), policy.mode),
                int(self.threshold(policy, "ip_window_seconds")),
                now=epoch,
            )
            limited: Optional[RateLimitResult] = None if ip_result.allowed else ip_result
            if limited is None:
                if limits.count_challenged_attempts:
                    email_result = self.rate_limiter.check_and_consume(
                        SCOPE_EMAIL, email_key, email_limit, email_window, now=epoch
                    )
                else:
                    email_result = self.rate_limiter.peek(SCOPE_EMAIL, email_key, email_limit, email_window, now=epoch)
                limited = None if email_result.allowed else email_result
        except DependencyUnavailable as exc:
            logger.warning("Counter store unavailable, failing closed: %s", exc.message)
            return self._unavailable()

        if limited is not None:
            decision = Decision.rejected(
                ReasonCode.RATE_LIMIT_EXCEEDED, retry_after_seconds=max(1, limited.retry_after_seconds)
            )
            logger.info("Rate limit %s exceeded by %s (count=%d)", limited.scope, ip, limited.count)
            return self._finish(ip, email, fingerprint, decision, metrics, now)

        result = self.reputation.evaluate(
            ip,
            email,
            fingerprint=fingerprint,
            user_agent=user_agent,
            now=now,
            challenge_threshold=self.threshold(policy, "challenge_threshold"),
        )
        score = result.suspicion_score
        if score >= self.threshold(policy, "block_threshold"):
            decision = Decision.rejected(ReasonCode.REPUTATION_BLOCKED, suspicion_score=score)
        elif score >= self.threshold(policy, "challenge_threshold") or policy.mode >= DefenseMode.ELEVATED:
            if captcha_token and self.captcha is not None and self.captcha.verify(captcha_token, ip):
                decision = Decision.allowed(suspicion_score=score)
            else:
                decision = Decision.challenged(suspicion_score=score)
        else:
            decision = Decision.allowed(suspicion_score=score)

        if decision.is_allowed and not limits.count_challenged_attempts:
            try:
                consumed = self.rate_limiter.check_and_consume(
                    SCOPE_EMAIL, email_key, email_limit, email_window, now=epoch
                )
            except DependencyUnavailable as exc:
                logger.warning("Counter store unavailable, failing closed: %s", exc.message)
                return self._unavailable()
            if not consumed.allowed:
                decision = Decision.rejected(
                    ReasonCode.RATE_LIMIT_EXCEEDED,
                    retry_after_seconds=max(1, consumed.retry_after_seconds),
                    suspicion_score=score,
                )

        if decision.is_allowed and policy.mode >= DefenseMode.STRICT and self.matches_signature(ip, now):
            decision.manual_review = True

        return self._finish(ip, email, fingerprint, decision, metrics, now)

    def _sample_traffic(self, policy: PolicyState, epoch: float) -> TrafficMetrics:
        limits = self.config.rate_limits
        global_limit = int(self.threshold(policy, "global_limit"))
        global_result = self.rate_limiter.check_and_consume(
            SCOPE_GLOBAL, "all", global_limit, int(self.threshold(policy, "global_window_seconds")), now=epoch
        )
        rapid_result = self.rate_limiter.check_and_consume(
            SCOPE_RAPID,
            "all",
            limits.rapid_attempt_limit,
            int(limits.rapid_attempt_window.total_seconds()),
            now=epoch,
        )
        return TrafficMetrics(
            rapid_count=rapid_result.count,
            rapid_limit=limits.rapid_attempt_limit,
            global_count=global_result.count,
            global_limit=global_limit,
        )

    def _unavailable(self) -> Decision:
        return Decision.rejected(
            ReasonCode.SERVICE_UNAVAILABLE,
            retry_after_seconds=self.config.rate_limits.unavailable_retry_after,
        )

    def _finish(
        self,
        ip: str,
        email: str,
        fingerprint: Optional[str],
        decision: Decision,
        metrics: Optional[TrafficMetrics],
        now: datetime,
    ) -> Decision:
        attempt = Attempt(
            attempt_id=str(uuid4()),
            timestamp=now,
            source_ip=ip,
            email=email,
            outcome=_ATTEMPT_OUTCOMES[decision.outcome],
            suspicion_score=decision.suspicion_score,
            fingerprint_id=fingerprint,
            reason=decision.reason,
        )
        decision.attempt_id = attempt.attempt_id
        self.history.append(attempt)
        if fingerprint and self.fingerprints.observe(fingerprint, now) > self.fingerprints.max_attempts:
            if self.fingerprints.flag(fingerprint):
                logger.warning(
                    "Fingerprint %s flagged after %d attempts", fingerprint, self.fingerprints.max_attempts + 1
                )
        try:
            self.repository.record_attempt(attempt)
        except DependencyUnavailable as exc:
            logger.warning("Attempt %s not persisted: %s", attempt.attempt_id, exc.message)

        patterns = self.detector.detect(self.history, now)
        for pattern in patterns:
            self._handle_pattern(pattern, now)
        try:
            self.escalation.evaluate(patterns, metrics, now)
        except DependencyUnavailable as exc:
            logger.warning("Escalation check skipped: %s", exc.message)
        return decision

    def _handle_pattern(self, pattern: AttackPattern, now: datetime) -> None:
        logger.warning(
            "Detected %s pattern (confidence %.2f) subject=%s",
            pattern.type.value,
            pattern.confidence,
            pattern.subject or "*",
        )
        try:
            self.repository.save_pattern(pattern)
        except DependencyUnavailable as exc:
            logger.warning("Pattern %s not persisted: %s", pattern.pattern_id, exc.message)
        self.remember_signature(self._pattern_sources(pattern, now), now)

        detection = self.config.detection
        duration = None
        if pattern.type is PatternType.CREDENTIAL_STUFFING:
            duration = detection.auto_block_stuffing
        elif pattern.type is PatternType.SEQUENTIAL:
            duration = detection.auto_block_sequential
        if duration is None or not pattern.subject or "/" in pattern.subject:
            return
        try:
            self.blocklist.block(
                pattern.subject,
                reason=f"automatic: {pattern.type.value}",
                duration=duration,
                created_by="detector",
                now=now,
            )
        except DependencyUnavailable as exc:
            logger.warning("Automatic block of %s failed: %s", pattern.subject, exc.message)
            return
        self.reputation.invalidate(pattern.subject)

    def _pattern_sources(self, pattern: AttackPattern, now: datetime) -> List[str]:
        contributors = set(pattern.contributing_attempt_ids)
        window = self.history.window(now, self.config.detection.window)
        sources = {attempt.source_ip for attempt in window if attempt.attempt_id in contributors}
        if pattern.subject and "/" in pattern.subject:
            sources.add(pattern.subject)
        return sorted(sources)

    def remember_signature(self, subjects: Iterable[str], now: datetime) -> None:
        with self._lock:
            for subject in subjects:
                self._signatures[subject] = now
                subnet = subnet_of(subject, self.config.detection.stuffing_subnet_bits) if "/" not in subject else None
                if subnet:
                    self._signatures[subnet] = now

    def matches_signature(self, ip: str, now: datetime) -> bool:
        """True when the address or its subnet contributed to a recent attack pattern."""
        window = self.config.escalation.review_signature_window
        candidates = [ip, subnet_of(ip, self.config.detection.stuffing_subnet_bits)]
        with self._lock:
            return any(
                subject is not None
                and subject in self._signatures
                and now - self._signatures[subject] <= window
                for subject in candidates
            )

    def forget_signatures(self, now: datetime) -> int:
        window = self.config.escalation.review_signature_window
        with self._lock:
            stale = [subject for subject, at in self._signatures.items() if now - at > window]
            for subject in stale:
                del self._signatures[subject]
        return len(stale)


def build_orchestrator(
    config: Optional[DefenseConfig] = None,
    alerts: Optional[AlertSink] = None,
    purge_pending: Optional[Callable[[], int]] = None,
) -> RegistrationOrchestrator:
    """Wire the production backends from deployment settings."""
    config = config or config_from_env()
    feed = None
    if reputation_feed_url():
        feed = HttpReputationFeed(
            reputation_feed_url(),
            api_key=reputation_feed_api_key(),
            timeout_seconds=config.reputation.feed_timeout_seconds,
        )
    secret = recaptcha_secret()
    return RegistrationOrchestrator(
        config,
        counter_store=RedisCounterStore.from_url(redis_url()),
        repository=MongoDefenseRepository(mongodb_uri(), mongodb_database()),
        reputation_feed=feed,
        captcha=RecaptchaVerifier(secret) if secret else None,
        alerts=alerts,
        purge_pending=purge_pending,
    )
