"""Suspicion scoring for registration attempts.

Signals come from three places: a reputation feed for the source IP (cached
with a short TTL) blended with the address's own allowed/blocked history,
local email heuristics (disposable providers, throwaway local parts) and the
device fingerprint tracker. The weighted sum is clamped to ``[0, 1]``; the
weights live in ``ReputationConfig``.
"""

from __future__ import annotations

import ipaddress
import logging
import re
from dataclasses import dataclass
from datetime import datetime, timezone
from threading import Lock
from typing import Dict, Iterable, List, Mapping, Optional, Protocol, Set, Tuple, Union

import httpx

from .config import ReputationConfig
from .errors import DependencyUnavailable
from .fingerprinting import FingerprintTracker
from .models import ReputationEntry, ReputationResult, ReputationSignals, email_domain

logger = logging.getLogger(__name__)

SUSPICIOUS_LOCAL_PARTS = [
    re.compile(r"^test\d+$", re.IGNORECASE),
    re.compile(r"^admin$", re.IGNORECASE),
    re.compile(r"^no-?reply$", re.IGNORECASE),
    re.compile(r"\d{5,}$"),
    re.compile(r"^[a-z]{1,2}\d+$", re.IGNORECASE),
    re.compile(r"^temp", re.IGNORECASE),
    re.compile(r"^disposable", re.IGNORECASE),
    re.compile(r"^fake", re.IGNORECASE),
]

BOT_USER_AGENT = re.compile(
    r"bot|spider|crawl|selenium|puppeteer|playwright|phantomjs|headless|automated|scraper|webdriver",
    re.IGNORECASE,
)
BROWSER_USER_AGENT = re.compile(r"Mozilla|Chrome|Safari|Firefox|Edge", re.IGNORECASE)


@dataclass(slots=True)
class FeedVerdict:
    score: float
    is_vpn_or_proxy: bool = False
    is_known_bad_subnet: bool = False
    source: str = "static"


class ReputationFeed(Protocol):
    def lookup(self, ip: str) -> FeedVerdict:
        ...


class OutcomeHistory(Protocol):
    def ip_outcome_counts(self, ip: str, since: datetime) -> Tuple[int, int]:
        ...


def internal_history_score(allowed: int, decided: int, prior: float, prior_attempts: int) -> float:
    """Success rate of an address's own attempts, smoothed toward ``prior``.

    An address with no decided attempts scores exactly ``prior``.
    """
    return (allowed + prior * prior_attempts) / (decided + prior_attempts) if decided + prior_attempts else prior


Network = Union[ipaddress.IPv4Network, ipaddress.IPv6Network]


def _networks(values: Iterable[str]) -> List[Network]:
    return [ipaddress.ip_network(value, strict=False) for value in values]


def ip_in_networks(ip: str, networks: Iterable[Network]) -> bool:
    try:
        address = ipaddress.ip_address(ip)
    except ValueError:
        return False
    return any(address.version == net.version and address in net for net in networks)


class StaticReputationFeed:
    """Reputation from locally configured ranges and scores."""

    def __init__(
        self,
        vpn_ranges: Iterable[str] = (),
        bad_subnets: Iterable[str] = (),
        scores: Optional[Mapping[str, float]] = None,
        default_score: float = 1.0,
    ):
        self.vpn_ranges = _networks(vpn_ranges)
        self.bad_subnets = _networks(bad_subnets)
        self.scores: Dict[str, float] = dict(scores or {})
        self.default_score = default_score

    def lookup(self, ip: str) -> FeedVerdict:
        return FeedVerdict(
            score=self.scores.get(ip, self.default_score),
            is_vpn_or_proxy=ip_in_networks(ip, self.vpn_ranges),
            is_known_bad_subnet=ip_in_networks(ip, self.bad_subnets),
            source="static",
        )


class HttpReputationFeed:
    """Queries an external IP reputation service over HTTP.

    The service is expected to answer ``GET {base_url}/ip/{ip}`` with a JSON
    object carrying ``score`` (0 = malicious, 1 = clean) and the boolean flags
    ``is_vpn``, ``is_proxy`` and ``bad_subnet``.
    """

    def __init__(
        self,
        base_url: str,
        api_key: Optional[str] = None,
        timeout_seconds: float = 0.5,
        transport: Optional[httpx.BaseTransport] = None,
    ):
        headers = {"Authorization": f"Bearer {api_key}"} if api_key else {}
        self.client = httpx.Client(
            base_url=base_url.rstrip("/"),
            timeout=httpx.Timeout(timeout_seconds),
            headers=headers,
            transport=transport,
        )

    def lookup(self, ip: str) -> FeedVerdict:
        try:
            response = self.client.get(f"/ip/{ip}")
            response.raise_for_status()
            body = response.json()
            if not isinstance(body, dict):
                raise ValueError(f"expected a JSON object, got {type(body).__name__}")
            return FeedVerdict(
                score=min(max(float(body.get("score", 1.0)), 0.0), 1.0),
                is_vpn_or_proxy=bool(body.get("is_vpn")) or bool(body.get("is_proxy")),
                is_known_bad_subnet=bool(body.get("bad_subnet")),
                source="http",
            )
        except (httpx.HTTPError, TypeError, ValueError) as exc:
            raise DependencyUnavailable("reputation_feed", str(exc)) from exc

    def close(self) -> None:
        self.client.close()


class ReputationCache:
    def __init__(self) -> None:
        self._lock = Lock()
        self._entries: Dict[str, ReputationEntry] = {}

    def get(self, ip: str, now: datetime) -> Optional[ReputationEntry]:
        with self._lock:
            entry = self._entries.get(ip)
        if entry is None or not entry.is_fresh(now):
            return None
        return entry

    def put(self, entry: ReputationEntry) -> None:
        with self._lock:
            self._entries[entry.subject] = entry

    def invalidate(self, subject: str) -> int:
        """Drop entries for an IP, or for every cached IP inside a subnet."""
        with self._lock:
            if subject in self._entries:
                del self._entries[subject]
                return 1
            try:
                network = ipaddress.ip_network(subject, strict=False)
            except ValueError:
                return 0
            doomed = [ip for ip in self._entries if ip_in_networks(ip, [network])]
            for ip in doomed:
                del self._entries[ip]
            return len(doomed)

    def purge(self, now: datetime) -> int:
        with self._lock:
            doomed = [ip for ip, entry in self._entries.items() if not entry.is_fresh(now)]
            for ip in doomed:
                del self._entries[ip]
        return len(doomed)

    def __len__(self) -> int:
        return len(self._entries)


def is_suspicious_local_part(email: str) -> bool:
    local = email.rsplit("@", 1)[0]
    return any(pattern.search(local) for pattern in SUSPICIOUS_LOCAL_PARTS)


def is_suspicious_user_agent(user_agent: str) -> bool:
    if not user_agent:
        return True
    if BOT_USER_AGENT.search(user_agent):
        return True
    return not BROWSER_USER_AGENT.search(user_agent)


class ReputationEvaluator:
    def __init__(
        self,
        config: ReputationConfig,
        feed: Optional[ReputationFeed] = None,
        fingerprints: Optional[FingerprintTracker] = None,
        cache: Optional[ReputationCache] = None,
        history: Optional[OutcomeHistory] = None,
    ):
        self.config = config
        self.feed = feed or StaticReputationFeed(config.vpn_ranges, config.bad_subnets)
        self.fingerprints = fingerprints
        self.cache = cache if cache is not None else ReputationCache()
        self.history = history
        self.exempt_domains: Set[str] = set()

    def is_disposable(self, email: str) -> bool:
        domain = email_domain(email)
        if domain in self.exempt_domains:
            return False
        return any(domain == d or domain.endswith("." + d) for d in self.config.disposable_domains)

    def _ip_entry(self, ip: str, now: datetime) -> ReputationEntry:
        cached = self.cache.get(ip, now)
        if cached is not None:
            return cached
        verdict = self.feed.lookup(ip)
        internal = self._internal_score(ip, verdict.score, now)
        score = verdict.score
        if internal is not None:
            weight = self.config.internal_history_weight
            score = (1.0 - weight) * verdict.score + weight * internal
        entry = ReputationEntry(
            subject=ip,
            score=round(score, 6),
            source=verdict.source,
            computed_at=now,
            expires_at=now + self.config.cache_ttl,
            is_vpn_or_proxy=verdict.is_vpn_or_proxy,
            is_known_bad_subnet=verdict.is_known_bad_subnet,
            internal_score=internal,
        )
        self.cache.put(entry)
        return entry

    def _internal_score(self, ip: str, prior: float, now: datetime) -> Optional[float]:
        """Blendable score from the address's own recent outcomes, or None without a history source."""
        if self.history is None:
            return None
        try:
            allowed, decided = self.history.ip_outcome_counts(ip, now - self.config.internal_history_window)
        except DependencyUnavailable as exc:
            logger.warning("Attempt history unavailable for %s, using feed score only: %s", ip, exc.detail)
            return None
        return round(internal_history_score(allowed, decided, prior, self.config.internal_prior_attempts), 6)

    def evaluate(
        self,
        ip: str,
        email: str,
        fingerprint: Optional[str] = None,
        user_agent: Optional[str] = None,
        now: Optional[datetime] = None,
        challenge_threshold: Optional[float] = None,
    ) -> ReputationResult:
        now = now or datetime.now(timezone.utc)
        config = self.config
        signals = ReputationSignals(
            is_disposable_email=self.is_disposable(email),
            suspicious_email_pattern=is_suspicious_local_part(email),
            suspicious_user_agent=user_agent is not None and is_suspicious_user_agent(user_agent),
            suspicious_fingerprint=bool(self.fingerprints and self.fingerprints.is_suspicious(fingerprint, now)),
        )

        try:
            entry = self._ip_entry(ip, now)
        except DependencyUnavailable as exc:
            logger.warning("Reputation feed unavailable for %s, requiring challenge: %s", ip, exc.detail)
            signals.feed_unavailable = True
        else:
            signals.ip_reputation_score = entry.score
            signals.internal_history_score = entry.internal_score
            signals.is_vpn_or_proxy = entry.is_vpn_or_proxy
            signals.is_known_bad_subnet = entry.is_known_bad_subnet

        score = config.ip_reputation_weight * (1.0 - signals.ip_reputation_score)
        if signals.is_disposable_email:
            score += config.disposable_email_weight
        if signals.is_known_bad_subnet:
            score += config.bad_subnet_weight
        if signals.is_vpn_or_proxy:
            score += config.vpn_proxy_weight
        if signals.suspicious_email_pattern:
            score += config.email_pattern_weight
        if signals.suspicious_user_agent:
            score += config.user_agent_weight
        if signals.suspicious_fingerprint:
            score += config.fingerprint_weight
        if signals.feed_unavailable:
            threshold = config.challenge_threshold if challenge_threshold is None else challenge_threshold
            score = max(score, threshold)

        return ReputationResult(suspicion_score=round(min(score, 1.0), 6), signals=signals)

    def invalidate(self, subject: str) -> int:
        return self.cache.invalidate(subject)

    def exempt_domain(self, domain: str) -> None:
        self.exempt_domains.add(domain.lower())

    def unexempt_domain(self, domain: str) -> None:
        self.exempt_domains.discard(domain.lower())
