"""Attack pattern recognition over the recent attempt window.

Every rule is evaluated independently and may emit a pattern even when another
rule already covers the same attempts; severity aggregation is left to the
escalation controller. A pattern for the same (type, subject) pair is emitted
at most once per ``reemit_interval`` so that running detection after every
attempt does not flood the pattern log, unless its severity tier has grown
since the last emission. A distributed burst therefore reports again at every
multiple of the unique-IP threshold.
"""

from __future__ import annotations

import ipaddress
import re
from collections import defaultdict
from datetime import datetime, timezone
from statistics import pstdev
from threading import Lock
from typing import Dict, Iterable, List, Optional, Sequence, Set, Tuple
from uuid import uuid4

from .config import DetectionConfig
from .history import AttemptHistory
from .models import Attempt, AttackPattern, PatternType

MAX_CONTRIBUTORS = 200

NUMBERED_LOCAL_PART = re.compile(r"^(?P<stem>.*?)(?P<number>\d+)$")

DICTIONARY_LOCAL_PARTS = frozenset(
    {
        "admin",
        "administrator",
        "contact",
        "help",
        "info",
        "mail",
        "marketing",
        "office",
        "root",
        "sales",
        "support",
        "test",
        "user",
        "webmaster",
    }
)


def subnet_of(ip: str, bits: int) -> Optional[str]:
    try:
        address = ipaddress.ip_address(ip)
    except ValueError:
        return None
    prefix = bits if address.version == 4 else 64
    return str(ipaddress.ip_network(f"{ip}/{prefix}", strict=False))


def longest_consecutive_run(numbers: Iterable[int]) -> List[int]:
    ordered = sorted(set(numbers))
    best: List[int] = []
    current: List[int] = []
    for number in ordered:
        if current and number == current[-1] + 1:
            current.append(number)
        else:
            current = [number]
        if len(current) > len(best):
            best = list(current)
    return best


def _ids(attempts: Sequence[Attempt]) -> Tuple[str, ...]:
    return tuple(attempt.attempt_id for attempt in attempts[-MAX_CONTRIBUTORS:])


class PatternDetector:
    def __init__(self, config: DetectionConfig):
        self.config = config
        self._lock = Lock()
        self._last_emitted: Dict[Tuple[PatternType, str], Tuple[datetime, int]] = {}

    def detect(self, history: AttemptHistory, now: Optional[datetime] = None) -> List[AttackPattern]:
        now = now or datetime.now(timezone.utc)
        window = history.window(now, self.config.window)
        candidates: List[AttackPattern] = []
        candidates.extend(self.detect_credential_stuffing(window, now))
        candidates.extend(self.detect_enumeration(window, now))
        candidates.extend(self.detect_distributed(window, now))
        candidates.extend(self.detect_sequential(window, now))
        return [pattern for pattern in candidates if self._should_emit(pattern, now)]

    def _should_emit(self, pattern: AttackPattern, now: datetime) -> bool:
        key = (pattern.type, pattern.subject or "*")
        tier = self.severity_tier(pattern)
        with self._lock:
            last = self._last_emitted.get(key)
            if last is not None:
                last_at, last_tier = last
                if now - last_at < self.config.reemit_interval and tier <= last_tier:
                    return False
            self._last_emitted[key] = (now, tier)
            return True

    def severity_tier(self, pattern: AttackPattern) -> int:
        if pattern.type is PatternType.DISTRIBUTED:
            return int(pattern.details.get("unique_ips", 0)) // self.config.distributed_unique_ips
        return int(pattern.confidence * 10)

    def forget(self, now: datetime) -> int:
        with self._lock:
            stale = [key for key, (at, _) in self._last_emitted.items() if now - at > self.config.window]
            for key in stale:
                del self._last_emitted[key]
        return len(stale)

    def _pattern(
        self,
        pattern_type: PatternType,
        confidence: float,
        attempts: Sequence[Attempt],
        subject: Optional[str],
        now: datetime,
        /,
        **details: object,
    ) -> AttackPattern:
        return AttackPattern(
            pattern_id=str(uuid4()),
            type=pattern_type,
            confidence=round(min(max(confidence, 0.0), 1.0), 4),
            window_start=attempts[0].timestamp if attempts else now,
            window_end=attempts[-1].timestamp if attempts else now,
            contributing_attempt_ids=_ids(attempts),
            subject=subject,
            details=details,
        )

    def detect_credential_stuffing(self, attempts: Sequence[Attempt], now: datetime) -> List[AttackPattern]:
        minimum = self.config.stuffing_min_emails
        by_ip: Dict[str, List[Attempt]] = defaultdict(list)
        by_subnet: Dict[str, List[Attempt]] = defaultdict(list)
        for attempt in attempts:
            by_ip[attempt.source_ip].append(attempt)
            subnet = subnet_of(attempt.source_ip, self.config.stuffing_subnet_bits)
            if subnet:
                by_subnet[subnet].append(attempt)

        patterns: List[AttackPattern] = []
        groups = list(by_ip.items()) + [
            (subnet, group)
            for subnet, group in by_subnet.items()
            if len({attempt.source_ip for attempt in group}) > 1
        ]
        for subject, group in groups:
            emails = {attempt.email for attempt in group}
            if len(emails) < minimum:
                continue
            confidence = 0.5 + 0.5 * (len(emails) - minimum) / minimum
            patterns.append(
                self._pattern(
                    PatternType.CREDENTIAL_STUFFING,
                    confidence,
                    group,
                    subject,
                    now,
                    distinct_emails=len(emails),
                    source_ips=sorted({attempt.source_ip for attempt in group}),
                )
            )
        return patterns

    def detect_enumeration(self, attempts: Sequence[Attempt], now: datetime) -> List[AttackPattern]:
        numbered: Dict[str, Dict[int, List[Attempt]]] = defaultdict(lambda: defaultdict(list))
        dictionary: Dict[str, Set[str]] = defaultdict(set)
        dictionary_attempts: Dict[str, List[Attempt]] = defaultdict(list)
        for attempt in attempts:
            local, _, domain = attempt.email.lower().rpartition("@")
            match = NUMBERED_LOCAL_PART.match(local)
            if match:
                stem = f"{match.group('stem')}*@{domain}"
                numbered[stem][int(match.group("number"))].append(attempt)
            if local in DICTIONARY_LOCAL_PARTS:
                dictionary[domain].add(local)
                dictionary_attempts[domain].append(attempt)

        patterns: List[AttackPattern] = []
        minimum = self.config.enumeration_min_sequence
        for stem, by_number in numbered.items():
            run = longest_consecutive_run(by_number)
            if len(run) < minimum:
                continue
            members = sorted(
                (attempt for number in run for attempt in by_number[number]),
                key=lambda attempt: attempt.timestamp,
            )
            confidence = 0.4 + 0.2 * (len(run) - minimum + 1)
            patterns.append(
                self._pattern(PatternType.ENUMERATION, confidence, members, stem, now, sequence_length=len(run))
            )

        dictionary_min = self.config.enumeration_dictionary_min
        for domain, names in dictionary.items():
            if len(names) < dictionary_min:
                continue
            confidence = 0.5 + 0.1 * (len(names) - dictionary_min)
            patterns.append(
                self._pattern(
                    PatternType.ENUMERATION,
                    confidence,
                    dictionary_attempts[domain],
                    f"dictionary@{domain}",
                    now,
                    dictionary_names=len(names),
                )
            )
        return patterns

    def detect_distributed(self, attempts: Sequence[Attempt], now: datetime) -> List[AttackPattern]:
        recent = [attempt for attempt in attempts if now - attempt.timestamp <= self.config.distributed_window]
        unique_ips = len({attempt.source_ip for attempt in recent})
        threshold = self.config.distributed_unique_ips
        if unique_ips <= threshold:
            return []
        confidence = 0.5 + 0.5 * (unique_ips - threshold) / threshold
        return [self._pattern(PatternType.DISTRIBUTED, confidence, recent, None, now, unique_ips=unique_ips)]

    def detect_sequential(self, attempts: Sequence[Attempt], now: datetime) -> List[AttackPattern]:
        by_ip: Dict[str, List[Attempt]] = defaultdict(list)
        for attempt in attempts:
            by_ip[attempt.source_ip].append(attempt)

        patterns: List[AttackPattern] = []
        minimum = self.config.sequential_min_attempts
        for ip, group in by_ip.items():
            if len(group) < minimum:
                continue
            intervals = [
                (later.timestamp - earlier.timestamp).total_seconds() for earlier, later in zip(group, group[1:])
            ]
            jitter = pstdev(intervals)
            mean_interval = sum(intervals) / len(intervals)
            if jitter > self.config.sequential_max_jitter_seconds:
                continue
            if mean_interval > self.config.sequential_max_interval_seconds:
                continue
            confidence = 0.5 + 0.1 * (len(group) - minimum)
            patterns.append(
                self._pattern(
                    PatternType.SEQUENTIAL,
                    confidence,
                    group,
                    ip,
                    now,
                    attempts=len(group),
                    interval_jitter=round(jitter, 4),
                )
            )
        return patterns
