from __future__ import annotations

import ipaddress
import logging
import re
from datetime import datetime, timedelta, timezone
from threading import Lock
from typing import Dict, Iterable, List, Optional, Tuple

from .errors import DependencyUnavailable, ValidationError
from .models import BlockEntry, ReasonCode, SubjectKind, email_domain
from .persistence import DefenseRepository
from .reputation import Network

logger = logging.getLogger(__name__)

DOMAIN_PATTERN = re.compile(r"^(?=.{1,253}$)([a-z0-9](?:[a-z0-9-]{0,61}[a-z0-9])?\.)+[a-z]{2,63}$")


def normalize_subject(subject: str) -> Tuple[str, SubjectKind]:
    """Canonical form of a block subject: an IP, a CIDR subnet or an email domain."""
    value = (subject or "").strip().lower()
    if not value:
        raise ValidationError("block subject is required", "subject")
    if "/" in value:
        try:
            return str(ipaddress.ip_network(value, strict=False)), SubjectKind.SUBNET
        except ValueError:
            raise ValidationError(f"invalid subnet: {subject}", "subject") from None
    try:
        return str(ipaddress.ip_address(value)), SubjectKind.IP
    except ValueError:
        pass
    domain = value.rsplit("@", 1)[-1]
    if not DOMAIN_PATTERN.match(domain):
        raise ValidationError(f"invalid block subject: {subject}", "subject")
    return domain, SubjectKind.DOMAIN


def _outlives(existing: BlockEntry, candidate: BlockEntry) -> bool:
    if existing.expires_at is None:
        return candidate.expires_at is not None
    return candidate.expires_at is not None and existing.expires_at > candidate.expires_at


class Blocklist:
    """Read-through view of the persisted block entries.

    Entries are keyed by their normalized subject, so blocking a subject twice
    leaves a single entry. The in-process snapshot is rebuilt after every local
    write and at most ``refresh_interval`` after a write by another instance.
    """

    def __init__(self, repository: DefenseRepository, refresh_interval: timedelta = timedelta(seconds=10)):
        self.repository = repository
        self.refresh_interval = refresh_interval
        self._lock = Lock()
        self._loaded_at: Optional[datetime] = None
        self._ips: Dict[str, BlockEntry] = {}
        self._subnets: List[Tuple[Network, BlockEntry]] = []
        self._domains: Dict[str, BlockEntry] = {}

    def refresh(self, now: Optional[datetime] = None) -> None:
        now = now or datetime.now(timezone.utc)
        entries = self.repository.list_blocks()
        ips: Dict[str, BlockEntry] = {}
        subnets: List[Tuple[Network, BlockEntry]] = []
        domains: Dict[str, BlockEntry] = {}
        for entry in entries:
            if entry.kind is SubjectKind.IP:
                ips[entry.subject] = entry
            elif entry.kind is SubjectKind.SUBNET:
                subnets.append((ipaddress.ip_network(entry.subject, strict=False), entry))
            else:
                domains[entry.subject] = entry
        with self._lock:
            self._ips, self._subnets, self._domains = ips, subnets, domains
            self._loaded_at = now

    def _ensure_fresh(self, now: datetime) -> None:
        loaded_at = self._loaded_at
        if loaded_at is not None and timedelta(0) <= now - loaded_at < self.refresh_interval:
            return
        try:
            self.refresh(now)
        except DependencyUnavailable:
            if loaded_at is None:
                raise
            logger.warning("Block list refresh failed, serving snapshot from %s", loaded_at.isoformat())

    def block(
        self,
        subject: str,
        reason: str,
        duration: Optional[timedelta] = None,
        created_by: str = "system",
        now: Optional[datetime] = None,
    ) -> BlockEntry:
        now = now or datetime.now(timezone.utc)
        normalized, kind = normalize_subject(subject)
        candidate = BlockEntry(
            subject=normalized,
            kind=kind,
            reason=reason,
            created_at=now,
            expires_at=now + duration if duration is not None else None,
            created_by=created_by,
        )
        self._ensure_fresh(now)
        existing = self.find(normalized)
        if existing is not None and existing.is_active(now) and _outlives(existing, candidate):
            return existing
        entry = self.repository.upsert_block(candidate)
        self.refresh(now)
        logger.warning(
            "Blocked %s %s until %s: %s",
            kind.value,
            normalized,
            entry.expires_at.isoformat() if entry.expires_at else "permanent",
            reason,
        )
        return entry

    def unblock(self, subject: str, now: Optional[datetime] = None) -> bool:
        normalized, kind = normalize_subject(subject)
        removed = self.repository.remove_block(normalized)
        self.refresh(now)
        if removed:
            logger.info("Unblocked %s %s", kind.value, normalized)
        return removed

    def seed_domains(self, domains: Iterable[str], reason: str, now: Optional[datetime] = None) -> int:
        now = now or datetime.now(timezone.utc)
        self._ensure_fresh(now)
        seeded = 0
        for domain in domains:
            normalized, _ = normalize_subject(domain)
            if normalized in self._domains:
                continue
            self.repository.upsert_block(
                BlockEntry(
                    subject=normalized,
                    kind=SubjectKind.DOMAIN,
                    reason=reason,
                    created_at=now,
                    created_by="seed",
                )
            )
            seeded += 1
        if seeded:
            self.refresh(now)
        return seeded

    def find(self, subject: str) -> Optional[BlockEntry]:
        with self._lock:
            return self._ips.get(subject) or self._domains.get(subject) or next(
                (entry for _, entry in self._subnets if entry.subject == subject), None
            )

    def match_ip(self, ip: str, now: datetime) -> Optional[BlockEntry]:
        self._ensure_fresh(now)
        with self._lock:
            entry = self._ips.get(ip)
            if entry is not None and entry.is_active(now):
                return entry
            subnets = list(self._subnets)
        try:
            address = ipaddress.ip_address(ip)
        except ValueError:
            return None
        for network, entry in subnets:
            if address.version == network.version and address in network and entry.is_active(now):
                return entry
        return None

    def match_domain(self, email: str, now: datetime) -> Optional[BlockEntry]:
        self._ensure_fresh(now)
        labels = email_domain(email).split(".")
        with self._lock:
            for index in range(len(labels) - 1):
                entry = self._domains.get(".".join(labels[index:]))
                if entry is not None and entry.is_active(now):
                    return entry
        return None

    def check(self, ip: str, email: str, now: Optional[datetime] = None) -> Optional[ReasonCode]:
        now = now or datetime.now(timezone.utc)
        if self.match_ip(ip, now) is not None:
            return ReasonCode.IP_BLOCKED
        if self.match_domain(email, now) is not None:
            return ReasonCode.DOMAIN_BLOCKED
        return None

    def entries(self, now: Optional[datetime] = None) -> List[BlockEntry]:
        now = now or datetime.now(timezone.utc)
        self._ensure_fresh(now)
        with self._lock:
            everything = list(self._ips.values()) + [entry for _, entry in self._subnets] + list(self._domains.values())
        return sorted((entry for entry in everything if entry.is_active(now)), key=lambda entry: entry.created_at)

    def purge(self, now: Optional[datetime] = None) -> int:
        now = now or datetime.now(timezone.utc)
        removed = self.repository.purge_blocks(now)
        self.refresh(now)
        return removed
