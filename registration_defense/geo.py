from __future__ import annotations

import ipaddress
from typing import Iterable, List, Mapping, Optional, Protocol, Tuple

from .config import GeoConfig
from .reputation import Network


class GeoResolver(Protocol):
    def country(self, ip: str) -> Optional[str]: ...


class StaticGeoResolver:
    """Resolves countries from a fixed table of CIDR ranges.

    Ranges are checked in insertion order; the first containing range wins.
    """

    def __init__(self, ranges: Optional[Mapping[str, str]] = None):
        self._ranges: List[Tuple[Network, str]] = [
            (ipaddress.ip_network(cidr, strict=False), country.upper()) for cidr, country in (ranges or {}).items()
        ]

    def add(self, cidr: str, country: str) -> None:
        self._ranges.append((ipaddress.ip_network(cidr, strict=False), country.upper()))

    def country(self, ip: str) -> Optional[str]:
        try:
            address = ipaddress.ip_address(ip)
        except ValueError:
            return None
        for network, country in self._ranges:
            if address.version == network.version and address in network:
                return country
        return None


def _upper(values: Iterable[str]) -> frozenset:
    return frozenset(value.upper() for value in values)


class GeoPolicy:
    def __init__(self, config: GeoConfig, resolver: Optional[GeoResolver] = None):
        self.allowed = _upper(config.allowed_countries)
        self.blocked = _upper(config.blocked_countries)
        self.resolver = resolver

    @property
    def enabled(self) -> bool:
        return self.resolver is not None and bool(self.allowed or self.blocked)

    def is_restricted(self, ip: str) -> bool:
        """Unresolvable addresses pass unless an allow-list is configured."""
        if not self.enabled:
            return False
        country = self.resolver.country(ip)
        if country is None:
            return bool(self.allowed)
        if country in self.blocked:
            return True
        return bool(self.allowed) and country not in self.allowed
