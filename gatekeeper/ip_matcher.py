"""
IP Matcher Module
"""

import ipaddress
from typing import Iterable, List, Set, Union

IPNetwork = Union[ipaddress.IPv4Network, ipaddress.IPv6Network]


def _parse_network(entry: str):
    """Parse a CIDR entry, returning None when it is malformed"""
    try:
        return ipaddress.ip_network(entry, strict=False)
    except (ipaddress.AddressValueError, ipaddress.NetmaskValueError, ValueError, TypeError):
        return None


def _parse_address(ip: str):
    try:
        return ipaddress.ip_address(ip)
    except (ipaddress.AddressValueError, ValueError, TypeError):
        return None


def ip_allowed(ip: str, ranges: Iterable[str]) -> bool:
    """Check whether ip is covered by any CIDR range or exact literal"""
    if not ip:
        return False

    address = None
    for entry in ranges:
        if not entry:
            continue
        entry = entry.strip()

        # Exact literals match by string equality
        if "/" not in entry:
            if entry == ip:
                return True
            continue

        network = _parse_network(entry)
        if network is None:
            continue

        if address is None:
            address = _parse_address(ip)
            if address is None:
                return False

        if address.version == network.version and address in network:
            return True

    return False


def is_private_or_loopback(ip: str) -> bool:
    """Check whether ip is a loopback or private network address"""
    address = _parse_address(ip)
    if address is None:
        return False
    return address.is_loopback or address.is_private


class CompiledRanges:
    """A range list parsed once and matched many times"""

    def __init__(self, ranges: Iterable[str]):
        self.literals: Set[str] = set()
        self.networks: List[IPNetwork] = []
        self.source: List[str] = []

        for entry in ranges:
            if not entry:
                continue
            entry = entry.strip()
            self.source.append(entry)
            if "/" not in entry:
                self.literals.add(entry)
                continue
            network = _parse_network(entry)
            if network is not None:
                self.networks.append(network)

    def __contains__(self, ip: str) -> bool:
        return self.allows(ip)

    def __bool__(self) -> bool:
        return bool(self.source)

    def allows(self, ip: str) -> bool:
        """Check if ip matches a literal or any compiled network"""
        if not ip:
            return False
        if ip in self.literals:
            return True
        if not self.networks:
            return False

        address = _parse_address(ip)
        if address is None:
            return False

        for network in self.networks:
            if address.version == network.version and address in network:
                return True
        return False


def is_valid_range(entry: str) -> bool:
    """Check that entry parses as a CIDR range or a single address"""
    if not entry:
        return False
    entry = entry.strip()
    if "/" in entry:
        return _parse_network(entry) is not None
    return _parse_address(entry) is not None
