"""Client address bucketing into fixed-size network prefixes."""

from __future__ import annotations

import ipaddress

from .errors import InvalidAddress

V4_PREFIX_LEN = 22
V6_PREFIX_LEN = 56

IPAddress = ipaddress.IPv4Address | ipaddress.IPv6Address
AddressBucket = ipaddress.IPv4Network | ipaddress.IPv6Network


def parse_ip(value: str | IPAddress) -> IPAddress:
    """Parse an address, unwrapping IPv4-mapped IPv6 into plain IPv4."""
    if isinstance(value, (ipaddress.IPv4Address, ipaddress.IPv6Address)):
        ip = value
    else:
        try:
            ip = ipaddress.ip_address(str(value).strip())
        except ValueError as exc:
            raise InvalidAddress(value) from exc
    if isinstance(ip, ipaddress.IPv6Address) and ip.ipv4_mapped is not None:
        return ip.ipv4_mapped
    return ip


def bucket(value: str | IPAddress) -> AddressBucket:
    """Return the client group network containing ``value``."""
    ip = parse_ip(value)
    if ip.version == 4:
        return ipaddress.IPv4Network((ip, V4_PREFIX_LEN), strict=False)
    return ipaddress.IPv6Network((ip, V6_PREFIX_LEN), strict=False)


def bucket_key(value: str | IPAddress) -> str:
    """Stable string key of the client group, e.g. ``173.194.36.0``."""
    return str(bucket(value).network_address)


def same_bucket(a: str | IPAddress, b: str | IPAddress) -> bool:
    return bucket(a) == bucket(b)


def normalize_ip(value: str) -> str | None:
    """Canonical string form of an address, or ``None`` if unparseable."""
    try:
        return str(parse_ip(value))
    except InvalidAddress:
        return None
