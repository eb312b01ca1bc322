"""
IP address helpers.

Rules are stored and compared in normalized form, so "::ffff:203.0.113.5",
"203.0.113.5:443" and " 203.0.113.5 " all match a rule for "203.0.113.5".
"""

import ipaddress

_MAPPED_PREFIX = "::ffff:"


def normalize_ip(ip: str | None) -> str | None:
    """Canonical string form of an address, or None for empty input.

    Strips whitespace, brackets, the IPv4-mapped IPv6 prefix and an IPv4 port.
    Unparseable input is returned trimmed and lowercased so callers can still
    compare it verbatim.
    """
    if not ip or not isinstance(ip, str):
        return None

    ip = ip.strip().lower()
    if not ip or ip in ("undefined", "null", "unknown"):
        return None

    if ip.startswith("[") and "]" in ip:
        ip = ip[1:ip.index("]")]

    if ip.startswith(_MAPPED_PREFIX):
        candidate = ip[len(_MAPPED_PREFIX):]
        if _is_ipv4(candidate):
            return candidate

    # IPv4 with port ("1.2.3.4:8080"); IPv6 has more than one colon
    if ip.count(":") == 1:
        host, _, _port = ip.partition(":")
        if _is_ipv4(host):
            ip = host

    try:
        addr = ipaddress.ip_address(ip)
    except ValueError:
        return ip

    if isinstance(addr, ipaddress.IPv6Address) and addr.ipv4_mapped is not None:
        return str(addr.ipv4_mapped)
    return str(addr)


def _is_ipv4(value: str) -> bool:
    try:
        ipaddress.IPv4Address(value)
    except ValueError:
        return False
    return True


def is_valid_ip(ip: str | None) -> bool:
    if not ip or not isinstance(ip, str):
        return False
    try:
        ipaddress.ip_address(ip.strip())
    except ValueError:
        return False
    return True


def is_private_ip(ip: str | None) -> bool:
    """Private, loopback, link-local, multicast, reserved or unspecified."""
    ip = normalize_ip(ip)
    if not ip:
        return False
    try:
        addr = ipaddress.ip_address(ip)
    except ValueError:
        return False
    return (
        addr.is_private
        or addr.is_loopback
        or addr.is_link_local
        or addr.is_multicast
        or addr.is_reserved
        or addr.is_unspecified
    )


def is_loopback_ip(ip: str | None) -> bool:
    if ip and ip.strip().lower() == "localhost":
        return True
    ip = normalize_ip(ip)
    if not ip:
        return False
    try:
        return ipaddress.ip_address(ip).is_loopback
    except ValueError:
        return False

