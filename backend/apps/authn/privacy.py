"""
Client IP handling.

Raw client IPs are never persisted. Everything written to the database or
to the audit log goes through anonymize_ip first:
- IPv4: last octet zeroed (203.0.113.42 -> 203.0.113.0)
- IPv6: trailing 80 bits zeroed (only the /48 prefix is kept)

Rate limiting needs per-host counters, so it keys on a keyed hash of the
full address instead (rate_limit_ip_key); Redis never sees the address.
"""
import hashlib
import hmac
import ipaddress
from typing import Optional

from django.conf import settings

UNKNOWN_IP = 'unknown'
IP_KEY_LENGTH = 32

IPV4_KEPT_PREFIX = 24
IPV6_KEPT_PREFIX = 48


def extract_client_ip(forwarded_for: Optional[str]) -> str:
    """
    Take the client address from an X-Forwarded-For header value.

    The first entry in the chain is the client; a missing or empty header
    yields the "unknown" sentinel.
    """
    if not forwarded_for:
        return UNKNOWN_IP
    first = forwarded_for.split(',')[0].strip()
    return first or UNKNOWN_IP


def anonymize_ip(ip: str) -> str:
    """
    One-way anonymize an IP address.

    Args:
        ip: IPv4 or IPv6 address string

    Returns:
        The address with its host part zeroed, or "unknown" if unparseable
    """
    try:
        address = ipaddress.ip_address(ip.strip())
    except (ValueError, AttributeError):
        return UNKNOWN_IP

    if isinstance(address, ipaddress.IPv6Address) and address.ipv4_mapped:
        address = address.ipv4_mapped

    prefix = IPV4_KEPT_PREFIX if address.version == 4 else IPV6_KEPT_PREFIX
    network = ipaddress.ip_network(f"{address}/{prefix}", strict=False)
    return str(network.network_address)


def rate_limit_ip_key(ip: str) -> str:
    """
    Stable per-address token for rate-limit counters.

    HMAC-SHA256 of the normalized address keyed with SECRET_KEY, so two
    hosts in the same /24 keep separate budgets while the stored key cannot
    be reversed to an address without the secret.

    Returns:
        Hex digest prefix, or "unknown" if the address is unparseable
    """
    try:
        address = ipaddress.ip_address(ip.strip())
    except (ValueError, AttributeError):
        return UNKNOWN_IP

    if isinstance(address, ipaddress.IPv6Address) and address.ipv4_mapped:
        address = address.ipv4_mapped

    digest = hmac.new(settings.SECRET_KEY.encode(), str(address).encode(), hashlib.sha256)
    return digest.hexdigest()[:IP_KEY_LENGTH]
