"""
Room Key Resolution

Connections are grouped by the address they come from, so devices behind
the same NAT land in the same room. Behind a reverse proxy the socket
address is the proxy's, so the first X-Forwarded-For entry is used instead
(when the proxy is trusted).

Loopback and RFC-1918 private addresses all map to one canonical key. A
relay running inside the LAN (or on localhost for tests) would otherwise
split co-located clients across rooms.
"""

import ipaddress
from typing import Optional

LOOPBACK_KEY = '127.0.0.1'

_LOCAL_NETWORKS = [
    ipaddress.ip_network('127.0.0.0/8'),
    ipaddress.ip_network('10.0.0.0/8'),
    ipaddress.ip_network('172.16.0.0/12'),
    ipaddress.ip_network('192.168.0.0/16'),
    ipaddress.ip_network('::1/128'),
]


def forwarded_address(header: Optional[str]) -> Optional[str]:
    """First address of an X-Forwarded-For header, if any."""
    if not header:
        return None
    first = header.split(',')[0].strip()
    return first or None


def normalize_address(address: str) -> str:
    """Collapse loopback and private-range addresses to LOOPBACK_KEY."""
    try:
        ip = ipaddress.ip_address(address.strip())
    except ValueError:
        # Not an IP literal (e.g. a test client host name); use as is
        return address

    if isinstance(ip, ipaddress.IPv6Address) and ip.ipv4_mapped:
        ip = ip.ipv4_mapped

    if any(ip in network for network in _LOCAL_NETWORKS if ip.version == network.version):
        return LOOPBACK_KEY
    return str(ip)


def client_address(remote_address: Optional[str], forwarded_for: Optional[str] = None,
                   trust_proxy: bool = True) -> str:
    """
    Network address used as the default room key for a connection.

    Args:
        remote_address: Socket peer address
        forwarded_for: Raw X-Forwarded-For header value
        trust_proxy: Whether to honour X-Forwarded-For
    """
    address = forwarded_address(forwarded_for) if trust_proxy else None
    if address is None:
        address = remote_address or LOOPBACK_KEY
    return normalize_address(address)
