"""Client IP resolution from reverse-proxy headers and the peer address."""

import ipaddress
from collections.abc import Mapping

from starlette.requests import Request

REAL_IP_HEADER = "X-Real-IP"
FORWARDED_FOR_HEADER = "X-Forwarded-For"


def is_valid_ip(ip: str) -> bool:
    """Validate if string is a plain IPv4 or IPv6 address."""
    try:
        address = ipaddress.ip_address(ip)
    except ValueError:
        return False
    # Zone-scoped IPv6 literals (fe80::1%eth0) are not plain addresses
    return getattr(address, "scope_id", None) is None


def resolve_client_ip(headers: Mapping[str, str], remote_addr: str) -> str:
    """
    Pick the caller's IP out of the request headers or the peer address.

    X-Real-IP wins over X-Forwarded-For, which wins over the peer address.
    Only the first X-Forwarded-For entry is used and it is taken verbatim,
    surrounding whitespace included. The peer address is cut at its first
    colon, so bare IPv6 peers never resolve.

    Args:
        headers: Request headers. Lookups must be case-insensitive for
                 real requests; Starlette's Headers is.
        remote_addr: The peer address as "host:port", or "" if unknown.

    Returns:
        The candidate address unmodified if it parses as an IP address,
        otherwise the empty string.
    """
    real_ip = headers.get(REAL_IP_HEADER)
    forwarded = headers.get(FORWARDED_FOR_HEADER)
    if real_ip:
        ip = real_ip
    elif forwarded:
        ip = forwarded.split(",", 1)[0]
    else:
        ip = remote_addr.split(":", 1)[0]

    if not ip or not is_valid_ip(ip):
        return ""
    return ip


def remote_address(request: Request) -> str:
    """Format the request's peer as "host:port" ("" when there is none)."""
    if request.client is None:
        return ""
    return f"{request.client.host}:{request.client.port}"


def client_ip_from_request(request: Request) -> str:
    """Resolve the client IP for an incoming Starlette/FastAPI request."""
    return resolve_client_ip(request.headers, remote_address(request))
