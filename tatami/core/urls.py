"""Redirect-target validation (open-redirect guard)."""

import ipaddress
from urllib.parse import urlsplit

from tatami.core.errors import APIError

BLOCKED_HOSTS = {"localhost", "0.0.0.0", "metadata.google.internal"}


def _is_internal_host(host: str) -> bool:
    host = host.lower().rstrip(".")
    if host in BLOCKED_HOSTS or host.endswith(".localhost") or host.endswith(".internal"):
        return True
    try:
        addr = ipaddress.ip_address(host)
    except ValueError:
        return False
    return addr.is_private or addr.is_loopback or addr.is_link_local or addr.is_unspecified


def validate_absolute_url(url: str, field: str = "url") -> str:
    """Only http/https, and never an internal address."""
    parts = urlsplit(url)
    if parts.scheme not in ("http", "https") or not parts.hostname:
        raise APIError(400, f"{field} must start with https:// or http://")
    if _is_internal_host(parts.hostname):
        raise APIError(400, f"{field} cannot point to internal addresses")
    return url


def validate_target_url(url: str, field: str = "target_url") -> str:
    """A site-relative path ("/masters") or an absolute public http(s) URL."""
    url = url.strip()
    if not url:
        raise APIError(400, f"{field} is required")
    if url.startswith("/"):
        # "//host" and "/\host" are protocol-relative in browsers
        if url.startswith("//") or url.startswith("/\\"):
            raise APIError(400, f"{field} must be a path or an http(s) URL")
        return url
    return validate_absolute_url(url, field)
