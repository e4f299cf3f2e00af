"""
Geo lookup from IP.

Disabled unless TATAMI_GEOIP_URL is set (e.g. "http://ip-api.com/json/{ip}").
The lookup is on the click path, so it carries a short timeout and never
raises: any failure yields an empty GeoInfo and a warning.
"""

import ipaddress
from dataclasses import dataclass

import httpx

from tatami.config import get_settings

import structlog

logger = structlog.get_logger()


@dataclass
class GeoInfo:
    country: str | None = None
    city: str | None = None


def _is_public(ip: str) -> bool:
    try:
        addr = ipaddress.ip_address(ip)
    except ValueError:
        return False
    return not (addr.is_private or addr.is_loopback or addr.is_link_local
                or addr.is_reserved or addr.is_multicast or addr.is_unspecified)


async def lookup_geo(ip: str) -> GeoInfo:
    settings = get_settings()
    if not settings.geoip_url or not _is_public(ip):
        return GeoInfo()

    url = settings.geoip_url.format(ip=ip)
    try:
        async with httpx.AsyncClient(timeout=settings.geoip_timeout_seconds) as client:
            resp = await client.get(url)
        resp.raise_for_status()
        payload = resp.json()
    except (httpx.HTTPError, ValueError) as exc:
        logger.warning("geo_lookup_failed", ip=ip, error=str(exc))
        return GeoInfo()

    return GeoInfo(
        country=payload.get("country") or payload.get("country_name"),
        city=payload.get("city"),
    )
