"""
Request fingerprint helpers for the click tracker: client IP, device, browser.

Parsing is best-effort. Anything the UA parser can't identify is recorded
as the literal "Unknown" so group-bys never see NULL for a parsed field.
"""

from dataclasses import dataclass

from starlette.requests import Request
from user_agents import parse as parse_ua

UNKNOWN = "Unknown"


@dataclass
class DeviceInfo:
    device: str = UNKNOWN
    browser: str = UNKNOWN
    os: str = UNKNOWN
    is_mobile: bool = False
    is_bot: bool = False


def client_ip(request: Request) -> str:
    """First entry of x-forwarded-for, then x-real-ip, then the socket peer."""
    forwarded = request.headers.get("x-forwarded-for")
    if forwarded:
        first = forwarded.split(",")[0].strip()
        if first:
            return first
    real_ip = request.headers.get("x-real-ip")
    if real_ip:
        return real_ip.strip()
    return request.client.host if request.client else "unknown"


def _device_label(parsed) -> str:
    brand = parsed.device.brand
    model = parsed.device.model
    if brand and model and brand != "Generic":
        return f"{brand} {model}"
    if parsed.is_tablet:
        return "tablet"
    if parsed.is_mobile:
        return "mobile"
    if parsed.is_pc:
        return "desktop"
    return UNKNOWN


def _browser_label(parsed) -> str:
    family = parsed.browser.family
    version = parsed.browser.version_string
    if family and family != "Other" and version:
        return f"{family} {version}"
    return UNKNOWN


def parse_device(ua_string: str | None) -> DeviceInfo:
    if not ua_string:
        return DeviceInfo()

    parsed = parse_ua(ua_string)
    os_family = parsed.os.family if parsed.os.family and parsed.os.family != "Other" else UNKNOWN
    return DeviceInfo(
        device=_device_label(parsed),
        browser=_browser_label(parsed),
        os=os_family,
        is_mobile=parsed.is_mobile or parsed.is_tablet,
        is_bot=parsed.is_bot,
    )
