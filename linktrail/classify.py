"""Classify a redirect request into a :class:`RedirectEventData`.

Device and browser come from the User-Agent header (``user-agents``),
geolocation from the client address (``geoip2`` against a MaxMind City
database when ``GEOIP_DATABASE_PATH`` is configured). Nothing here raises:
anything that cannot be resolved is reported as ``"Unknown"`` so the rollup
keys stay stable.
"""

import datetime
import ipaddress
import logging
from functools import lru_cache

import geoip2.database
import geoip2.errors
from user_agents import parse as parse_user_agent

from linktrail.clock import utcnow
from linktrail.config import get_settings
from linktrail.enums import UNKNOWN, DeviceType
from linktrail.schemas import RedirectEventData

__all__ = ["GeoLocation", "classify_device", "classify_request", "locate"]

logger = logging.getLogger(__name__)

_UA_PLACEHOLDERS = {"", "Other", "Generic Smartphone", "Generic Feature Phone"}


class GeoLocation:
    __slots__ = ("country", "city", "region", "latitude", "longitude", "timezone")

    def __init__(
        self,
        country: str = UNKNOWN,
        city: str = UNKNOWN,
        region: str = UNKNOWN,
        latitude: float | None = None,
        longitude: float | None = None,
        timezone: str = UNKNOWN,
    ) -> None:
        self.country = country
        self.city = city
        self.region = region
        self.latitude = latitude
        self.longitude = longitude
        self.timezone = timezone


def _known(value: str | None) -> str:
    if value is None or value in _UA_PLACEHOLDERS:
        return UNKNOWN
    return value


def classify_device(user_agent: str | None) -> DeviceType:
    if not user_agent:
        return DeviceType.OTHER
    parsed = parse_user_agent(user_agent)
    if parsed.is_bot:
        return DeviceType.OTHER
    if parsed.is_tablet:
        return DeviceType.TABLET
    if parsed.is_mobile:
        return DeviceType.MOBILE
    if parsed.is_pc:
        return DeviceType.DESKTOP
    return DeviceType.OTHER


@lru_cache(maxsize=1)
def _geoip_reader(path: str) -> geoip2.database.Reader | None:
    if not path:
        return None
    try:
        return geoip2.database.Reader(path)
    except (OSError, ValueError) as exc:
        logger.warning(f"GeoIP database unavailable at {path}: {exc}")
        return None


def locate(ip: str | None, database_path: str | None = None) -> GeoLocation:
    if not ip:
        return GeoLocation()
    try:
        address = ipaddress.ip_address(ip)
    except ValueError:
        return GeoLocation()
    if not address.is_global:
        return GeoLocation()

    path = database_path if database_path is not None else get_settings().GEOIP_DATABASE_PATH
    reader = _geoip_reader(path)
    if reader is None:
        return GeoLocation()
    try:
        found = reader.city(ip)
    except (geoip2.errors.GeoIP2Error, ValueError):
        return GeoLocation()
    return GeoLocation(
        country=found.country.iso_code or UNKNOWN,
        city=found.city.name or UNKNOWN,
        region=found.subdivisions.most_specific.name or UNKNOWN,
        latitude=found.location.latitude,
        longitude=found.location.longitude,
        timezone=found.location.time_zone or UNKNOWN,
    )


def classify_request(
    ip: str | None,
    user_agent: str | None,
    referrer: str | None = None,
    language: str | None = None,
    at: datetime.datetime | None = None,
) -> RedirectEventData:
    parsed = parse_user_agent(user_agent or "")
    geo = locate(ip)
    return RedirectEventData(
        timestamp=at or utcnow(),
        browser=_known(parsed.browser.family),
        browser_version=_known(parsed.browser.version_string),
        os=_known(parsed.os.family),
        platform=_known(parsed.device.family),
        device=classify_device(user_agent),
        country=geo.country,
        city=geo.city,
        region=geo.region,
        latitude=geo.latitude,
        longitude=geo.longitude,
        timezone=geo.timezone,
        ip_address=ip or UNKNOWN,
        referrer=referrer or "",
        language=language or "",
    )
