"""Pydantic schemas for request/response validation in linktrail.

Schema Hierarchy
=================
::
    LinkCreate (Input)
    ├─ original_url: str (validated URL)
    ├─ custom_alias: str | None (4-15 chars, [A-Za-z0-9_-])
    ├─ topic: str | None (lower-cased)
    └─ expires_at: datetime | None (must be in the future)

    LinkUpdate (Input)
    ├─ is_active: bool | None
    └─ expires_at: datetime | None

    LinkResponse (Output)          CachedLinkPayload (Redis snapshot)
    └─ link fields + short_url     └─ link fields

    RedirectEventData (Background payload)
    └─ classification + request metadata for one redirect

    AnalyticsSummary / AggregateSummary (Output)
    HealthResponse (Output)

Key Behaviours
===============
- URL validation uses the validators library for RFC compliance.
- Custom aliases are validated by ``linktrail.codes.validate_alias``.
- ``CachedLinkPayload`` is the only shape written under ``url:{code}``.
- Models are configured for ORM attribute mapping.
"""

import datetime

import validators
from pydantic import BaseModel, Field, field_validator

from linktrail.clock import as_utc, utcnow
from linktrail.codes import validate_alias
from linktrail.enums import UNKNOWN, DeviceType, HealthStatus
from linktrail.exceptions import InvalidInput

__all__ = [
    "LinkCreate",
    "LinkUpdate",
    "LinkResponse",
    "CachedLinkPayload",
    "RedirectEventData",
    "RecentEvent",
    "DeviceCounts",
    "AnalyticsSummary",
    "AggregateSummary",
    "HealthResponse",
]


def _future(value: datetime.datetime | None) -> datetime.datetime | None:
    if value is None:
        return None
    value = as_utc(value)
    if value <= utcnow():
        raise ValueError("expires_at must be in the future")
    return value


class LinkCreate(BaseModel):
    original_url: str
    custom_alias: str | None = None
    topic: str | None = None
    expires_at: datetime.datetime | None = None

    @field_validator("original_url")
    @classmethod
    def validate_url(cls, v: str) -> str:
        v = v.strip()
        if not validators.url(v):
            raise ValueError("Invalid URL provided")
        return v

    @field_validator("custom_alias")
    @classmethod
    def validate_custom_alias(cls, v: str | None) -> str | None:
        if v is None:
            return None
        try:
            return validate_alias(v.strip())
        except InvalidInput as exc:
            raise ValueError(exc.message) from exc

    @field_validator("topic")
    @classmethod
    def normalize_topic(cls, v: str | None) -> str | None:
        if v is None:
            return None
        v = v.strip().lower()
        if not v or len(v) > 64:
            raise ValueError("Topic must be between 1 and 64 characters")
        return v

    @field_validator("expires_at")
    @classmethod
    def validate_expires_at(cls, v: datetime.datetime | None) -> datetime.datetime | None:
        return _future(v)


class LinkUpdate(BaseModel):
    is_active: bool | None = None
    expires_at: datetime.datetime | None = None

    @field_validator("expires_at")
    @classmethod
    def validate_expires_at(cls, v: datetime.datetime | None) -> datetime.datetime | None:
        return _future(v)


class CachedLinkPayload(BaseModel):
    """Redis cache payload for a link, also the orchestrator's working snapshot."""

    id: int
    short_code: str
    custom_alias: str | None = None
    original_url: str
    topic: str
    owner_id: str
    clicks: int
    is_active: bool
    expires_at: datetime.datetime | None = None
    last_accessed: datetime.datetime | None = None
    created_at: datetime.datetime
    updated_at: datetime.datetime

    model_config = {"from_attributes": True}


class LinkResponse(CachedLinkPayload):
    short_url: str


class RedirectEventData(BaseModel):
    """Everything recorded for a single redirect, built from request metadata."""

    timestamp: datetime.datetime
    browser: str = UNKNOWN
    browser_version: str = UNKNOWN
    os: str = UNKNOWN
    platform: str = UNKNOWN
    device: DeviceType = DeviceType.OTHER
    country: str = UNKNOWN
    city: str = UNKNOWN
    region: str = UNKNOWN
    latitude: float | None = None
    longitude: float | None = None
    timezone: str = UNKNOWN
    ip_address: str = UNKNOWN
    referrer: str = ""
    language: str = ""


class RecentEvent(BaseModel):
    timestamp: datetime.datetime
    browser: str
    os: str
    device: DeviceType
    country: str
    city: str
    referrer: str

    model_config = {"from_attributes": True}

    @field_validator("device", mode="before")
    @classmethod
    def parse_device(cls, v: str) -> DeviceType:
        return DeviceType.from_str(v)


class DeviceCounts(BaseModel):
    desktop: int = 0
    mobile: int = 0
    tablet: int = 0
    other: int = 0


class AnalyticsSummary(BaseModel):
    short_url_id: int
    short_code: str
    redirect_count: int = 0
    last_accessed: datetime.datetime | None = None
    device_stats: DeviceCounts = Field(default_factory=DeviceCounts)
    browser_stats: dict[str, int] = Field(default_factory=dict)
    country_stats: dict[str, int] = Field(default_factory=dict)
    daily_stats: dict[str, int] = Field(default_factory=dict)
    recent_redirects: list[RecentEvent] = Field(default_factory=list)


class AggregateSummary(BaseModel):
    """Counters summed over a set of links (a topic, or everything an owner has)."""

    total_urls: int = 0
    total_clicks: int = 0
    device_stats: DeviceCounts = Field(default_factory=DeviceCounts)
    browser_stats: dict[str, int] = Field(default_factory=dict)
    country_stats: dict[str, int] = Field(default_factory=dict)
    daily_stats: dict[str, int] = Field(default_factory=dict)


class HealthResponse(BaseModel):
    status: HealthStatus
    database: HealthStatus
    cache: HealthStatus
