"""Shared enums for the linktrail application.

This module defines all status and state enums used across the codebase.
Using enums instead of string literals provides type safety and prevents typos.
"""

from enum import StrEnum

__all__ = [
    "HealthStatus",
    "RequestStatus",
    "CacheStatus",
    "LookupSource",
    "DeviceType",
    "RollupDimension",
    "UNKNOWN",
]

# Sentinel for classification fields that could not be resolved. Keeps rollup keys stable.
UNKNOWN = "Unknown"


class HealthStatus(StrEnum):
    """Health check status values."""

    HEALTHY = "healthy"
    UNHEALTHY = "unhealthy"


class RequestStatus(StrEnum):
    """Request status values for metrics and logging."""

    SUCCESS = "success"
    CONFLICT = "conflict"
    ERROR = "error"
    NOT_FOUND = "not_found"
    GONE = "gone"
    UNAVAILABLE = "unavailable"


class CacheStatus(StrEnum):
    """Cache status values for metrics."""

    HIT = "true"
    MISS = "false"


class LookupSource(StrEnum):
    """Where a redirect lookup was answered from."""

    CACHE = "cache"
    STORE = "store"


class DeviceType(StrEnum):
    """Device buckets tracked by the analytics rollups."""

    DESKTOP = "desktop"
    MOBILE = "mobile"
    TABLET = "tablet"
    OTHER = "other"

    @classmethod
    def from_str(cls, value: str) -> "DeviceType":
        """Safely parse from string, falling back to OTHER for unknown values."""
        try:
            return cls(value)
        except ValueError:
            return cls.OTHER


class RollupDimension(StrEnum):
    """Keyed rollup dimensions stored in ``analytics_rollups``."""

    BROWSER = "browser"
    COUNTRY = "country"
    DAY = "day"
