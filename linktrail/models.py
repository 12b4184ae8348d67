"""SQLAlchemy ORM models for linktrail.

Data Model Layout
=================
::
    links
    ├─ id (PK)
    ├─ short_code (VARCHAR(20) UNIQUE, INDEXED)
    ├─ custom_alias (VARCHAR(20) UNIQUE, NULL)
    ├─ original_url (TEXT)
    ├─ url_hash (CHAR(64) sha256 of original_url, UNIQUE with owner_id)
    ├─ topic (VARCHAR(64), INDEXED)
    ├─ owner_id (VARCHAR(64), INDEXED with created_at)
    ├─ clicks (INTEGER DEFAULT 0)
    ├─ last_accessed / expires_at (TIMESTAMPTZ NULL)
    ├─ is_active (BOOLEAN DEFAULT TRUE)
    └─ created_at / updated_at

    analytics                       (1:1 with links)
    ├─ short_url_id (FK links.id UNIQUE)
    ├─ redirect_count
    ├─ desktop_count / mobile_count / tablet_count / other_count
    └─ last_accessed

    analytics_rollups               (keyed counters)
    └─ PK (short_url_id, dimension, bucket) -> count

    redirect_events                 (bounded raw log, newest N per link)

Key Behaviours
===============
- short_code uniqueness is enforced by the database and is the final
  arbiter for alias races.
- ``(owner_id, url_hash)`` is unique, so one owner never holds two links for
  the same URL, even when identical requests race.
- Counters are only ever incremented with ``column + 1`` statements.
- Links are never deleted; expiry is evaluated at read time.

Classes:
    Link:  A shortened URL with ownership, expiry and click tracking.
    Analytics:  Per-link redirect counters and device rollup.
    AnalyticsRollup:  Per-link keyed counter (browser / country / day).
    RedirectEvent:  One recorded redirect.
"""

import datetime

from sqlalchemy import (
    Boolean,
    DateTime,
    Float,
    ForeignKey,
    Index,
    Integer,
    String,
    Text,
    func,
)
from sqlalchemy.orm import Mapped, mapped_column

from linktrail.database import Base

__all__ = ["Link", "Analytics", "AnalyticsRollup", "RedirectEvent"]


class Link(Base):
    __tablename__ = "links"

    id: Mapped[int] = mapped_column(primary_key=True, autoincrement=True)
    short_code: Mapped[str] = mapped_column(String(20), unique=True, index=True, nullable=False)
    custom_alias: Mapped[str | None] = mapped_column(String(20), unique=True, nullable=True)
    original_url: Mapped[str] = mapped_column(Text, nullable=False)
    url_hash: Mapped[str] = mapped_column(String(64), nullable=False)
    topic: Mapped[str] = mapped_column(String(64), index=True, nullable=False, default="uncategorized")
    owner_id: Mapped[str] = mapped_column(String(64), nullable=False)
    clicks: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    last_accessed: Mapped[datetime.datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    is_active: Mapped[bool] = mapped_column(Boolean, default=True, nullable=False)
    expires_at: Mapped[datetime.datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    created_at: Mapped[datetime.datetime] = mapped_column(
        DateTime(timezone=True), server_default=func.now(), nullable=False
    )
    updated_at: Mapped[datetime.datetime] = mapped_column(
        DateTime(timezone=True), server_default=func.now(), onupdate=func.now(), nullable=False
    )

    __table_args__ = (
        Index("ix_links_owner_created", "owner_id", "created_at"),
        Index("uq_links_owner_url_hash", "owner_id", "url_hash", unique=True),
    )

    def __repr__(self) -> str:
        return f"<Link(id={self.id}, short_code='{self.short_code}', clicks={self.clicks})>"


class Analytics(Base):
    __tablename__ = "analytics"

    id: Mapped[int] = mapped_column(primary_key=True, autoincrement=True)
    short_url_id: Mapped[int] = mapped_column(
        ForeignKey("links.id"), unique=True, index=True, nullable=False
    )
    redirect_count: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    desktop_count: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    mobile_count: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    tablet_count: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    other_count: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    last_accessed: Mapped[datetime.datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    created_at: Mapped[datetime.datetime] = mapped_column(
        DateTime(timezone=True), server_default=func.now(), nullable=False
    )

    def __repr__(self) -> str:
        return f"<Analytics(short_url_id={self.short_url_id}, redirect_count={self.redirect_count})>"


class AnalyticsRollup(Base):
    __tablename__ = "analytics_rollups"

    short_url_id: Mapped[int] = mapped_column(ForeignKey("links.id"), primary_key=True)
    dimension: Mapped[str] = mapped_column(String(16), primary_key=True)
    bucket: Mapped[str] = mapped_column(String(128), primary_key=True)
    count: Mapped[int] = mapped_column(Integer, default=0, nullable=False)

    def __repr__(self) -> str:
        return f"<AnalyticsRollup({self.short_url_id}, {self.dimension}={self.bucket}, count={self.count})>"


class RedirectEvent(Base):
    __tablename__ = "redirect_events"

    id: Mapped[int] = mapped_column(primary_key=True, autoincrement=True)
    short_url_id: Mapped[int] = mapped_column(ForeignKey("links.id"), nullable=False)
    timestamp: Mapped[datetime.datetime] = mapped_column(DateTime(timezone=True), nullable=False)
    browser: Mapped[str] = mapped_column(String(64), nullable=False)
    browser_version: Mapped[str] = mapped_column(String(32), nullable=False)
    os: Mapped[str] = mapped_column(String(64), nullable=False)
    platform: Mapped[str] = mapped_column(String(64), nullable=False)
    device: Mapped[str] = mapped_column(String(16), nullable=False)
    country: Mapped[str] = mapped_column(String(64), nullable=False)
    city: Mapped[str] = mapped_column(String(128), nullable=False)
    region: Mapped[str] = mapped_column(String(128), nullable=False)
    latitude: Mapped[float | None] = mapped_column(Float, nullable=True)
    longitude: Mapped[float | None] = mapped_column(Float, nullable=True)
    timezone: Mapped[str] = mapped_column(String(64), nullable=False)
    ip_address: Mapped[str] = mapped_column(String(64), nullable=False)
    referrer: Mapped[str] = mapped_column(Text, nullable=False, default="")
    language: Mapped[str] = mapped_column(String(128), nullable=False, default="")

    __table_args__ = (Index("ix_redirect_events_link_id", "short_url_id", "id"),)

    def __repr__(self) -> str:
        return f"<RedirectEvent(short_url_id={self.short_url_id}, device='{self.device}')>"
