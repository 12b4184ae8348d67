"""Link Store: durable CRUD over the ``links`` table.

The store is the single source of truth for short code uniqueness. Callers
may pre-check availability, but only the unique constraint on insert decides
an alias race; the loser gets :class:`AliasTaken`.

Every call is bounded by ``STORE_TIMEOUT_SECONDS``. Timeouts and connection
failures surface as :class:`DependencyUnavailable` so the redirect path can
answer 503 instead of mistaking an outage for an unknown code.

Cache obligations of the mutating methods (the store never touches Redis
itself, the service layer does):

- ``create_if_absent``  -> owner listing keys
- ``update_link``       -> ``url:{code}`` and owner listing keys
- ``deactivate_expired``-> ``url:{code}`` of every returned code
- ``increment_clicks``  -> none; cached click counts may lag
"""

import asyncio
import datetime
import hashlib
import logging
from collections.abc import Awaitable
from typing import Any, Protocol, TypeVar

from sqlalchemy import ColumnElement, and_, or_, select, update
from sqlalchemy.exc import DBAPIError, IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from linktrail.clock import as_utc, utcnow
from linktrail.config import get_settings
from linktrail.exceptions import (
    AliasTaken,
    DependencyUnavailable,
    DuplicateKey,
    Expired,
    Inactive,
    NotFound,
)
from linktrail.models import Link

__all__ = ["LinkStore", "resolvable_clause", "ensure_resolvable", "url_hash"]

logger = logging.getLogger(__name__)

T = TypeVar("T")


def url_hash(original_url: str) -> str:
    return hashlib.sha256(original_url.encode("utf-8")).hexdigest()


class _LinkState(Protocol):
    short_code: str
    is_active: bool
    expires_at: datetime.datetime | None


def resolvable_clause(now: datetime.datetime) -> ColumnElement[bool]:
    return and_(Link.is_active.is_(True), or_(Link.expires_at.is_(None), Link.expires_at > now))


def ensure_resolvable(link: _LinkState, now: datetime.datetime | None = None) -> None:
    """Raise :class:`Inactive` or :class:`Expired` unless ``link`` may be redirected to.

    Works on ORM rows and on cached snapshots alike.
    """
    now = now or utcnow()
    if not link.is_active:
        raise Inactive(f"Short URL '{link.short_code}' is inactive")
    if link.expires_at is not None and as_utc(link.expires_at) <= now:
        raise Expired(f"Short URL '{link.short_code}' has expired")


class LinkStore:
    def __init__(self, session: AsyncSession, timeout: float | None = None) -> None:
        self._session = session
        self._timeout = timeout if timeout is not None else get_settings().STORE_TIMEOUT_SECONDS

    async def _guard(self, operation: Awaitable[T], what: str) -> T:
        try:
            return await asyncio.wait_for(operation, timeout=self._timeout)
        except IntegrityError:
            raise
        except (asyncio.TimeoutError, OSError, DBAPIError) as exc:
            logger.error(f"Store {what} failed: {exc!r}")
            raise DependencyUnavailable("store", f"Link store unavailable during {what}") from exc

    async def _scalar(self, statement: Any, what: str) -> Link | None:
        result = await self._guard(self._session.execute(statement), what)
        return result.scalar_one_or_none()

    async def find_by_code(self, code: str) -> Link:
        link = await self._scalar(select(Link).where(Link.short_code == code), "find_by_code")
        if link is None:
            raise NotFound(f"Short URL '{code}' not found")
        return link

    async def find_active_by_code(self, code: str, now: datetime.datetime | None = None) -> Link:
        statement = select(Link).where(Link.short_code == code, resolvable_clause(now or utcnow()))
        link = await self._scalar(statement, "find_active_by_code")
        if link is None:
            raise NotFound(f"Short URL '{code}' not found or not resolvable")
        return link

    async def code_exists(self, code: str) -> bool:
        statement = select(Link.id).where(Link.short_code == code)
        result = await self._guard(self._session.execute(statement), "code_exists")
        return result.first() is not None

    async def find_owned(self, original_url: str, owner_id: str) -> Link | None:
        statement = select(Link).where(
            Link.owner_id == owner_id,
            Link.url_hash == url_hash(original_url),
            Link.original_url == original_url,
        )
        return await self._scalar(statement, "find_owned")

    async def create_if_absent(
        self,
        original_url: str,
        owner_id: str,
        short_code: str,
        custom_alias: str | None = None,
        topic: str | None = None,
        expires_at: datetime.datetime | None = None,
    ) -> tuple[Link, bool]:
        """Insert a link unless the owner already shortened ``original_url``.

        Returns:
            ``(link, created)``; ``created`` is False when the owner's prior
            link for the same URL is returned instead.

        A concurrent request for the same owner and URL loses on the
        ``(owner_id, url_hash)`` unique index; the winner's row is then
        returned as if the pre-check had found it.

        Raises:
            AliasTaken: ``custom_alias`` lost the unique constraint.
            DuplicateKey: a generated ``short_code`` collided on insert.
        """
        existing = await self.find_owned(original_url, owner_id)
        if existing is not None:
            return existing, False

        link = Link(
            short_code=short_code,
            custom_alias=custom_alias,
            original_url=original_url,
            url_hash=url_hash(original_url),
            topic=topic or "uncategorized",
            owner_id=owner_id,
            clicks=0,
            is_active=True,
            expires_at=expires_at,
        )
        self._session.add(link)
        try:
            await self._guard(self._session.commit(), "create")
        except IntegrityError as exc:
            await self._session.rollback()
            existing = await self.find_owned(original_url, owner_id)
            if existing is not None:
                return existing, False
            if custom_alias is not None:
                raise AliasTaken(f"Custom alias '{custom_alias}' is already taken") from exc
            raise DuplicateKey(f"Short code '{short_code}' collision detected") from exc
        await self._guard(self._session.refresh(link), "refresh")
        return link, True

    async def increment_clicks(self, link_id: int, at: datetime.datetime | None = None) -> None:
        statement = (
            update(Link)
            .where(Link.id == link_id)
            .values(clicks=Link.clicks + 1, last_accessed=at or utcnow())
        )
        await self._guard(self._session.execute(statement), "increment_clicks")
        await self._guard(self._session.commit(), "increment_clicks")

    async def list_by_owner(self, owner_id: str, topic: str | None = None) -> list[Link]:
        statement = select(Link).where(Link.owner_id == owner_id)
        if topic is not None:
            statement = statement.where(Link.topic == topic)
        statement = statement.order_by(Link.created_at.desc(), Link.id.desc())
        result = await self._guard(self._session.execute(statement), "list_by_owner")
        return list(result.scalars().all())

    async def update_link(
        self,
        code: str,
        owner_id: str,
        is_active: bool | None = None,
        expires_at: datetime.datetime | None = None,
    ) -> Link:
        link = await self.find_by_code(code)
        if link.owner_id != owner_id:
            raise NotFound(f"Short URL '{code}' not found")
        if is_active is not None:
            link.is_active = is_active
        if expires_at is not None:
            link.expires_at = expires_at
        await self._guard(self._session.commit(), "update_link")
        await self._guard(self._session.refresh(link), "refresh")
        return link

    async def deactivate_expired(self, now: datetime.datetime | None = None) -> list[str]:
        now = now or utcnow()
        statement = select(Link.id, Link.short_code).where(
            Link.is_active.is_(True), Link.expires_at.is_not(None), Link.expires_at <= now
        )
        rows = (await self._guard(self._session.execute(statement), "deactivate_expired")).all()
        if not rows:
            return []
        await self._guard(
            self._session.execute(
                update(Link).where(Link.id.in_([row.id for row in rows])).values(is_active=False)
            ),
            "deactivate_expired",
        )
        await self._guard(self._session.commit(), "deactivate_expired")
        return [row.short_code for row in rows]
