"""Broadcast service — lifecycle and join-request coordination.

This is the CORE of the platform. Every write follows the same order:
1. Check domain rules against the database (the only source of truth)
2. Apply the change as a conditional, field-scoped statement
3. Commit
4. Invalidate the cached active listing (best effort)
5. Enqueue a notification (join requests only, best effort)

Two state machines live here:
  broadcast:     active → expired              (monotonic)
  join request:  pending → accepted | rejected (creator only)

Expiry is re-derived from expires_at at the moment of every check; the
sweeper's stored status=expired is an optimisation for queries, never
something this service waits for.

Caller identity is always an explicit argument — the verified user id,
or None for an anonymous caller.
"""

import asyncio
import uuid
from datetime import datetime, timezone
from typing import Awaitable, Callable, Optional, TypeVar

import structlog
from sqlalchemy import delete, func, insert, or_, select, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from spontaneous.cache.active_listing import ActiveListingCache
from spontaneous.config import settings
from spontaneous.db.models import (
    ACCEPTED,
    ACTIVE,
    PENDING,
    REJECTED,
    Broadcast,
    JoinRequest,
    utcnow,
)
from spontaneous.queue.notifications import JoinRequestEvent, NotificationQueue
from spontaneous.schemas.broadcast import BroadcastRead, JoinRequestRead

logger = structlog.get_logger()

T = TypeVar("T")

DECISIONS = {ACCEPTED, REJECTED}


# ═══════════════════════════════════════════════════════════
# Errors
# ═══════════════════════════════════════════════════════════


class BroadcastError(Exception):
    """Base class for domain errors returned to the caller."""


class InvalidInputError(BroadcastError):
    """A domain value is malformed."""


class InThePastError(InvalidInputError):
    """expires_at is not strictly in the future."""


class InvalidIdError(InvalidInputError):
    """An identifier can't be parsed."""


class BroadcastNotFoundError(BroadcastError):
    pass


class JoinRequestNotFoundError(BroadcastError):
    pass


class ForbiddenError(BroadcastError):
    """Authenticated, but not the broadcast's creator."""


class UnauthenticatedError(BroadcastError):
    pass


class AlreadyRequestedError(BroadcastError):
    """The caller already has a join request on this broadcast."""


class AlreadyDecidedError(BroadcastError):
    """Re-deciding is disabled and the request is no longer pending."""


class BroadcastExpiredError(BroadcastError):
    pass


class StoreTimeoutError(BroadcastError):
    """The database didn't answer within the service's time bound."""


# ═══════════════════════════════════════════════════════════
# Helpers
# ═══════════════════════════════════════════════════════════


def parse_id(value: str, what: str = "broadcast") -> uuid.UUID:
    if isinstance(value, uuid.UUID):
        return value
    try:
        return uuid.UUID(str(value))
    except ValueError:
        raise InvalidIdError(f"Invalid {what} id: {value!r}")


def as_utc(value: datetime) -> datetime:
    """Naive datetimes from clients are taken to be UTC."""
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


def _escape_like(keyword: str) -> str:
    return (
        keyword.replace("\\", "\\\\").replace("%", "\\%").replace("_", "\\_")
    )


# ═══════════════════════════════════════════════════════════
# Service
# ═══════════════════════════════════════════════════════════


class BroadcastService:
    """Business logic for broadcasts and their join requests."""

    def __init__(
        self,
        db: AsyncSession,
        *,
        cache: Optional[ActiveListingCache] = None,
        queue: Optional[NotificationQueue] = None,
        clock: Callable[[], datetime] = utcnow,
        store_timeout: Optional[float] = None,
        allow_redecide: Optional[bool] = None,
    ):
        self.db = db
        self.cache = cache
        self.queue = queue
        self.clock = clock
        self.store_timeout = (
            store_timeout if store_timeout is not None else settings.store_timeout_seconds
        )
        self.allow_redecide = (
            allow_redecide if allow_redecide is not None else settings.allow_redecide
        )

    async def _bounded(self, aw: Awaitable[T]) -> T:
        """Run one database step under the store timeout. Never retried here."""
        try:
            return await asyncio.wait_for(aw, self.store_timeout)
        except asyncio.TimeoutError:
            raise StoreTimeoutError(
                f"Database did not respond within {self.store_timeout}s"
            )

    async def _load(self, broadcast_id: uuid.UUID) -> Optional[Broadcast]:
        """Fresh read of one broadcast with its join requests.

        Writes go through Core statements that bypass the identity map, so
        everything the session holds is expired before reading back.
        """
        self.db.expire_all()
        result = await self._bounded(
            self.db.execute(
                select(Broadcast)
                .where(Broadcast.id == broadcast_id)
                .execution_options(populate_existing=True)
            )
        )
        return result.scalars().first()

    async def _invalidate_listing(self) -> None:
        if self.cache is not None:
            await self.cache.invalidate()

    def _require_caller(self, caller: Optional[str]) -> uuid.UUID:
        if not caller:
            raise UnauthenticatedError("Authentication required")
        return parse_id(caller, "user")

    # ─── Create ──────────────────────────────────────────

    async def create(
        self,
        caller: Optional[str],
        *,
        title: str,
        description: str,
        expires_at: datetime,
    ) -> BroadcastRead:
        """Publish a broadcast in 'active' status with no join requests."""
        creator_id = self._require_caller(caller)
        now = self.clock()
        expires_at = as_utc(expires_at)
        if expires_at <= now:
            raise InThePastError("expires_at must be in the future")

        broadcast = Broadcast(
            title=title,
            description=description,
            creator_id=creator_id,
            created_at=now,
            expires_at=expires_at,
            status=ACTIVE,
        )
        self.db.add(broadcast)
        await self._bounded(self.db.commit())

        await self._invalidate_listing()
        logger.info(
            "broadcast.created",
            broadcast_id=str(broadcast.id),
            creator_id=str(creator_id),
            expires_at=expires_at.isoformat(),
        )
        return BroadcastRead.model_validate(await self._load(broadcast.id))

    # ─── Read ────────────────────────────────────────────

    async def list_active(self) -> list[BroadcastRead]:
        """Broadcasts still open right now, served from the cache when possible."""
        if self.cache is not None:
            cached = await self.cache.get()
            if cached is not None:
                return cached

        now = self.clock()
        result = await self._bounded(
            self.db.execute(
                select(Broadcast)
                .where(Broadcast.status == ACTIVE, Broadcast.expires_at > now)
                .order_by(Broadcast.expires_at.asc())
            )
        )
        broadcasts = [BroadcastRead.model_validate(b) for b in result.scalars().all()]

        if self.cache is not None:
            await self.cache.set(broadcasts)
        return broadcasts

    async def get(self, broadcast_id: str) -> BroadcastRead:
        """Authoritative read, never cached."""
        broadcast = await self._load(parse_id(broadcast_id))
        if not broadcast:
            raise BroadcastNotFoundError(f"Broadcast {broadcast_id} not found")
        return BroadcastRead.model_validate(broadcast)

    async def search(
        self,
        *,
        keyword: Optional[str] = None,
        status: Optional[str] = None,
        created_from: Optional[datetime] = None,
        created_to: Optional[datetime] = None,
        page: int = 1,
        page_size: Optional[int] = None,
    ) -> tuple[list[BroadcastRead], int]:
        """Filtered, paginated search. Returns (page of broadcasts, total matches).

        Filters are applied only when provided; the keyword matches title or
        description case-insensitively.
        """
        page = max(page, 1)
        page_size = min(
            page_size or settings.default_page_size, settings.max_page_size
        )

        conditions = []
        if keyword:
            pattern = f"%{_escape_like(keyword)}%"
            conditions.append(
                or_(
                    Broadcast.title.ilike(pattern, escape="\\"),
                    Broadcast.description.ilike(pattern, escape="\\"),
                )
            )
        if status:
            conditions.append(Broadcast.status == status)
        if created_from:
            conditions.append(Broadcast.created_at >= as_utc(created_from))
        if created_to:
            conditions.append(Broadcast.created_at <= as_utc(created_to))

        total = await self._bounded(
            self.db.scalar(
                select(func.count()).select_from(Broadcast).where(*conditions)
            )
        )
        result = await self._bounded(
            self.db.execute(
                select(Broadcast)
                .where(*conditions)
                .order_by(Broadcast.created_at.desc(), Broadcast.id)
                .limit(page_size)
                .offset((page - 1) * page_size)
            )
        )
        items = [BroadcastRead.model_validate(b) for b in result.scalars().all()]
        return items, total or 0

    # ─── Update ──────────────────────────────────────────

    async def update(
        self,
        caller: Optional[str],
        broadcast_id: str,
        *,
        title: Optional[str] = None,
        description: Optional[str] = None,
        expires_at: Optional[datetime] = None,
    ) -> BroadcastRead:
        """Change the supplied fields of an active broadcast (creator only).

        One conditional UPDATE guarded by creator, status and deadline; when
        it matches nothing, a re-read tells which rule failed.
        """
        user_id = self._require_caller(caller)
        bid = parse_id(broadcast_id)
        now = self.clock()

        changes = {}
        if title is not None:
            changes["title"] = title
        if description is not None:
            changes["description"] = description
        if expires_at is not None:
            expires_at = as_utc(expires_at)
            if expires_at <= now:
                # Missing broadcast and foreign caller take precedence
                self._check_owner(await self._load(bid), bid, user_id)
                raise InThePastError("expires_at must be in the future")
            changes["expires_at"] = expires_at

        if not changes:
            broadcast = await self._load(bid)
            self._check_mutable(broadcast, bid, user_id, now)
            return BroadcastRead.model_validate(broadcast)

        result = await self._bounded(
            self.db.execute(
                update(Broadcast)
                .where(
                    Broadcast.id == bid,
                    Broadcast.creator_id == user_id,
                    Broadcast.status == ACTIVE,
                    Broadcast.expires_at > now,
                )
                .values(**changes)
                .execution_options(synchronize_session=False)
            )
        )
        if result.rowcount == 0:
            await self.db.rollback()
            self._check_mutable(await self._load(bid), bid, user_id, now)
            # Rules passed on re-read: the row changed underneath us
            raise BroadcastExpiredError(f"Broadcast {bid} is no longer active")

        await self._bounded(self.db.commit())
        await self._invalidate_listing()
        logger.info(
            "broadcast.updated", broadcast_id=str(bid), fields=sorted(changes)
        )
        return BroadcastRead.model_validate(await self._load(bid))

    @staticmethod
    def _check_owner(
        broadcast: Optional[Broadcast], bid: uuid.UUID, user_id: uuid.UUID
    ) -> None:
        if broadcast is None:
            raise BroadcastNotFoundError(f"Broadcast {bid} not found")
        if broadcast.creator_id != user_id:
            raise ForbiddenError("Only the creator can modify this broadcast")

    @classmethod
    def _check_mutable(
        cls,
        broadcast: Optional[Broadcast],
        bid: uuid.UUID,
        user_id: uuid.UUID,
        now: datetime,
    ) -> None:
        cls._check_owner(broadcast, bid, user_id)
        if not broadcast.is_open(now):
            raise BroadcastExpiredError(f"Broadcast {bid} has expired")

    # ─── Delete ──────────────────────────────────────────

    async def delete(self, caller: Optional[str], broadcast_id: str) -> None:
        """Permanently remove a broadcast and its join requests (creator only)."""
        user_id = self._require_caller(caller)
        bid = parse_id(broadcast_id)

        result = await self._bounded(
            self.db.execute(
                delete(Broadcast)
                .where(Broadcast.id == bid, Broadcast.creator_id == user_id)
                .execution_options(synchronize_session=False)
            )
        )
        if result.rowcount == 0:
            await self.db.rollback()
            broadcast = await self._load(bid)
            if broadcast is None:
                raise BroadcastNotFoundError(f"Broadcast {bid} not found")
            raise ForbiddenError("Only the creator can delete this broadcast")

        # Stores without enforced foreign keys don't cascade
        await self._bounded(
            self.db.execute(
                delete(JoinRequest)
                .where(JoinRequest.broadcast_id == bid)
                .execution_options(synchronize_session=False)
            )
        )
        await self._bounded(self.db.commit())

        await self._invalidate_listing()
        logger.info("broadcast.deleted", broadcast_id=str(bid))

    # ─── Join requests ───────────────────────────────────

    async def request_join(
        self, caller: Optional[str], broadcast_id: str
    ) -> JoinRequestRead:
        """Ask to join an open broadcast. At most one request per user.

        The broadcast row is locked while the pending request is inserted,
        and the (broadcast_id, user_id) primary key turns a concurrent
        duplicate into an IntegrityError for the loser.
        """
        user_id = self._require_caller(caller)
        bid = parse_id(broadcast_id)
        now = self.clock()

        self.db.expire_all()
        result = await self._bounded(
            self.db.execute(
                select(Broadcast)
                .where(Broadcast.id == bid)
                .with_for_update()
                .execution_options(populate_existing=True)
            )
        )
        broadcast = result.scalars().first()
        if not broadcast:
            await self.db.rollback()
            raise BroadcastNotFoundError(f"Broadcast {bid} not found")

        if not broadcast.is_open(now):
            await self.db.rollback()
            raise BroadcastExpiredError("Broadcast has expired")

        if any(jr.user_id == user_id for jr in broadcast.join_requests):
            await self.db.rollback()
            raise AlreadyRequestedError("Join request already sent")

        try:
            await self._bounded(
                self.db.execute(
                    insert(JoinRequest).values(
                        broadcast_id=bid,
                        user_id=user_id,
                        status=PENDING,
                        created_at=now,
                    )
                )
            )
            await self._bounded(self.db.commit())
        except IntegrityError:
            await self.db.rollback()
            raise AlreadyRequestedError("Join request already sent")

        logger.info(
            "join_request.created", broadcast_id=str(bid), user_id=str(user_id)
        )

        # Persisted first; the notification is best effort from here on
        await self._enqueue_notification(bid, user_id)
        await self._invalidate_listing()

        return JoinRequestRead(user_id=user_id, status=PENDING, created_at=now)

    async def _enqueue_notification(
        self, broadcast_id: uuid.UUID, user_id: uuid.UUID
    ) -> None:
        if self.queue is None:
            logger.warning(
                "notification.queue_unavailable",
                broadcast_id=str(broadcast_id),
                requester_id=str(user_id),
            )
            return
        event = JoinRequestEvent(
            broadcast_id=str(broadcast_id), requester_id=str(user_id)
        )
        try:
            await self.queue.enqueue(event)
        except Exception as e:
            logger.error(
                "notification.enqueue_failed",
                broadcast_id=str(broadcast_id),
                requester_id=str(user_id),
                error=str(e),
            )

    async def decide_join_request(
        self,
        caller: Optional[str],
        broadcast_id: str,
        requester_id: str,
        decision: str,
    ) -> JoinRequestRead:
        """Creator accepts or rejects one join request.

        Whether an already-decided request can be overwritten depends on
        allow_redecide; with it off only pending requests match the update.
        """
        user_id = self._require_caller(caller)
        bid = parse_id(broadcast_id)
        rid = parse_id(requester_id, "user")
        if decision not in DECISIONS:
            raise InvalidInputError(
                f"decision must be one of {sorted(DECISIONS)}, got {decision!r}"
            )

        broadcast = await self._load(bid)
        if not broadcast:
            raise BroadcastNotFoundError(f"Broadcast {bid} not found")
        if broadcast.creator_id != user_id:
            raise ForbiddenError("Only the creator can decide join requests")

        now = self.clock()
        stmt = (
            update(JoinRequest)
            .where(JoinRequest.broadcast_id == bid, JoinRequest.user_id == rid)
            .values(status=decision, decided_at=now)
            .execution_options(synchronize_session=False)
        )
        if not self.allow_redecide:
            stmt = stmt.where(JoinRequest.status == PENDING)

        result = await self._bounded(self.db.execute(stmt))
        if result.rowcount == 0:
            await self.db.rollback()
            # Classify against a fresh read; the first one may be stale
            self._explain_undecided(await self._load(bid), bid, rid)

        await self._bounded(self.db.commit())
        await self._invalidate_listing()
        logger.info(
            "join_request.decided",
            broadcast_id=str(bid),
            user_id=str(rid),
            decision=decision,
        )

        self.db.expire_all()
        jr = await self._bounded(
            self.db.scalar(
                select(JoinRequest).where(
                    JoinRequest.broadcast_id == bid, JoinRequest.user_id == rid
                )
            )
        )
        return JoinRequestRead.model_validate(jr)

    def _explain_undecided(
        self,
        broadcast: Optional[Broadcast],
        bid: uuid.UUID,
        rid: uuid.UUID,
    ) -> None:
        """Raise the error for a decision UPDATE that matched no row."""
        if broadcast is None:
            raise BroadcastNotFoundError(f"Broadcast {bid} not found")
        jr = next((j for j in broadcast.join_requests if j.user_id == rid), None)
        if jr is None:
            raise JoinRequestNotFoundError("Join request not found")
        if not self.allow_redecide and jr.status != PENDING:
            raise AlreadyDecidedError(f"Join request is already {jr.status}")
        # Still decidable on re-read: it was removed and re-created meanwhile
        raise JoinRequestNotFoundError("Join request changed while deciding")
