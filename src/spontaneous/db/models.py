"""SQLAlchemy ORM models — single source of truth for the database schema.

Declarative ORM mapping with SQLAlchemy 2.0 style (Mapped[] + mapped_column).
Alembic migrations are generated by comparing these models to the database.

Key points:
- UUID primary keys via the portable Uuid type (native UUID on PostgreSQL)
- All timestamps are timezone-aware UTC (UTCDateTime normalises stores that
  drop the offset, e.g. SQLite)
- Join requests live in their own table keyed by (broadcast_id, user_id):
  the primary key is the "one request per user per broadcast" constraint
"""

import uuid
from datetime import datetime, timezone
from typing import Optional

from sqlalchemy import (
    DateTime,
    ForeignKey,
    Index,
    String,
    Text,
    TypeDecorator,
    Uuid,
)
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column, relationship


class Base(DeclarativeBase):
    """Base class for all models."""
    pass


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def new_uuid() -> uuid.UUID:
    return uuid.uuid4()


class UTCDateTime(TypeDecorator):
    """Timezone-aware datetime that always round-trips as UTC.

    Naive values coming in are taken to be UTC already; naive values coming
    out (SQLite stores no offset) get UTC attached.
    """

    impl = DateTime(timezone=True)
    cache_ok = True

    def process_bind_param(self, value, dialect):
        if value is None:
            return None
        if value.tzinfo is None:
            return value.replace(tzinfo=timezone.utc)
        return value.astimezone(timezone.utc)

    def process_result_value(self, value, dialect):
        if value is None:
            return None
        if value.tzinfo is None:
            return value.replace(tzinfo=timezone.utc)
        return value.astimezone(timezone.utc)


# Broadcast statuses
ACTIVE = "active"
EXPIRED = "expired"

# Join request statuses
PENDING = "pending"
ACCEPTED = "accepted"
REJECTED = "rejected"


class User(Base):
    """A person who can publish broadcasts and ask to join others'."""

    __tablename__ = "users"

    id: Mapped[uuid.UUID] = mapped_column(
        Uuid, primary_key=True, default=new_uuid
    )
    username: Mapped[str] = mapped_column(String(100), nullable=False)
    email: Mapped[str] = mapped_column(String(255), unique=True, nullable=False)
    password_hash: Mapped[str] = mapped_column(String(255), nullable=False)
    created_at: Mapped[datetime] = mapped_column(UTCDateTime, default=utcnow)


class Broadcast(Base):
    """A time-bounded invitation owned by its creator.

    status only ever moves active → expired. The sweeper flips it once
    expires_at has passed; until then the service derives the effective
    status from expires_at itself.
    """

    __tablename__ = "broadcasts"
    __table_args__ = (
        Index("idx_broadcasts_status_expires", "status", "expires_at"),
        Index("idx_broadcasts_created", "created_at"),
        Index("idx_broadcasts_creator", "creator_id"),
    )

    id: Mapped[uuid.UUID] = mapped_column(
        Uuid, primary_key=True, default=new_uuid
    )
    title: Mapped[str] = mapped_column(String(200), nullable=False)
    description: Mapped[str] = mapped_column(Text, nullable=False)
    creator_id: Mapped[uuid.UUID] = mapped_column(Uuid, nullable=False)
    created_at: Mapped[datetime] = mapped_column(
        UTCDateTime, nullable=False, default=utcnow
    )
    expires_at: Mapped[datetime] = mapped_column(UTCDateTime, nullable=False)
    status: Mapped[str] = mapped_column(
        String(20), nullable=False, default=ACTIVE
    )  # active, expired

    # selectin: async sessions can't lazy-load
    join_requests: Mapped[list["JoinRequest"]] = relationship(
        back_populates="broadcast",
        order_by="JoinRequest.created_at",
        lazy="selectin",
        cascade="all, delete-orphan",
        passive_deletes=True,
    )

    def is_open(self, now: datetime) -> bool:
        """Effective status: accepts join requests right now."""
        return self.status == ACTIVE and self.expires_at > now


class JoinRequest(Base):
    """One user's request to join one broadcast, decided by the creator."""

    __tablename__ = "join_requests"

    broadcast_id: Mapped[uuid.UUID] = mapped_column(
        Uuid,
        ForeignKey("broadcasts.id", ondelete="CASCADE"),
        primary_key=True,
    )
    user_id: Mapped[uuid.UUID] = mapped_column(Uuid, primary_key=True)
    status: Mapped[str] = mapped_column(
        String(20), nullable=False, default=PENDING
    )  # pending, accepted, rejected
    created_at: Mapped[datetime] = mapped_column(
        UTCDateTime, nullable=False, default=utcnow
    )
    decided_at: Mapped[Optional[datetime]] = mapped_column(
        UTCDateTime, nullable=True
    )

    broadcast: Mapped["Broadcast"] = relationship(back_populates="join_requests")
