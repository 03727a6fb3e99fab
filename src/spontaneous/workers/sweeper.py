"""Expiry sweeper — marks broadcasts past their deadline as expired.

Runs on a fixed period, independent of request traffic. Each run is a
single set-based statement:

  UPDATE broadcasts SET status = 'expired'
  WHERE status = 'active' AND expires_at <= now

so overlapping runs (two API processes, or a standalone sweeper next to
one) can't lose updates: a row already expired simply doesn't match.
The cached active listing is dropped whenever a run changed anything.

Optionally the sweeper also purges broadcasts that expired more than
purge_after_days ago, together with their join requests.
"""

import asyncio
from datetime import datetime, timedelta
from typing import Callable, Optional

import structlog
from sqlalchemy import delete, select, update
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from spontaneous.cache.active_listing import ActiveListingCache
from spontaneous.config import settings
from spontaneous.db.models import ACTIVE, EXPIRED, Broadcast, JoinRequest, utcnow

logger = structlog.get_logger()


async def expire_due(db: AsyncSession, now: datetime) -> int:
    """Flip every active broadcast whose deadline has passed. Returns the count."""
    result = await db.execute(
        update(Broadcast)
        .where(Broadcast.status == ACTIVE, Broadcast.expires_at <= now)
        .values(status=EXPIRED)
        .execution_options(synchronize_session=False)
    )
    await db.commit()
    return result.rowcount or 0


async def purge_expired(db: AsyncSession, cutoff: datetime) -> int:
    """Physically delete broadcasts that expired before cutoff."""
    stale = (
        select(Broadcast.id)
        .where(Broadcast.status == EXPIRED, Broadcast.expires_at <= cutoff)
        .scalar_subquery()
    )
    await db.execute(
        delete(JoinRequest)
        .where(JoinRequest.broadcast_id.in_(stale))
        .execution_options(synchronize_session=False)
    )
    result = await db.execute(
        delete(Broadcast)
        .where(Broadcast.status == EXPIRED, Broadcast.expires_at <= cutoff)
        .execution_options(synchronize_session=False)
    )
    await db.commit()
    return result.rowcount or 0


class ExpirySweeper:
    """Background worker that expires broadcasts on a fixed period.

    Usage:
        sweeper = ExpirySweeper(async_session_factory, cache=cache)
        asyncio.create_task(sweeper.run_loop())
    """

    def __init__(
        self,
        session_factory: async_sessionmaker,
        *,
        cache: Optional[ActiveListingCache] = None,
        interval: Optional[float] = None,
        purge_after_days: Optional[int] = None,
        clock: Callable[[], datetime] = utcnow,
    ):
        self.session_factory = session_factory
        self.cache = cache
        self.interval = interval or settings.sweep_interval_seconds
        self.purge_after_days = (
            purge_after_days if purge_after_days is not None else settings.purge_after_days
        )
        self.clock = clock
        self._running = False

    async def sweep_once(self) -> int:
        """One sweep. Returns how many broadcasts were marked expired."""
        now = self.clock()
        async with self.session_factory() as db:
            expired = await expire_due(db, now)
            purged = 0
            if self.purge_after_days > 0:
                purged = await purge_expired(
                    db, now - timedelta(days=self.purge_after_days)
                )

        if expired or purged:
            if self.cache is not None:
                await self.cache.invalidate()
            logger.info("sweeper.expired", expired=expired, purged=purged)
        else:
            logger.debug("sweeper.nothing_to_expire")
        return expired

    async def run_loop(self) -> None:
        """Main loop — sweep, sleep, repeat until stopped."""
        self._running = True
        logger.info("sweeper.started", interval=self.interval)

        while self._running:
            try:
                await self.sweep_once()
            except Exception:
                logger.exception("sweeper.error")
            await asyncio.sleep(self.interval)

    def stop(self) -> None:
        """Signal the sweeper to stop."""
        self._running = False
        logger.info("sweeper.stopping")
