"""Notification worker — tells creators that someone asked to join.

Consumes the join-request stream (see spontaneous.queue.notifications):

  read → re-read broadcast by id → dispatch to creator → ack
                        │                    │
                        │ gone               │ fails
                        ▼                    ▼
                    log + ack        retry (attempts + 1) … dead-letter

The payload is trusted only for its two ids: the creator is always looked
up again, since the broadcast may have been deleted since the request.
Delivery is at-least-once, so a creator can occasionally be notified
twice about the same request.
"""

import asyncio
import socket
import uuid
from typing import Optional, Protocol

import httpx
import structlog
from pydantic import ValidationError
from sqlalchemy import select
from sqlalchemy.ext.asyncio import async_sessionmaker

from spontaneous.config import settings
from spontaneous.db.models import Broadcast
from spontaneous.queue.notifications import (
    JoinRequestEvent,
    NotificationQueue,
    QueuedEvent,
)

logger = structlog.get_logger()


# ─── Notifiers ──────────────────────────────────────────────


class Notifier(Protocol):
    async def notify(
        self, creator_id: str, broadcast: Broadcast, requester_id: str
    ) -> None:
        ...


class LogNotifier:
    """Writes the notification to the log. The default without a webhook."""

    async def notify(
        self, creator_id: str, broadcast: Broadcast, requester_id: str
    ) -> None:
        logger.info(
            "notification.join_requested",
            creator_id=creator_id,
            requester_id=requester_id,
            broadcast_id=str(broadcast.id),
            title=broadcast.title,
        )


class WebhookNotifier:
    """POSTs the notification as JSON to an HTTP endpoint.

    Any non-2xx answer raises, which sends the event through the retry path.
    """

    def __init__(self, url: str, *, timeout: float = 10.0, client: Optional[httpx.AsyncClient] = None):
        self.url = url
        self.timeout = timeout
        self._client = client

    async def notify(
        self, creator_id: str, broadcast: Broadcast, requester_id: str
    ) -> None:
        payload = {
            "type": "join_request.created",
            "creator_id": creator_id,
            "requester_id": requester_id,
            "broadcast_id": str(broadcast.id),
            "title": broadcast.title,
        }
        if self._client is not None:
            response = await self._client.post(self.url, json=payload)
        else:
            async with httpx.AsyncClient(timeout=self.timeout) as client:
                response = await client.post(self.url, json=payload)
        response.raise_for_status()


def default_notifier() -> Notifier:
    if settings.notification_webhook_url:
        return WebhookNotifier(settings.notification_webhook_url)
    return LogNotifier()


# ─── Worker ─────────────────────────────────────────────────


class NotificationWorker:
    """Consumer in the notifiers group.

    Several workers (in one or many processes) can share the group; each
    entry is delivered to one of them at a time.
    """

    def __init__(
        self,
        queue: NotificationQueue,
        session_factory: async_sessionmaker,
        *,
        notifier: Optional[Notifier] = None,
        consumer: Optional[str] = None,
        max_attempts: Optional[int] = None,
        batch_size: Optional[int] = None,
        block_ms: Optional[int] = None,
        reclaim_idle_ms: Optional[int] = None,
    ):
        self.queue = queue
        self.session_factory = session_factory
        self.notifier = notifier or default_notifier()
        self.consumer = consumer or f"{socket.gethostname()}-notifier"
        self.max_attempts = max_attempts or settings.notification_max_attempts
        self.batch_size = batch_size or settings.notification_batch_size
        self.block_ms = block_ms if block_ms is not None else settings.notification_block_ms
        self.reclaim_idle_ms = reclaim_idle_ms or settings.notification_reclaim_idle_ms
        self._running = False

    async def run_once(self, block_ms: Optional[int] = None) -> int:
        """Read one batch of new entries and process them. Returns the batch size."""
        batch = await self.queue.read(
            self.consumer,
            count=self.batch_size,
            block_ms=block_ms if block_ms is not None else self.block_ms,
        )
        for queued in batch:
            await self.process(queued)
        return len(batch)

    async def recover_stale(self) -> int:
        """Process entries a crashed consumer left unacknowledged."""
        stale = await self.queue.claim_stale(
            self.consumer,
            min_idle_ms=self.reclaim_idle_ms,
            count=self.batch_size,
        )
        for queued in stale:
            await self.process(queued)
        return len(stale)

    async def process(self, queued: QueuedEvent) -> None:
        """Handle one entry; never raises so the rest of the batch continues.

        If Redis fails while the entry is being acked, retried or
        dead-lettered, it stays pending and recover_stale picks it up later.
        """
        try:
            await self._process(queued)
        except Exception:
            logger.exception(
                "notification.settle_failed",
                entry_id=queued.entry_id,
                attempts=queued.attempts,
            )

    async def _process(self, queued: QueuedEvent) -> None:
        log = logger.bind(entry_id=queued.entry_id, attempts=queued.attempts)

        try:
            event = queued.event()
            broadcast_id = uuid.UUID(event.broadcast_id)
        except (ValidationError, ValueError) as e:
            log.error("notification.malformed", fields=queued.fields)
            await self.queue.dead_letter(queued, f"malformed payload: {e}")
            return

        log = log.bind(
            broadcast_id=event.broadcast_id, requester_id=event.requester_id
        )
        try:
            await self._dispatch(broadcast_id, event, log)
        except Exception as e:
            await self._handle_failure(queued, e, log)
            return

        await self.queue.ack(queued.entry_id)

    async def _dispatch(
        self, broadcast_id: uuid.UUID, event: JoinRequestEvent, log
    ) -> None:
        async with self.session_factory() as db:
            broadcast = await db.scalar(
                select(Broadcast).where(Broadcast.id == broadcast_id)
            )
        if broadcast is None:
            # Deleted between the join request and now
            log.info("notification.broadcast_missing")
            return

        await self.notifier.notify(
            str(broadcast.creator_id), broadcast, event.requester_id
        )
        log.info("notification.dispatched", creator_id=str(broadcast.creator_id))

    async def _handle_failure(self, queued: QueuedEvent, error: Exception, log) -> None:
        if queued.attempts + 1 >= self.max_attempts:
            log.error("notification.dead_lettered", error=str(error))
            await self.queue.dead_letter(queued, str(error))
        else:
            log.warning("notification.retry", error=str(error))
            await self.queue.retry(queued)

    async def run_loop(self) -> None:
        """Main worker loop — reclaim abandoned entries, then consume new ones."""
        self._running = True
        await self.queue.ensure_group()
        logger.info("notifier.started", consumer=self.consumer)

        while self._running:
            try:
                await self.recover_stale()
                await self.run_once()
            except asyncio.CancelledError:
                raise
            except Exception:
                logger.exception("notifier.error")
                await asyncio.sleep(1.0)

    def stop(self) -> None:
        """Signal the worker to stop."""
        self._running = False
        logger.info("notifier.stopping")

