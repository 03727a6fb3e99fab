"""Join-request notification queue on Redis Streams.

A single stream consumed through one consumer group gives at-least-once
delivery: an entry stays in the group's pending list until a consumer
acks it, and entries left pending by a crashed consumer are claimed back
with XAUTOCLAIM. Consumers must therefore tolerate duplicates.

Retry policy: a failed entry is acked and re-added with attempts + 1, so
it goes to the back of the stream and never blocks the entries behind it.
After max_attempts it is moved to the dead-letter stream instead.

Retention: acked entries are deleted from the stream, and every XADD
carries an approximate MAXLEN so neither stream grows without bound.
"""

import asyncio
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Any, Optional

import redis.asyncio as aioredis
from pydantic import BaseModel
from redis.exceptions import ResponseError

from spontaneous.config import settings


class JoinRequestEvent(BaseModel):
    """Queue message: someone asked to join a broadcast."""
    broadcast_id: str
    requester_id: str


@dataclass
class QueuedEvent:
    """An entry read from the stream, with its delivery bookkeeping."""
    entry_id: str
    fields: dict[str, str]
    attempts: int

    def event(self) -> JoinRequestEvent:
        """Parse the payload. Raises pydantic.ValidationError if malformed."""
        return JoinRequestEvent.model_validate(self.fields)


def _decode(payload: dict[Any, Any]) -> dict[str, str]:
    decoded: dict[str, str] = {}
    for key, value in payload.items():
        k = key.decode("utf-8") if isinstance(key, bytes) else str(key)
        v = value.decode("utf-8") if isinstance(value, bytes) else str(value)
        decoded[k] = v
    return decoded


def _attempts(fields: dict[str, str]) -> int:
    try:
        return int(fields.get("attempts", "0"))
    except ValueError:
        return 0


class NotificationQueue:
    """Producer and consumer side of the notification stream."""

    def __init__(
        self,
        redis: aioredis.Redis,
        *,
        stream: Optional[str] = None,
        group: Optional[str] = None,
        dead_letter_stream: Optional[str] = None,
        timeout: Optional[float] = None,
        maxlen: Optional[int] = None,
        dead_letter_maxlen: Optional[int] = None,
    ):
        self.redis = redis
        self.stream = stream or settings.notification_stream
        self.group = group or settings.notification_group
        self.dead_letter_stream = (
            dead_letter_stream or settings.notification_dead_letter_stream
        )
        self.timeout = timeout if timeout is not None else settings.store_timeout_seconds
        self.maxlen = maxlen or settings.notification_stream_maxlen
        self.dead_letter_maxlen = (
            dead_letter_maxlen or settings.notification_dead_letter_maxlen
        )

    # ─── Producer ────────────────────────────────────────

    async def enqueue(self, event: JoinRequestEvent, attempts: int = 0) -> str:
        """Append an event to the stream. Returns the entry id."""
        fields = {**event.model_dump(), "attempts": str(attempts)}
        return await asyncio.wait_for(
            self.redis.xadd(
                self.stream, fields, maxlen=self.maxlen, approximate=True
            ),
            self.timeout,
        )

    # ─── Consumer group ──────────────────────────────────

    async def ensure_group(self) -> None:
        """Create the consumer group (and the stream) if missing."""
        try:
            await self.redis.xgroup_create(
                self.stream, self.group, id="0", mkstream=True
            )
        except ResponseError as e:
            if "BUSYGROUP" not in str(e):
                raise

    async def read(
        self, consumer: str, *, count: int = 50, block_ms: Optional[int] = None
    ) -> list[QueuedEvent]:
        """Read entries never delivered to this group before."""
        response = await self.redis.xreadgroup(
            self.group,
            consumer,
            {self.stream: ">"},
            count=count,
            block=block_ms or None,  # 0/None = don't block
        )
        events: list[QueuedEvent] = []
        for _stream, entries in response or []:
            for entry_id, payload in entries:
                if payload is None:
                    continue  # deleted while pending
                fields = _decode(payload)
                events.append(QueuedEvent(entry_id, fields, _attempts(fields)))
        return events

    async def claim_stale(
        self, consumer: str, *, min_idle_ms: int, count: int = 50
    ) -> list[QueuedEvent]:
        """Take over entries another consumer read but never acked."""
        result = await self.redis.xautoclaim(
            self.stream, self.group, consumer, min_idle_ms, "0-0", count=count
        )
        claimed = result[1] if result else []
        events = []
        for entry_id, payload in claimed:
            if payload is None:
                continue
            fields = _decode(payload)
            events.append(QueuedEvent(entry_id, fields, _attempts(fields)))
        return events

    async def ack(self, entry_id: str) -> None:
        """Acknowledge an entry and drop it from the stream."""
        await self.redis.xack(self.stream, self.group, entry_id)
        await self.redis.xdel(self.stream, entry_id)

    async def retry(self, queued: QueuedEvent) -> str:
        """Re-queue a failed entry at the back of the stream."""
        fields = {**queued.fields, "attempts": str(queued.attempts + 1)}
        new_id = await self.redis.xadd(
            self.stream, fields, maxlen=self.maxlen, approximate=True
        )
        await self.ack(queued.entry_id)
        return new_id

    async def dead_letter(self, queued: QueuedEvent, error: str) -> str:
        """Park an entry that can't be processed and take it off the stream."""
        fields = {
            **queued.fields,
            "error": error,
            "source_id": queued.entry_id,
            "failed_at": datetime.now(timezone.utc).isoformat(),
        }
        dead_id = await self.redis.xadd(
            self.dead_letter_stream,
            fields,
            maxlen=self.dead_letter_maxlen,
            approximate=True,
        )
        await self.ack(queued.entry_id)
        return dead_id
