"""Notification queue + worker tests.

The worker is driven one batch at a time with run_once(block_ms=0), so
nothing here blocks on Redis. Recovery tests sleep a few milliseconds so
unacked entries count as idle.
"""

import asyncio
import uuid
from datetime import timedelta

import httpx
import pytest
from fastapi import FastAPI, Request

from spontaneous.queue.notifications import JoinRequestEvent, NotificationQueue
from spontaneous.workers.notifier import NotificationWorker, WebhookNotifier


class RecordingNotifier:
    def __init__(self):
        self.calls = []

    async def notify(self, creator_id, broadcast, requester_id):
        self.calls.append((creator_id, broadcast.id, requester_id))


class FailingNotifier:
    def __init__(self):
        self.attempts = 0

    async def notify(self, creator_id, broadcast, requester_id):
        self.attempts += 1
        raise RuntimeError("push gateway down")


async def _drain(worker) -> int:
    total = 0
    while processed := await worker.run_once(block_ms=0):
        total += processed
    return total


async def _publish(service, clock, creator):
    return await service.create(
        creator,
        title="Board games",
        description="Catan at mine",
        expires_at=clock.now + timedelta(hours=2),
    )


@pytest.fixture()
def worker_for(queue, session_factory):
    def _make(notifier, **kwargs):
        kwargs.setdefault("max_attempts", 3)
        return NotificationWorker(
            queue, session_factory, notifier=notifier, consumer="test-consumer", **kwargs
        )

    return _make


@pytest.mark.asyncio
async def test_join_request_notifies_creator(service, queue, worker_for, clock, user_ids, redis):
    creator, alice, _ = user_ids
    notifier = RecordingNotifier()
    worker = worker_for(notifier)
    await queue.ensure_group()

    b = await _publish(service, clock, creator)
    await service.request_join(alice, str(b.id))

    assert await _drain(worker) == 1
    assert notifier.calls == [(creator, b.id, alice)]

    pending = await redis.xpending(queue.stream, queue.group)
    assert pending["pending"] == 0


@pytest.mark.asyncio
async def test_events_enqueued_before_group_exists_are_delivered(service, queue, worker_for, clock, user_ids):
    creator, alice, bob = user_ids
    b = await _publish(service, clock, creator)
    await service.request_join(alice, str(b.id))
    await service.request_join(bob, str(b.id))

    notifier = RecordingNotifier()
    worker = worker_for(notifier)
    await queue.ensure_group()

    assert await _drain(worker) == 2
    assert [c[2] for c in notifier.calls] == [alice, bob]


@pytest.mark.asyncio
async def test_ensure_group_is_idempotent(queue):
    await queue.ensure_group()
    await queue.ensure_group()


@pytest.mark.asyncio
async def test_deleted_broadcast_is_dropped(queue, worker_for, redis):
    notifier = RecordingNotifier()
    worker = worker_for(notifier)
    await queue.ensure_group()

    await queue.enqueue(
        JoinRequestEvent(broadcast_id=str(uuid.uuid4()), requester_id=str(uuid.uuid4()))
    )

    assert await _drain(worker) == 1
    assert notifier.calls == []
    assert await redis.xlen(queue.dead_letter_stream) == 0
    assert (await redis.xpending(queue.stream, queue.group))["pending"] == 0


@pytest.mark.asyncio
async def test_failures_retry_then_dead_letter(service, queue, worker_for, clock, user_ids, redis):
    creator, alice, _ = user_ids
    notifier = FailingNotifier()
    worker = worker_for(notifier, max_attempts=3)
    await queue.ensure_group()

    b = await _publish(service, clock, creator)
    await service.request_join(alice, str(b.id))

    assert await _drain(worker) == 3
    assert notifier.attempts == 3

    dead = await redis.xrange(queue.dead_letter_stream)
    assert len(dead) == 1
    _, fields = dead[0]
    assert fields["broadcast_id"] == str(b.id)
    assert fields["requester_id"] == alice
    assert fields["attempts"] == "2"
    assert "push gateway down" in fields["error"]
    assert (await redis.xpending(queue.stream, queue.group))["pending"] == 0


@pytest.mark.asyncio
async def test_malformed_payload_dead_lettered(queue, worker_for, redis):
    notifier = RecordingNotifier()
    worker = worker_for(notifier)
    await queue.ensure_group()
    await redis.xadd(queue.stream, {"something": "else"})

    assert await _drain(worker) == 1
    assert notifier.calls == []
    dead = await redis.xrange(queue.dead_letter_stream)
    assert len(dead) == 1
    assert dead[0][1]["error"].startswith("malformed payload")


@pytest.mark.asyncio
async def test_invalid_broadcast_id_dead_lettered(queue, worker_for, redis):
    worker = worker_for(RecordingNotifier())
    await queue.ensure_group()
    await queue.enqueue(JoinRequestEvent(broadcast_id="nope", requester_id="someone"))

    assert await _drain(worker) == 1
    assert await redis.xlen(queue.dead_letter_stream) == 1


# ═══════════════════════════════════════════════════════════
# Retention + recovery
# ═══════════════════════════════════════════════════════════


class _FlakyAckQueue(NotificationQueue):
    """Queue whose first ack fails, as if Redis dropped the connection."""

    def __init__(self, redis):
        super().__init__(redis)
        self.failed_acks = []

    async def ack(self, entry_id):
        if not self.failed_acks:
            self.failed_acks.append(entry_id)
            raise ConnectionError("redis went away")
        await super().ack(entry_id)


@pytest.mark.asyncio
async def test_acked_entries_leave_the_stream(service, queue, worker_for, clock, user_ids, redis):
    creator, _, _ = user_ids
    worker = worker_for(RecordingNotifier())
    await queue.ensure_group()

    b = await _publish(service, clock, creator)
    for _ in range(20):
        await service.request_join(str(uuid.uuid4()), str(b.id))
    assert await redis.xlen(queue.stream) == 20

    assert await _drain(worker) == 20
    assert await redis.xlen(queue.stream) == 0


@pytest.mark.asyncio
async def test_retried_entries_leave_the_stream(service, queue, worker_for, clock, user_ids, redis):
    creator, alice, _ = user_ids
    worker = worker_for(FailingNotifier(), max_attempts=3)
    await queue.ensure_group()

    b = await _publish(service, clock, creator)
    await service.request_join(alice, str(b.id))
    await _drain(worker)

    assert await redis.xlen(queue.stream) == 0
    assert await redis.xlen(queue.dead_letter_stream) == 1


@pytest.mark.asyncio
async def test_stream_bounds_come_from_settings(redis):
    from spontaneous.config import settings

    queue = NotificationQueue(redis)
    assert queue.maxlen == settings.notification_stream_maxlen
    assert queue.dead_letter_maxlen == settings.notification_dead_letter_maxlen
    assert NotificationQueue(redis, maxlen=5, dead_letter_maxlen=7).maxlen == 5


@pytest.mark.asyncio
async def test_recover_stale_redelivers_unacked_entry(service, queue, worker_for, clock, user_ids, redis):
    """A consumer that read an entry and died leaves it pending; another worker takes it over."""
    creator, alice, _ = user_ids
    await queue.ensure_group()

    b = await _publish(service, clock, creator)
    await service.request_join(alice, str(b.id))

    assert len(await queue.read("crashed", count=10)) == 1
    assert (await redis.xpending(queue.stream, queue.group))["pending"] == 1

    notifier = RecordingNotifier()
    worker = worker_for(notifier, reclaim_idle_ms=1)
    await asyncio.sleep(0.05)

    assert await worker.recover_stale() == 1
    assert notifier.calls == [(creator, b.id, alice)]
    assert (await redis.xpending(queue.stream, queue.group))["pending"] == 0
    assert await _drain(worker) == 0


@pytest.mark.asyncio
async def test_recover_stale_leaves_recent_entries(service, queue, worker_for, clock, user_ids, redis):
    creator, alice, _ = user_ids
    await queue.ensure_group()

    b = await _publish(service, clock, creator)
    await service.request_join(alice, str(b.id))
    await queue.read("busy", count=10)

    notifier = RecordingNotifier()
    worker = worker_for(notifier, reclaim_idle_ms=60_000)

    assert await worker.recover_stale() == 0
    assert notifier.calls == []
    assert (await redis.xpending(queue.stream, queue.group))["pending"] == 1


@pytest.mark.asyncio
async def test_failed_ack_does_not_stop_the_batch(service, session_factory, clock, user_ids, redis):
    creator, alice, bob = user_ids
    flaky = _FlakyAckQueue(redis)
    await flaky.ensure_group()

    b = await _publish(service, clock, creator)
    await service.request_join(alice, str(b.id))
    await service.request_join(bob, str(b.id))

    notifier = RecordingNotifier()
    worker = NotificationWorker(
        flaky, session_factory, notifier=notifier, consumer="test-consumer",
        reclaim_idle_ms=1,
    )
    assert await worker.run_once(block_ms=0) == 2
    assert [c[2] for c in notifier.calls] == [alice, bob]

    # The entry whose ack failed is still pending and gets delivered again
    assert (await redis.xpending(flaky.stream, flaky.group))["pending"] == 1
    await asyncio.sleep(0.05)
    assert await worker.recover_stale() == 1
    assert [c[2] for c in notifier.calls] == [alice, bob, alice]
    assert (await redis.xpending(flaky.stream, flaky.group))["pending"] == 0


# ═══════════════════════════════════════════════════════════
# Webhook notifier
# ═══════════════════════════════════════════════════════════


def _hook_app(status_code: int = 200):
    app = FastAPI()
    app.state.received = []

    @app.post("/hook")
    async def hook(request: Request):
        app.state.received.append(await request.json())
        if status_code >= 400:
            from fastapi import HTTPException

            raise HTTPException(status_code=status_code, detail="nope")
        return {"ok": True}

    return app


@pytest.mark.asyncio
async def test_webhook_notifier_posts_payload(service, queue, worker_for, clock, user_ids):
    creator, alice, _ = user_ids
    hook = _hook_app()
    async with httpx.AsyncClient(
        transport=httpx.ASGITransport(app=hook), base_url="http://hooks"
    ) as client:
        worker = worker_for(WebhookNotifier("http://hooks/hook", client=client))
        await queue.ensure_group()

        b = await _publish(service, clock, creator)
        await service.request_join(alice, str(b.id))
        await _drain(worker)

    assert hook.state.received == [
        {
            "type": "join_request.created",
            "creator_id": creator,
            "requester_id": alice,
            "broadcast_id": str(b.id),
            "title": "Board games",
        }
    ]


@pytest.mark.asyncio
async def test_webhook_error_goes_through_retry(service, queue, worker_for, clock, user_ids, redis):
    creator, alice, _ = user_ids
    hook = _hook_app(status_code=503)
    async with httpx.AsyncClient(
        transport=httpx.ASGITransport(app=hook), base_url="http://hooks"
    ) as client:
        worker = worker_for(WebhookNotifier("http://hooks/hook", client=client), max_attempts=2)
        await queue.ensure_group()

        b = await _publish(service, clock, creator)
        await service.request_join(alice, str(b.id))
        await _drain(worker)

    assert len(hook.state.received) == 2
    assert await redis.xlen(queue.dead_letter_stream) == 1
