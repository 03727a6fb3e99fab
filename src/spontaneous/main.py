"""Spontaneous API server.

`create_app()` builds the FastAPI app; uvicorn serves `spontaneous.main:app`.
On startup the lifespan connects Redis if it can and, unless
SPONTANEOUS_RUN_WORKERS is off, runs the expiry sweeper and the
notification worker as tasks in this process. Without Redis the app
still serves everything; listings just aren't cached and nobody is
notified of join requests.
"""

import asyncio
from contextlib import asynccontextmanager

import structlog
from fastapi import FastAPI

from spontaneous import __version__
from spontaneous.api import api_router
from spontaneous.config import settings
from spontaneous.middleware.rate_limit import RateLimitMiddleware

logger = structlog.get_logger()


async def _connect_redis():
    from spontaneous.cache.connection import init_redis, set_redis

    try:
        redis = await init_redis()
    except Exception as e:
        set_redis(None)
        logger.warning("spontaneous.redis_unavailable", error=str(e))
        return None
    logger.info("spontaneous.redis_connected", url=settings.redis_url)
    return redis


def _background_workers(redis) -> list:
    from spontaneous.cache.active_listing import ActiveListingCache
    from spontaneous.db.engine import async_session_factory
    from spontaneous.workers.sweeper import ExpirySweeper

    workers = [ExpirySweeper(async_session_factory, cache=ActiveListingCache(redis))]
    if redis is not None:
        from spontaneous.queue.notifications import NotificationQueue
        from spontaneous.workers.notifier import NotificationWorker

        workers.append(NotificationWorker(NotificationQueue(redis), async_session_factory))
    return workers


@asynccontextmanager
async def lifespan(app: FastAPI):
    from spontaneous.cache.connection import close_redis
    from spontaneous.db.engine import engine

    logger.info(
        "spontaneous.starting",
        version=__version__,
        environment=settings.environment,
        port=settings.port,
    )
    redis = await _connect_redis()

    workers = _background_workers(redis) if settings.run_workers else []
    tasks = [asyncio.create_task(w.run_loop()) for w in workers]
    if tasks:
        logger.info("spontaneous.workers_started", count=len(tasks))

    yield

    logger.info("spontaneous.shutdown")
    for worker in workers:
        worker.stop()
    for task in tasks:
        task.cancel()
    await asyncio.gather(*tasks, return_exceptions=True)

    await close_redis()
    await engine.dispose()


def create_app() -> FastAPI:
    app = FastAPI(
        title="Spontaneous",
        description="Time-bounded broadcasts with join requests",
        version=__version__,
        lifespan=lifespan,
    )
    app.add_middleware(
        RateLimitMiddleware,
        default_rpm=settings.rate_limit_rpm,
        auth_rpm=settings.rate_limit_auth_rpm,
    )
    app.include_router(api_router)
    return app


app = create_app()
