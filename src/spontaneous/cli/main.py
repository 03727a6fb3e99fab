"""Spontaneous worker CLI — run background workers as their own processes.

Usage:
    spontaneous sweeper                 # expire broadcasts every minute
    spontaneous sweeper --once          # one sweep, print the count, exit
    spontaneous notifier                # consume join-request notifications
    spontaneous notifier --once         # process what's queued now, exit
    spontaneous init-db                 # create tables (dev only; use alembic otherwise)

Running the workers outside the API gives crash isolation; set
SPONTANEOUS_RUN_WORKERS=false on the API processes in that case.
"""

from __future__ import annotations

import asyncio
import logging
import signal
from typing import Optional

import click

from spontaneous.config import settings


def _configure_logging(verbose: bool) -> None:
    logging.basicConfig(
        level=logging.DEBUG if verbose else logging.INFO,
        format="%(asctime)s [%(name)s] %(levelname)s: %(message)s",
        datefmt="%Y-%m-%d %H:%M:%S",
    )


async def _run_until_signal(worker) -> None:
    """Run worker.run_loop() until SIGINT/SIGTERM."""
    task = asyncio.create_task(worker.run_loop())

    def _shutdown() -> None:
        worker.stop()
        task.cancel()

    loop = asyncio.get_running_loop()
    for sig in (signal.SIGINT, signal.SIGTERM):
        loop.add_signal_handler(sig, _shutdown)

    try:
        await task
    except asyncio.CancelledError:
        pass


@click.group()
@click.option("-v", "--verbose", is_flag=True, help="Debug logging.")
def cli(verbose: bool) -> None:
    """Spontaneous background workers."""
    _configure_logging(verbose)


@cli.command()
@click.option("--once", is_flag=True, help="Run a single sweep and exit.")
def sweeper(once: bool) -> None:
    """Mark broadcasts past their deadline as expired."""
    asyncio.run(_sweeper(once))


async def _sweeper(once: bool) -> None:
    from spontaneous.cache.active_listing import ActiveListingCache
    from spontaneous.cache.connection import close_redis, init_redis
    from spontaneous.db.engine import async_session_factory, engine
    from spontaneous.workers.sweeper import ExpirySweeper

    redis = await _try_redis(init_redis)
    worker = ExpirySweeper(async_session_factory, cache=ActiveListingCache(redis))
    try:
        if once:
            count = await worker.sweep_once()
            click.echo(f"Marked {count} broadcast(s) as expired.")
        else:
            await _run_until_signal(worker)
    finally:
        await close_redis()
        await engine.dispose()


@cli.command()
@click.option("--once", is_flag=True, help="Process queued notifications and exit.")
@click.option("--consumer", default=None, help="Consumer name within the group.")
def notifier(once: bool, consumer: Optional[str]) -> None:
    """Deliver join-request notifications to broadcast creators."""
    asyncio.run(_notifier(once, consumer))


async def _notifier(once: bool, consumer: Optional[str]) -> None:
    from spontaneous.cache.connection import close_redis, init_redis
    from spontaneous.db.engine import async_session_factory, engine
    from spontaneous.queue.notifications import NotificationQueue
    from spontaneous.workers.notifier import NotificationWorker

    redis = await _try_redis(init_redis)
    if redis is None:
        raise click.ClickException(f"Redis is required for notifications ({settings.redis_url})")

    worker = NotificationWorker(
        NotificationQueue(redis), async_session_factory, consumer=consumer
    )
    try:
        if once:
            await worker.queue.ensure_group()
            total = await worker.recover_stale()
            while processed := await worker.run_once(block_ms=0):
                total += processed
            click.echo(f"Processed {total} notification(s).")
        else:
            await _run_until_signal(worker)
    finally:
        await close_redis()
        await engine.dispose()


@cli.command("init-db")
def init_db() -> None:
    """Create all tables directly from the models."""
    asyncio.run(_init_db())


async def _init_db() -> None:
    from spontaneous.db.engine import engine
    from spontaneous.db.models import Base

    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
    await engine.dispose()
    click.echo("Tables created.")


async def _try_redis(init_redis):
    from spontaneous.cache.connection import set_redis

    try:
        return await init_redis()
    except Exception as e:
        set_redis(None)
        click.secho(f"Redis unavailable: {e}", fg="yellow", err=True)
        return None


def main() -> None:
    """CLI entry point."""
    cli()


if __name__ == "__main__":
    main()
