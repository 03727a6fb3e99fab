"""Alembic environment.

Migrations run against SPONTANEOUS_DATABASE_URL (the same Settings the app
reads); the url in alembic.ini is ignored. Online mode drives the async
engine and hands Alembic a sync connection through run_sync.
"""

import asyncio
from logging.config import fileConfig

from alembic import context
from sqlalchemy import pool
from sqlalchemy.engine import Connection
from sqlalchemy.ext.asyncio import create_async_engine

from spontaneous.config import settings
from spontaneous.db.models import Base

if context.config.config_file_name is not None:
    fileConfig(context.config.config_file_name)


def _migrate(**configure_args) -> None:
    context.configure(target_metadata=Base.metadata, **configure_args)
    with context.begin_transaction():
        context.run_migrations()


def _migrate_on(connection: Connection) -> None:
    # SQLite can't ALTER most things in place
    _migrate(
        connection=connection,
        render_as_batch=connection.dialect.name == "sqlite",
    )


async def _migrate_online() -> None:
    engine = create_async_engine(settings.database_url, poolclass=pool.NullPool)
    try:
        async with engine.connect() as connection:
            await connection.run_sync(_migrate_on)
    finally:
        await engine.dispose()


if context.is_offline_mode():
    # Emit SQL instead of connecting
    _migrate(
        url=settings.database_url,
        literal_binds=True,
        dialect_opts={"paramstyle": "named"},
    )
else:
    asyncio.run(_migrate_online())
