"""Database engine and sessions.

The API process and the standalone workers each build one engine from
SPONTANEOUS_DATABASE_URL. PostgreSQL (asyncpg) gets a sized pool; SQLite
(aiosqlite, used by the test suite) takes no pool arguments.
"""

from sqlalchemy.ext.asyncio import (
    AsyncEngine,
    AsyncSession,
    async_sessionmaker,
    create_async_engine,
)

from spontaneous.config import settings

POOL_SIZE = 5
MAX_OVERFLOW = 15


def build_engine(url: str, *, echo: bool = False) -> AsyncEngine:
    pool_args = {}
    if not url.startswith("sqlite"):
        pool_args = {"pool_size": POOL_SIZE, "max_overflow": MAX_OVERFLOW}
    return create_async_engine(url, echo=echo, **pool_args)


def build_session_factory(bind: AsyncEngine) -> async_sessionmaker[AsyncSession]:
    # Objects stay readable after commit; the service re-reads explicitly
    return async_sessionmaker(bind, class_=AsyncSession, expire_on_commit=False)


engine = build_engine(settings.database_url, echo=settings.debug)
async_session_factory = build_session_factory(engine)


async def get_db():
    """Request-scoped session, closed when the response is sent."""
    async with async_session_factory() as session:
        yield session
