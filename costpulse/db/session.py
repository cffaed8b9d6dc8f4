from sqlalchemy.ext.asyncio import AsyncEngine, AsyncSession, create_async_engine, async_sessionmaker
import structlog

from costpulse.core.config import Settings
from costpulse.db.base import Base

logger = structlog.get_logger()


def create_engine(settings: Settings) -> AsyncEngine:
    """
    Engine for the time-series sink.

    - pool_pre_ping: checks if a connection is alive before using it
    - SQLite (local runs and tests) uses a StaticPool so an in-memory
      database survives across sessions.
    """
    if not settings.DATABASE_URL:
        raise ValueError("DATABASE_URL is not set. Check your .env file.")

    if settings.DATABASE_URL.startswith("sqlite"):
        from sqlalchemy.pool import StaticPool
        return create_async_engine(
            settings.DATABASE_URL,
            echo=settings.DEBUG,
            poolclass=StaticPool,
            connect_args={"check_same_thread": False},
        )

    pool_args = {}
    if settings.TESTING:
        from sqlalchemy.pool import NullPool
        pool_args["poolclass"] = NullPool
    else:
        pool_args["pool_size"] = settings.DB_POOL_SIZE
        pool_args["max_overflow"] = settings.DB_MAX_OVERFLOW

    return create_async_engine(
        settings.DATABASE_URL,
        echo=settings.DEBUG,
        pool_pre_ping=True,
        pool_recycle=300,
        **pool_args
    )


def create_session_maker(engine: AsyncEngine) -> async_sessionmaker[AsyncSession]:
    # expire_on_commit=False: objects stay readable after commit in async code
    return async_sessionmaker(
        engine,
        class_=AsyncSession,
        expire_on_commit=False,
    )


async def create_schema(engine: AsyncEngine) -> None:
    """Create all sink tables if they do not exist."""
    import costpulse.models  # noqa: F401  registers mappers

    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
    logger.info("sink_schema_ready", url=engine.url.render_as_string(hide_password=True))
