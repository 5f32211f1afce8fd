"""
Database Configuration
Version: 1.0

Async SQLAlchemy engine and session factory shared by the local store,
the cache store, the API and the worker.
DEPENDS ON: config.py only
"""

from sqlalchemy import MetaData, text
from sqlalchemy.ext.asyncio import AsyncEngine, AsyncSession, async_sessionmaker, create_async_engine
from sqlalchemy.orm import declarative_base
from sqlalchemy.pool import NullPool

from config import get_settings

settings = get_settings()

# Stable constraint names so the partial unique index on shift claims and the
# cache upsert target can be referenced by name in migrations.
NAMING_CONVENTION = {
    "ix": "ix_%(column_0_label)s",
    "uq": "uq_%(table_name)s_%(column_0_name)s",
    "ck": "ck_%(table_name)s_%(constraint_name)s",
    "fk": "fk_%(table_name)s_%(column_0_name)s_%(referred_table_name)s",
    "pk": "pk_%(table_name)s",
}

_engine_options = {"echo": False, "pool_pre_ping": True}
if settings.APP_ENV == "test":
    _engine_options["poolclass"] = NullPool

engine: AsyncEngine = create_async_engine(settings.DATABASE_URL, **_engine_options)

# Services receive this factory and open one session per store operation.
AsyncSessionLocal = async_sessionmaker(
    bind=engine,
    class_=AsyncSession,
    expire_on_commit=False,
    autoflush=False,
)

Base = declarative_base(metadata=MetaData(naming_convention=NAMING_CONVENTION))


async def ping_db() -> None:
    """Round-trip a trivial query. Raises whatever the driver raises."""
    async with engine.connect() as conn:
        await conn.execute(text("SELECT 1"))


async def init_db() -> None:
    """Create the scheduling tables if they do not exist yet."""
    import models  # noqa: F401  (registers tables on Base.metadata)

    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)


async def close_db() -> None:
    await engine.dispose()
