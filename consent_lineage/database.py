from datetime import timezone

from sqlalchemy import DateTime
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine
from sqlalchemy.orm import declarative_base
from sqlalchemy.types import TypeDecorator
from consent_lineage.config import settings

DATABASE_URL = settings.database_url


class UTCDateTime(TypeDecorator):
    """DateTime column that always round-trips as an aware UTC datetime."""

    impl = DateTime(timezone=True)
    cache_ok = True

    def process_bind_param(self, value, dialect):
        if value is None:
            return value
        if value.tzinfo is None:
            raise ValueError("Naive datetimes cannot be stored; use UTC-aware values")
        return value.astimezone(timezone.utc)

    def process_result_value(self, value, dialect):
        if value is None:
            return value
        # SQLite drops the offset on the way back
        if value.tzinfo is None:
            return value.replace(tzinfo=timezone.utc)
        return value.astimezone(timezone.utc)


def build_engine(database_url: str = DATABASE_URL):
    """Create the async engine with pool settings suited to the environment."""
    if database_url.startswith("sqlite"):
        # SQLite uses a static pool per file; pool sizing options do not apply
        return create_async_engine(database_url, echo=settings.debug)

    if settings.environment == "production":
        return create_async_engine(
            database_url,
            pool_size=20,
            max_overflow=50,
            pool_timeout=60,
            pool_recycle=1800,
        )
    return create_async_engine(
        database_url,
        echo=settings.debug,
        pool_size=10,
        max_overflow=20,
        pool_timeout=30,
    )


engine = build_engine()

AsyncSessionLocal = async_sessionmaker(
    bind=engine,
    class_=AsyncSession,
    autoflush=False,
    expire_on_commit=False,
)

Base = declarative_base()


async def create_tables(bind=None) -> None:
    """Create all tables on the given engine (defaults to the app engine)."""
    # Register models on Base.metadata before create_all
    from consent_lineage import models  # noqa: F401

    async with (bind or engine).begin() as conn:
        await conn.run_sync(Base.metadata.create_all)

