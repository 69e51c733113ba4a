"""Database setup with async SQLAlchemy."""

from sqlalchemy import event
from sqlalchemy.dialects.postgresql import insert as pg_insert
from sqlalchemy.dialects.sqlite import insert as sqlite_insert
from sqlalchemy.ext.asyncio import AsyncEngine, AsyncSession, create_async_engine, async_sessionmaker
from sqlalchemy.orm import DeclarativeBase

from mailmirror.config import settings


def build_engine(database_url: str, **kwargs) -> AsyncEngine:
    """Create an async engine; SQLite gets foreign keys on and no pool sizing."""
    if database_url.startswith("sqlite"):
        new_engine = create_async_engine(database_url, echo=False, **kwargs)

        @event.listens_for(new_engine.sync_engine, "connect")
        def _configure_sqlite(dbapi_connection, connection_record):
            cursor = dbapi_connection.cursor()
            cursor.execute("PRAGMA foreign_keys=ON")
            cursor.execute("PRAGMA journal_mode=WAL")
            # Concurrent folder syncs write through separate connections.
            cursor.execute("PRAGMA busy_timeout=30000")
            cursor.close()

        return new_engine

    return create_async_engine(
        database_url,
        echo=False,
        pool_size=settings.database_pool_size,
        max_overflow=settings.database_max_overflow,
        **kwargs,
    )


engine = build_engine(settings.database_url)

async_session = async_sessionmaker(engine, class_=AsyncSession, expire_on_commit=False)


class Base(DeclarativeBase):
    pass


def dialect_insert(session: AsyncSession, model):
    """INSERT construct with ON CONFLICT support for the session's dialect."""
    if session.get_bind().dialect.name == "sqlite":
        return sqlite_insert(model)
    return pg_insert(model)


async def get_db() -> AsyncSession:
    """Dependency for FastAPI endpoints."""
    async with async_session() as session:
        try:
            yield session
        finally:
            await session.close()


async def init_db(target_engine: AsyncEngine = None):
    """Create all tables (dev convenience — use migrations in production)."""
    import mailmirror.models  # noqa: F401  registers mappers on Base.metadata

    async with (target_engine or engine).begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
