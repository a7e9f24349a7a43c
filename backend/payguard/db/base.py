"""Declarative base plus the process-wide async engine for PayGuard tables."""

from sqlalchemy.ext.asyncio import AsyncEngine, AsyncSession, async_sessionmaker, create_async_engine
from sqlalchemy.orm import DeclarativeBase

from payguard.core.config import get_settings


class Base(DeclarativeBase):
    """Metadata root for billing_records, subscriptions and webhook_events."""


_engine: AsyncEngine | None = None
_session_factory: async_sessionmaker[AsyncSession] | None = None


def _build_engine(db_url: str, echo: bool) -> AsyncEngine:
    # aiosqlite has no server-side connection to ping
    if db_url.startswith("sqlite"):
        return create_async_engine(db_url, echo=echo)
    return create_async_engine(db_url, echo=echo, pool_pre_ping=True)


async def _create_tables(engine: AsyncEngine) -> None:
    import payguard.db.models  # noqa: F401  (registers mappers on Base.metadata)

    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)


async def init_db(url: str | None = None) -> None:
    """Open the engine once per process and make sure the tables exist.

    ``url`` overrides ``Settings.database_url``. Calling again while an
    engine is open does nothing.
    """
    global _engine, _session_factory

    if _engine is not None:
        return

    settings = get_settings()
    engine = _build_engine(url or settings.database_url, settings.debug)
    await _create_tables(engine)

    _engine = engine
    _session_factory = async_sessionmaker(engine, class_=AsyncSession, expire_on_commit=False)


async def close_db() -> None:
    global _engine, _session_factory

    engine, _engine, _session_factory = _engine, None, None
    if engine is not None:
        await engine.dispose()


def get_session_factory() -> async_sessionmaker[AsyncSession]:
    """Session factory for the open engine; RuntimeError before ``init_db``."""
    if _session_factory is None:
        raise RuntimeError("PayGuard database is not initialised; call init_db() during startup")
    return _session_factory
