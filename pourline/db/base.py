"""Shared SQLAlchemy base and database initialization."""

from sqlalchemy import event
from sqlalchemy.engine import make_url
from sqlalchemy.ext.asyncio import (
    AsyncEngine,
    AsyncSession,
    async_sessionmaker,
    create_async_engine,
)
from sqlalchemy.orm import DeclarativeBase

from pourline.core.config import get_settings


class Base(DeclarativeBase):
    pass


_engine: AsyncEngine | None = None
_session_factory: async_sessionmaker[AsyncSession] | None = None


def _use_immediate_transactions(engine: AsyncEngine) -> None:
    """Make every SQLite transaction take the write lock up front.

    SQLite has no SELECT ... FOR UPDATE. BEGIN IMMEDIATE serialises writers
    so the locked-read + conditional-update sequences behave as they do on
    PostgreSQL instead of failing with SQLITE_BUSY on lock upgrade.
    """

    @event.listens_for(engine.sync_engine, "connect")
    def _disable_driver_begin(dbapi_connection, connection_record):
        dbapi_connection.isolation_level = None

    @event.listens_for(engine.sync_engine, "begin")
    def _begin_immediate(conn):
        conn.exec_driver_sql("BEGIN IMMEDIATE")


def create_engine_for(url: str, echo: bool = False) -> AsyncEngine:
    """Create an async engine with backend-specific connection settings."""
    backend = make_url(url).get_backend_name()

    if backend.startswith("sqlite"):
        engine = create_async_engine(url, echo=echo, connect_args={"timeout": 30})
        _use_immediate_transactions(engine)
        return engine

    return create_async_engine(url, echo=echo, pool_pre_ping=True)


async def init_db(url: str | None = None) -> None:
    """Open the engine once per process and make sure the order tables exist.

    Production schemas are owned by alembic; create_all only fills the gap
    for fresh SQLite files and is a no-op against a migrated database.
    """
    global _engine, _session_factory
    if _engine is not None:
        return

    settings = get_settings()
    _engine = create_engine_for(url or settings.database_url, echo=settings.debug)
    _session_factory = async_sessionmaker(_engine, expire_on_commit=False)

    import pourline.db.models  # noqa: F401  registers every table on Base.metadata

    async with _engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)


async def close_db() -> None:
    global _engine, _session_factory
    if _engine is None:
        return
    await _engine.dispose()
    _engine = _session_factory = None


def get_session_factory() -> async_sessionmaker[AsyncSession]:
    if _session_factory is None:
        raise RuntimeError("Database not initialized. Call init_db() first.")
    return _session_factory
