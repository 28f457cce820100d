"""SQLAlchemy async engine and session factory."""

from __future__ import annotations

from sqlalchemy import event
from sqlalchemy.engine import make_url
from sqlalchemy.ext.asyncio import AsyncEngine, AsyncSession, async_sessionmaker, create_async_engine

from rowqueue.config import settings


def _build_engine_kwargs(url: str, echo: bool) -> dict:
    """Return engine kwargs appropriate for the dialect of *url*."""
    if make_url(url).get_backend_name() == "postgresql":
        return {
            "echo": echo,
            "pool_size": settings.QUEUE_DB_POOL_SIZE,
            "max_overflow": settings.QUEUE_DB_MAX_OVERFLOW,
            "pool_timeout": settings.QUEUE_DB_POOL_TIMEOUT,
            "pool_pre_ping": True,   # ensure stale connections are recycled
            "pool_recycle": 1800,    # recycle connections older than 30 min
        }
    return {
        "echo": echo,
        "connect_args": {"check_same_thread": False},
    }


def _install_sqlite_hooks(engine: AsyncEngine, busy_timeout_ms: int) -> None:
    """WAL + busy_timeout, and BEGIN IMMEDIATE for every transaction.

    pysqlite's implicit BEGIN is deferred: two claimers would both read and
    then race for the write lock, and the loser fails with SQLITE_BUSY_SNAPSHOT
    instead of waiting.  Taking the write lock at BEGIN makes claimers queue on
    busy_timeout, which is the SQLite stand-in for row locks.
    """

    @event.listens_for(engine.sync_engine, "connect")
    def _set_sqlite_pragmas(dbapi_conn, _conn_rec):  # type: ignore[misc]
        dbapi_conn.isolation_level = None
        cursor = dbapi_conn.cursor()
        cursor.execute(f"PRAGMA busy_timeout={int(busy_timeout_ms)}")
        cursor.execute("PRAGMA journal_mode=WAL")
        cursor.execute("PRAGMA synchronous=NORMAL")
        cursor.close()

    @event.listens_for(engine.sync_engine, "begin")
    def _begin_immediate(conn):  # type: ignore[misc]
        conn.exec_driver_sql("BEGIN IMMEDIATE")


def build_engine(url: str | None = None, *, echo: bool | None = None) -> AsyncEngine:
    """Create an async engine for *url* (default: ``settings.QUEUE_DB_URL``)."""
    url = url or settings.QUEUE_DB_URL
    new_engine = create_async_engine(url, **_build_engine_kwargs(url, settings.DEBUG if echo is None else echo))
    if new_engine.dialect.name == "sqlite":
        _install_sqlite_hooks(new_engine, settings.QUEUE_DB_BUSY_TIMEOUT_MS)
    return new_engine


def build_session_factory(bind: AsyncEngine) -> async_sessionmaker[AsyncSession]:
    return async_sessionmaker(bind, class_=AsyncSession, expire_on_commit=False)


engine = build_engine()
async_session = build_session_factory(engine)


async def get_db() -> AsyncSession:  # type: ignore[misc]
    """FastAPI dependency — yields a session and commits/rollbacks."""
    async with async_session() as session:
        try:
            yield session
            await session.commit()
        except Exception:
            await session.rollback()
            raise
