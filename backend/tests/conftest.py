"""Shared fixtures for backend tests."""

from __future__ import annotations

import pytest


@pytest.fixture
async def db_engine(tmp_path):
    """File-backed SQLite engine with the jobs table created.

    A file (not ``:memory:``) so concurrent claims use separate connections
    and genuinely contend for the write lock.
    """
    from rowqueue.db.engine import build_engine
    from rowqueue.db.models import Base

    eng = build_engine(f"sqlite+aiosqlite:///{tmp_path / 'queue.db'}", echo=False)
    async with eng.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
    yield eng
    await eng.dispose()


@pytest.fixture
def session_factory(db_engine):
    from rowqueue.db.engine import build_session_factory

    return build_session_factory(db_engine)


@pytest.fixture
def use_test_db(session_factory, monkeypatch):
    """Point the module-level session factory (API, default callers) at the test DB."""
    import rowqueue.db.engine as engine_module

    monkeypatch.setattr(engine_module, "async_session", session_factory)
    return session_factory


@pytest.fixture(autouse=True)
def _reset_metrics():
    from rowqueue.utils.metrics import metrics

    metrics.reset()
    yield
    metrics.reset()


@pytest.fixture
def email_payload():
    from rowqueue.schemas.payloads import SendEmailPayload

    return SendEmailPayload(email="user@example.com")


@pytest.fixture
def noop_payload():
    from rowqueue.schemas.payloads import NoopPayload

    return NoopPayload()
