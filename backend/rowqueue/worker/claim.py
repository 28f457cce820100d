"""Claim protocol — atomically move a batch of Queued jobs to Running.

One statement does the whole claim::

    UPDATE jobs SET status = 'Running', updated_at = :now
    WHERE id IN (
        SELECT id FROM jobs
        WHERE status = 'Queued'
        ORDER BY id
        LIMIT :batch_size
        FOR UPDATE SKIP LOCKED
    )
    RETURNING id, status, payload, params

PostgreSQL — rows locked by a concurrent claimer are skipped rather than
             waited on, so two claims never return overlapping ids and a slow
             transaction holding row 5 never stalls a claim of rows 6–10.
SQLite     — the locking clause is not rendered; every transaction starts
             with ``BEGIN IMMEDIATE`` (see ``db.engine``) so claimers
             serialize on the database write lock instead.

The returned rows are decoded inside the same transaction.  A row whose
payload/params cannot be decoded aborts the whole claim (rollback), so an
uninterpretable job is never left ``Running`` and ignored.

Failure reporting (``Running -> Failed``) and quarantine of undecodable rows
(``Queued -> Failed``) each run in their own short transaction.
"""

from __future__ import annotations

import logging
import time
from datetime import datetime, timezone

from sqlalchemy import func, select, update
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker
from sqlalchemy.orm import aliased

from rowqueue.db import engine as db_engine
from rowqueue.db.models import Job, JobStatus
from rowqueue.domain import ClaimedJob
from rowqueue.errors import DecodeError, translate_store_errors
from rowqueue.schemas.payloads import params_from_json, payload_from_json
from rowqueue.utils.metrics import record_claim_error, record_job_failed, record_jobs_claimed

logger = logging.getLogger("rowqueue.worker.claim")

_ERROR_MESSAGE_MAX = 2000


def _factory(session_factory: async_sessionmaker[AsyncSession] | None) -> async_sessionmaker[AsyncSession]:
    return session_factory or db_engine.async_session


def build_claim_statement(batch_size: int, now: datetime | None = None):
    """Return the UPDATE … RETURNING statement that claims *batch_size* jobs."""
    # Aliased so the subquery is not correlated to the UPDATE target.
    candidate = aliased(Job)
    queued_ids = (
        select(candidate.id)
        .where(candidate.status == JobStatus.QUEUED)
        .order_by(candidate.id)
        .limit(batch_size)
        .with_for_update(skip_locked=True)
        .scalar_subquery()
    )
    return (
        update(Job)
        .where(Job.id.in_(queued_ids))
        .values(status=JobStatus.RUNNING, updated_at=now or datetime.now(timezone.utc))
        .returning(Job.id, Job.status, Job.payload, Job.params)
        .execution_options(synchronize_session=False)
    )


def _decode_row(row) -> ClaimedJob:
    return ClaimedJob(
        id=row.id,
        status=row.status,
        payload=payload_from_json(row.payload, job_id=row.id),
        params=params_from_json(row.params, job_id=row.id),
    )


async def claim_jobs(
    batch_size: int,
    *,
    session_factory: async_sessionmaker[AsyncSession] | None = None,
) -> list[ClaimedJob]:
    """Claim up to *batch_size* Queued jobs, oldest id first.

    Raises:
        DecodeError:          a claimed row holds an unknown payload/params
                              variant; the transaction was rolled back.
        StoreConnectionError: the store could not be reached.
        TransactionError:     the store aborted the transaction.
    """
    if batch_size <= 0:
        return []

    started = time.perf_counter()
    try:
        async with translate_store_errors("claim"):
            async with _factory(session_factory)() as db:
                async with db.begin():
                    result = await db.execute(build_claim_statement(batch_size))
                    # Decoding inside the transaction: a DecodeError rolls back.
                    claimed = sorted((_decode_row(row) for row in result.all()), key=lambda j: j.id)
    except DecodeError as err:
        record_claim_error("decode")
        logger.error("Claim aborted, undecodable job %s: %s", err.job_id, err)
        raise
    except Exception as err:
        record_claim_error(type(err).__name__)
        raise

    record_jobs_claimed(len(claimed), time.perf_counter() - started)
    if claimed:
        logger.info(
            "Claimed %d job(s): %s", len(claimed), ", ".join(str(j.id) for j in claimed)
        )
    return claimed


async def mark_failed(
    job_id: int,
    error: str | None = None,
    *,
    reason: str = "reported",
    session_factory: async_sessionmaker[AsyncSession] | None = None,
) -> bool:
    """Transition *job_id* from Running to Failed.

    Returns False (and changes nothing) when the job is missing or not Running.
    *reason* only labels the ``jobs_failed_total`` metric.
    """
    now = datetime.now(timezone.utc)
    async with translate_store_errors("mark_failed"):
        async with _factory(session_factory)() as db:
            async with db.begin():
                result = await db.execute(
                    update(Job)
                    .where(Job.id == job_id, Job.status == JobStatus.RUNNING)
                    .values(
                        status=JobStatus.FAILED,
                        error_message=(error or "")[:_ERROR_MESSAGE_MAX] or None,
                        updated_at=now,
                    )
                    .execution_options(synchronize_session=False)
                )
    if result.rowcount != 1:
        logger.warning("Job %s not marked failed: it is not Running", job_id)
        return False
    record_job_failed(reason)
    logger.info("Job %s marked Failed: %s", job_id, error)
    return True


async def quarantine_job(
    job_id: int,
    error: str,
    *,
    session_factory: async_sessionmaker[AsyncSession] | None = None,
) -> bool:
    """Move a still-Queued job whose payload/params cannot be decoded to Failed.

    Called after the claim that hit the row was rolled back, so the row would
    otherwise abort every following claim.
    """
    now = datetime.now(timezone.utc)
    async with translate_store_errors("quarantine"):
        async with _factory(session_factory)() as db:
            async with db.begin():
                result = await db.execute(
                    update(Job)
                    .where(Job.id == job_id, Job.status == JobStatus.QUEUED)
                    .values(
                        status=JobStatus.FAILED,
                        error_message=f"undecodable: {error}"[:_ERROR_MESSAGE_MAX],
                        updated_at=now,
                    )
                    .execution_options(synchronize_session=False)
                )
    if result.rowcount != 1:
        return False
    record_job_failed("quarantine")
    logger.warning("Quarantined undecodable job %s: %s", job_id, error)
    return True


async def get_job(
    job_id: int,
    *,
    session_factory: async_sessionmaker[AsyncSession] | None = None,
) -> Job | None:
    async with translate_store_errors("get_job"):
        async with _factory(session_factory)() as db:
            return await db.get(Job, job_id)


async def count_by_status(
    *,
    session_factory: async_sessionmaker[AsyncSession] | None = None,
) -> dict[str, int]:
    """Return ``{"Queued": n, "Running": n, "Failed": n}``."""
    counts = {status.value: 0 for status in JobStatus}
    async with translate_store_errors("count_by_status"):
        async with _factory(session_factory)() as db:
            result = await db.execute(select(Job.status, func.count()).group_by(Job.status))
            for status, count in result.all():
                counts[JobStatus(status).value] = count
    return counts
