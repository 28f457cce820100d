"""Producer helpers for inserting Queued jobs.

Two entry points:
  enqueue_job(db, payload, params)  — synchronous add to the caller's session;
                                      caller commits, so the job lands in the
                                      same transaction as its other writes.
  enqueue_jobs(items)               — bulk INSERT … RETURNING id in one
                                      transaction of its own.

Producers bypass the claim protocol entirely: they only ever write
``status='Queued'`` rows.
"""

from __future__ import annotations

import logging
from typing import Iterable, Sequence

from sqlalchemy import insert
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from rowqueue.db import engine as db_engine
from rowqueue.db.models import Job, JobStatus
from rowqueue.errors import translate_store_errors
from rowqueue.schemas.payloads import (
    FollowUpParams,
    NoopParams,
    NoopPayload,
    SendEmailPayload,
    params_to_json,
    payload_to_json,
)
from rowqueue.utils.metrics import record_jobs_enqueued

logger = logging.getLogger("rowqueue.worker.enqueue")

JobSpec = tuple[NoopPayload | SendEmailPayload, NoopParams | FollowUpParams | None]

DEMO_EMAIL = "user@example.com"


def enqueue_job(
    db_session,
    payload: NoopPayload | SendEmailPayload,
    params: NoopParams | FollowUpParams | None = None,
) -> Job:
    """Add a Queued Job to *db_session*.

    The job is NOT committed here; the caller must ``await db.commit()``.
    The id is assigned by the store on flush.
    """
    job = Job(
        status=JobStatus.QUEUED,
        payload=payload_to_json(payload),
        params=params_to_json(params),
    )
    db_session.add(job)
    return job


async def enqueue_jobs(
    items: Iterable[JobSpec],
    *,
    session_factory: async_sessionmaker[AsyncSession] | None = None,
) -> list[int]:
    """Insert ``(payload, params)`` pairs as Queued jobs; return ids in input order."""
    rows = [
        {
            "status": JobStatus.QUEUED,
            "payload": payload_to_json(payload),
            "params": params_to_json(params),
        }
        for payload, params in items
    ]
    if not rows:
        return []

    factory = session_factory or db_engine.async_session
    async with translate_store_errors("enqueue"):
        async with factory() as db:
            async with db.begin():
                result = await db.execute(
                    insert(Job).returning(Job.id, sort_by_parameter_order=True),
                    rows,
                )
                ids = list(result.scalars().all())

    record_jobs_enqueued(len(ids))
    logger.info("Enqueued %d job(s) (ids %s..%s)", len(ids), ids[0], ids[-1])
    return ids


def demo_job_specs() -> Sequence[JobSpec]:
    """The illustrative 20-job set.

    Odd positions send an email, even positions are no-ops.  Position 2
    carries Noop params, 7 FollowUp(true), 14 FollowUp(false).
    """
    special_params: dict[int, NoopParams | FollowUpParams] = {
        2: NoopParams(),
        7: FollowUpParams(value=True),
        14: FollowUpParams(value=False),
    }
    specs: list[JobSpec] = []
    for position in range(1, 21):
        payload = SendEmailPayload(email=DEMO_EMAIL) if position % 2 else NoopPayload()
        specs.append((payload, special_params.get(position)))
    return specs


async def seed_demo_jobs(
    *,
    session_factory: async_sessionmaker[AsyncSession] | None = None,
) -> list[int]:
    logger.info("Inserting demo jobs...")
    return await enqueue_jobs(demo_job_specs(), session_factory=session_factory)
