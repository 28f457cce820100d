"""Jobs API router — producer and inspection endpoints."""

from __future__ import annotations

from fastapi import APIRouter, Depends, HTTPException
from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from rowqueue.db.engine import get_db
from rowqueue.db.models import Job, JobStatus
from rowqueue.schemas.jobs import JobBulkCreate, JobBulkOut, JobCreate, JobFailRequest, JobOut, JobStats
from rowqueue.utils.metrics import record_jobs_enqueued
from rowqueue.worker.claim import count_by_status, get_job, mark_failed
from rowqueue.worker.enqueue import enqueue_job, enqueue_jobs

router = APIRouter()


@router.post("", response_model=JobOut, status_code=201)
async def create_job(body: JobCreate, db: AsyncSession = Depends(get_db)):
    job = enqueue_job(db, body.payload, body.params)
    # Flush to get the store-assigned id; get_db commits on success.
    await db.flush()
    record_jobs_enqueued(1)
    return job


@router.post("/bulk", response_model=JobBulkOut, status_code=201)
async def create_jobs(body: JobBulkCreate):
    ids = await enqueue_jobs((item.payload, item.params) for item in body.jobs)
    return JobBulkOut(ids=ids)


@router.get("", response_model=list[JobOut])
async def list_jobs(
    status: JobStatus | None = None,
    limit: int = 100,
    offset: int = 0,
    db: AsyncSession = Depends(get_db),
):
    stmt = select(Job).order_by(Job.id).limit(max(1, min(limit, 1000))).offset(max(0, offset))
    if status is not None:
        stmt = stmt.where(Job.status == status)
    result = await db.execute(stmt)
    return list(result.scalars().all())


@router.get("/stats", response_model=JobStats)
async def job_stats():
    return JobStats(**await count_by_status())


@router.get("/{job_id}", response_model=JobOut)
async def read_job(job_id: int):
    job = await get_job(job_id)
    if job is None:
        raise HTTPException(status_code=404, detail="Job not found")
    return job


@router.post("/{job_id}/fail", response_model=JobOut)
async def fail_job(job_id: int, body: JobFailRequest | None = None):
    error = body.error if body is not None else None
    if not await mark_failed(job_id, error):
        job = await get_job(job_id)
        if job is None:
            raise HTTPException(status_code=404, detail="Job not found")
        raise HTTPException(
            status_code=409,
            detail=f"Job {job_id} is {job.status.value}; only Running jobs can be marked Failed",
        )
    return await get_job(job_id)
