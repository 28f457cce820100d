"""Tests for the claim protocol, failure reporting and quarantine."""

from __future__ import annotations

import asyncio

import pytest
from sqlalchemy import exc as sa_exc
from sqlalchemy.dialects import postgresql, sqlite

from rowqueue.db.models import Job, JobStatus
from rowqueue.errors import DecodeError, StoreConnectionError, TransactionError
from rowqueue.schemas.payloads import FollowUpParams, NoopPayload, SendEmailPayload
from rowqueue.utils.metrics import metrics
from rowqueue.worker.claim import (
    build_claim_statement,
    claim_jobs,
    count_by_status,
    get_job,
    mark_failed,
    quarantine_job,
)
from rowqueue.worker.enqueue import enqueue_jobs


async def _seed(session_factory, n: int) -> list[int]:
    return await enqueue_jobs([(NoopPayload(), None)] * n, session_factory=session_factory)


async def _insert_raw(session_factory, payload, params=None) -> int:
    async with session_factory() as db:
        async with db.begin():
            job = Job(status=JobStatus.QUEUED, payload=payload, params=params)
            db.add(job)
            await db.flush()
            return job.id


class _FailingSession:
    def __init__(self, error: Exception):
        self._error = error

    async def __aenter__(self):
        raise self._error

    async def __aexit__(self, *exc_info):
        return False


def _failing_factory(error: Exception):
    return lambda: _FailingSession(error)


# ─────────────────────────────────────────────────────────────────────────────
# Statement shape
# ─────────────────────────────────────────────────────────────────────────────


class TestClaimStatement:
    def test_postgres_rendering_skips_locked_rows(self):
        sql = str(build_claim_statement(5).compile(dialect=postgresql.dialect()))
        assert sql.startswith("UPDATE jobs SET")
        assert "FOR UPDATE SKIP LOCKED" in sql
        assert "ORDER BY jobs_1.id" in sql
        assert "LIMIT" in sql
        assert "RETURNING jobs.id, jobs.status, jobs.payload, jobs.params" in sql

    def test_subquery_reads_an_alias_of_the_target(self):
        sql = str(build_claim_statement(5).compile(dialect=postgresql.dialect()))
        assert "FROM jobs AS jobs_1" in sql

    def test_sqlite_rendering_has_no_locking_clause(self):
        sql = str(build_claim_statement(5).compile(dialect=sqlite.dialect()))
        assert "FOR UPDATE" not in sql
        assert "RETURNING" in sql


# ─────────────────────────────────────────────────────────────────────────────
# Claiming
# ─────────────────────────────────────────────────────────────────────────────


class TestClaimJobs:
    async def test_empty_queue_returns_nothing(self, session_factory):
        assert await claim_jobs(5, session_factory=session_factory) == []

    async def test_zero_batch_size_claims_nothing(self, session_factory):
        await _seed(session_factory, 3)
        assert await claim_jobs(0, session_factory=session_factory) == []
        assert (await count_by_status(session_factory=session_factory))["Queued"] == 3

    async def test_claims_oldest_first(self, session_factory):
        ids = await _seed(session_factory, 8)
        claimed = await claim_jobs(3, session_factory=session_factory)
        assert [j.id for j in claimed] == ids[:3]
        assert all(j.status == JobStatus.RUNNING for j in claimed)

    async def test_short_queue_returns_what_is_there(self, session_factory):
        ids = await _seed(session_factory, 2)
        claimed = await claim_jobs(5, session_factory=session_factory)
        assert [j.id for j in claimed] == ids

    async def test_sequential_claims_are_disjoint(self, session_factory):
        ids = await _seed(session_factory, 7)
        first = await claim_jobs(3, session_factory=session_factory)
        second = await claim_jobs(3, session_factory=session_factory)
        third = await claim_jobs(3, session_factory=session_factory)
        assert [j.id for j in first] == ids[0:3]
        assert [j.id for j in second] == ids[3:6]
        assert [j.id for j in third] == ids[6:7]
        assert await claim_jobs(3, session_factory=session_factory) == []

    async def test_claimed_rows_stay_running(self, session_factory):
        await _seed(session_factory, 4)
        claimed = await claim_jobs(2, session_factory=session_factory)
        await claim_jobs(2, session_factory=session_factory)
        for job in claimed:
            row = await get_job(job.id, session_factory=session_factory)
            assert row.status == JobStatus.RUNNING
        assert await count_by_status(session_factory=session_factory) == {
            "Queued": 0, "Running": 4, "Failed": 0,
        }

    async def test_decodes_payload_and_params(self, session_factory):
        await enqueue_jobs(
            [(SendEmailPayload(email="user@example.com"), FollowUpParams(value=True))],
            session_factory=session_factory,
        )
        (job,) = await claim_jobs(1, session_factory=session_factory)
        assert job.payload == SendEmailPayload(email="user@example.com")
        assert job.params == FollowUpParams(value=True)

    async def test_records_metrics(self, session_factory):
        await _seed(session_factory, 3)
        await claim_jobs(2, session_factory=session_factory)
        assert metrics.get_counter("jobs_claimed_total") == 2
        assert metrics.get_histogram_stats("claim_duration_seconds")["count"] == 1


class TestConcurrentClaims:
    async def test_two_concurrent_claims_never_overlap(self, session_factory):
        ids = await _seed(session_factory, 10)
        first, second = await asyncio.gather(
            claim_jobs(5, session_factory=session_factory),
            claim_jobs(5, session_factory=session_factory),
        )
        a, b = {j.id for j in first}, {j.id for j in second}
        assert a.isdisjoint(b)
        assert a | b == set(ids)

    async def test_many_claimers_lose_nothing(self, session_factory):
        ids = await _seed(session_factory, 10)
        batches = await asyncio.gather(
            *(claim_jobs(3, session_factory=session_factory) for _ in range(4))
        )
        claimed = [j.id for batch in batches for j in batch]
        assert len(claimed) == len(set(claimed))
        assert sorted(claimed) == ids
        for batch in batches:
            assert [j.id for j in batch] == sorted(j.id for j in batch)


class TestClaimDecodeFailure:
    async def test_undecodable_row_rolls_back_whole_claim(self, session_factory):
        await _seed(session_factory, 1)
        bad_id = await _insert_raw(session_factory, {"kind": "SendSms", "number": "123"})
        await _seed(session_factory, 1)

        with pytest.raises(DecodeError) as exc_info:
            await claim_jobs(5, session_factory=session_factory)

        assert exc_info.value.job_id == bad_id
        assert exc_info.value.field == "payload"
        assert await count_by_status(session_factory=session_factory) == {
            "Queued": 3, "Running": 0, "Failed": 0,
        }
        assert metrics.get_counter("claim_errors_total", {"error": "decode"}) == 1

    async def test_undecodable_params_reported(self, session_factory):
        bad_id = await _insert_raw(session_factory, {"kind": "Noop"}, {"kind": "FollowUp", "value": "yes"})
        with pytest.raises(DecodeError) as exc_info:
            await claim_jobs(1, session_factory=session_factory)
        assert exc_info.value.job_id == bad_id
        assert exc_info.value.field == "params"

    async def test_bad_row_outside_batch_does_not_interfere(self, session_factory):
        ids = await _seed(session_factory, 2)
        await _insert_raw(session_factory, {"kind": "Bogus"})
        claimed = await claim_jobs(2, session_factory=session_factory)
        assert [j.id for j in claimed] == ids


class TestClaimStoreErrors:
    async def test_connection_refused_maps_to_store_connection_error(self):
        error = sa_exc.OperationalError("BEGIN", {}, Exception("connection refused"))
        with pytest.raises(StoreConnectionError):
            await claim_jobs(5, session_factory=_failing_factory(error))
        assert metrics.get_counter("claim_errors_total", {"error": "StoreConnectionError"}) == 1

    async def test_lock_timeout_maps_to_transaction_error(self):
        error = sa_exc.OperationalError("BEGIN IMMEDIATE", {}, Exception("database is locked"))
        with pytest.raises(TransactionError):
            await claim_jobs(5, session_factory=_failing_factory(error))

    async def test_integrity_error_maps_to_transaction_error(self):
        error = sa_exc.IntegrityError("UPDATE", {}, Exception("constraint failed"))
        with pytest.raises(TransactionError):
            await claim_jobs(5, session_factory=_failing_factory(error))


# ─────────────────────────────────────────────────────────────────────────────
# Failure reporting / quarantine
# ─────────────────────────────────────────────────────────────────────────────


class TestMarkFailed:
    async def test_running_job_becomes_failed(self, session_factory):
        await _seed(session_factory, 1)
        (job,) = await claim_jobs(1, session_factory=session_factory)

        assert await mark_failed(job.id, "smtp timeout", session_factory=session_factory) is True

        row = await get_job(job.id, session_factory=session_factory)
        assert row.status == JobStatus.FAILED
        assert row.error_message == "smtp timeout"
        assert metrics.get_counter("jobs_failed_total", {"reason": "reported"}) == 1

    async def test_queued_job_is_left_alone(self, session_factory):
        (job_id,) = await _seed(session_factory, 1)
        assert await mark_failed(job_id, "nope", session_factory=session_factory) is False
        assert (await get_job(job_id, session_factory=session_factory)).status == JobStatus.QUEUED

    async def test_failed_job_is_not_failed_twice(self, session_factory):
        await _seed(session_factory, 1)
        (job,) = await claim_jobs(1, session_factory=session_factory)
        assert await mark_failed(job.id, "first", session_factory=session_factory) is True
        assert await mark_failed(job.id, "second", session_factory=session_factory) is False
        assert (await get_job(job.id, session_factory=session_factory)).error_message == "first"

    async def test_missing_job(self, session_factory):
        assert await mark_failed(999, "gone", session_factory=session_factory) is False

    async def test_long_error_truncated(self, session_factory):
        await _seed(session_factory, 1)
        (job,) = await claim_jobs(1, session_factory=session_factory)
        await mark_failed(job.id, "x" * 5000, session_factory=session_factory)
        row = await get_job(job.id, session_factory=session_factory)
        assert len(row.error_message) == 2000

    async def test_failed_job_is_never_claimed_again(self, session_factory):
        await _seed(session_factory, 2)
        (job,) = await claim_jobs(1, session_factory=session_factory)
        await mark_failed(job.id, "boom", session_factory=session_factory)
        claimed = await claim_jobs(5, session_factory=session_factory)
        assert job.id not in [j.id for j in claimed]


class TestQuarantine:
    async def test_queued_row_moves_to_failed(self, session_factory):
        bad_id = await _insert_raw(session_factory, {"kind": "Bogus"})
        assert await quarantine_job(bad_id, "unknown kind", session_factory=session_factory) is True
        row = await get_job(bad_id, session_factory=session_factory)
        assert row.status == JobStatus.FAILED
        assert row.error_message == "undecodable: unknown kind"
        assert metrics.get_counter("jobs_failed_total", {"reason": "quarantine"}) == 1

    async def test_running_row_is_not_quarantined(self, session_factory):
        await _seed(session_factory, 1)
        (job,) = await claim_jobs(1, session_factory=session_factory)
        assert await quarantine_job(job.id, "late", session_factory=session_factory) is False
        assert (await get_job(job.id, session_factory=session_factory)).status == JobStatus.RUNNING

    async def test_claims_proceed_after_quarantine(self, session_factory):
        good = await _seed(session_factory, 1)
        bad_id = await _insert_raw(session_factory, {"kind": "Bogus"})
        good += await _seed(session_factory, 1)

        with pytest.raises(DecodeError):
            await claim_jobs(5, session_factory=session_factory)
        await quarantine_job(bad_id, "unknown kind", session_factory=session_factory)

        claimed = await claim_jobs(5, session_factory=session_factory)
        assert [j.id for j in claimed] == good


class TestInspection:
    async def test_count_by_status_reports_every_status(self, session_factory):
        assert await count_by_status(session_factory=session_factory) == {
            "Queued": 0, "Running": 0, "Failed": 0,
        }

    async def test_get_job_missing(self, session_factory):
        assert await get_job(12345, session_factory=session_factory) is None
