"""Worker poll-claim-dispatch loop.

State machine::

    IDLE ──► CLAIMING ──► DISPATCHING ──► IDLE ...
                 │
                 └──► STOPPED   (cancelled, max_cycles reached, or the store
                                 stayed unreachable for
                                 WORKER_MAX_CONNECTION_FAILURES cycles)

Each cycle claims up to ``batch_size`` jobs (see ``worker.claim``), then,
outside the claim transaction, hands every payload to the handler registry.
A handler that raises gets its job marked ``Failed`` in a separate
transaction.  The claimed batch is also converted into DomainJobs; jobs whose
id cannot be narrowed are only excluded from that batch and reported.

Error policy:
  DecodeError           claim rolled back; the offending row is quarantined
                        (Queued -> Failed) and the next cycle runs at once.
  TransactionError      logged; retried after backoff.
  StoreConnectionError  retried with exponential backoff; after too many
                        consecutive failures the loop re-raises and stops.
"""

from __future__ import annotations

import asyncio
import enum
import logging
import socket
import uuid
from dataclasses import dataclass, field

from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from rowqueue.config import settings
from rowqueue.domain import ClaimedJob, DomainJob, convert_batch
from rowqueue.errors import DecodeError, QueueError, StoreConnectionError, TransactionError
from rowqueue.registry.handlers import HandlerRegistry, default_registry
from rowqueue.utils.logger import ctx_job_id, ctx_worker_id
from rowqueue.utils.metrics import record_conversion_rejected, record_job_handled
from rowqueue.worker.claim import claim_jobs, mark_failed, quarantine_job

logger = logging.getLogger("rowqueue.worker.loop")


def _default_worker_id() -> str:
    return f"{socket.gethostname()}-{uuid.uuid4().hex[:8]}"


class WorkerState(str, enum.Enum):
    IDLE = "idle"
    CLAIMING = "claiming"
    DISPATCHING = "dispatching"
    STOPPED = "stopped"


@dataclass
class BatchReport:
    claimed_ids: list[int] = field(default_factory=list)
    handled_ids: list[int] = field(default_factory=list)
    failed_ids: list[int] = field(default_factory=list)
    rejected_ids: list[int] = field(default_factory=list)
    quarantined_ids: list[int] = field(default_factory=list)
    domain_jobs: list[DomainJob] = field(default_factory=list)

    @property
    def has_failures(self) -> bool:
        return bool(self.failed_ids or self.rejected_ids or self.quarantined_ids)


@dataclass
class WorkerStatus:
    worker_id: str
    state: WorkerState = WorkerState.IDLE
    cycles: int = 0
    jobs_claimed: int = 0
    jobs_failed: int = 0
    consecutive_store_failures: int = 0


# ─────────────────────────────────────────────────────────────────────────────
# Dispatch
# ─────────────────────────────────────────────────────────────────────────────


async def dispatch_job(
    job: ClaimedJob,
    registry: HandlerRegistry,
    *,
    session_factory: async_sessionmaker[AsyncSession] | None = None,
) -> bool:
    """Run the handler for *job*; mark it Failed if the handler raises.

    Returns True when the handler completed.
    """
    token = ctx_job_id.set(job.id)
    try:
        logger.info(
            "Working on job #%d (%s) -> %s | %s",
            job.id, job.status.value, job.payload.kind, job.params.kind if job.params else None,
        )
        try:
            await registry.handle(job.payload, job.params)
        except Exception as exc:
            logger.error("Job %d handler failed: %s", job.id, exc, exc_info=True)
            record_job_handled(job.payload.kind, "failed")
            try:
                await mark_failed(
                    job.id, f"{type(exc).__name__}: {exc}", reason="handler", session_factory=session_factory
                )
            except QueueError:
                # The job stays Running; nothing else can record the failure.
                logger.exception("Could not record failure of job %d", job.id)
            return False
        record_job_handled(job.payload.kind, "ok")
        return True
    finally:
        ctx_job_id.reset(token)


# ─────────────────────────────────────────────────────────────────────────────
# One cycle
# ─────────────────────────────────────────────────────────────────────────────


async def run_once(
    *,
    batch_size: int | None = None,
    registry: HandlerRegistry | None = None,
    session_factory: async_sessionmaker[AsyncSession] | None = None,
    status: WorkerStatus | None = None,
) -> BatchReport:
    """Claim one batch, dispatch it, convert it; return what happened.

    ``StoreConnectionError`` / ``TransactionError`` propagate to the caller.
    """
    _batch_size = batch_size if batch_size is not None else settings.WORKER_BATCH_SIZE
    _registry = registry or default_registry
    report = BatchReport()

    if status is not None:
        status.state = WorkerState.CLAIMING
    try:
        jobs = await claim_jobs(_batch_size, session_factory=session_factory)
    except DecodeError as err:
        if err.job_id is None:
            raise
        if await quarantine_job(err.job_id, str(err), session_factory=session_factory):
            report.quarantined_ids.append(err.job_id)
        return report
    report.claimed_ids = [job.id for job in jobs]

    if status is not None:
        status.state = WorkerState.DISPATCHING
    for job in jobs:
        if await dispatch_job(job, _registry, session_factory=session_factory):
            report.handled_ids.append(job.id)
        else:
            report.failed_ids.append(job.id)

    conversion = convert_batch(jobs)
    report.domain_jobs = conversion.converted
    report.rejected_ids = conversion.rejected_ids
    if conversion.rejected_ids:
        record_conversion_rejected(len(conversion.rejected_ids))

    if report.has_failures:
        logger.warning(
            "Batch finished with failures: claimed=%d handler_failed=%s not_convertible=%s quarantined=%s",
            len(report.claimed_ids), report.failed_ids, report.rejected_ids, report.quarantined_ids,
        )
    elif jobs:
        logger.info(
            "Batch finished: %d job(s) handled, %d domain job(s)",
            len(report.handled_ids), len(report.domain_jobs),
        )
    return report


def _backoff_seconds(consecutive_failures: int) -> float:
    delay = settings.WORKER_RETRY_BACKOFF_SECONDS * (2 ** max(0, consecutive_failures - 1))
    return min(delay, settings.WORKER_RETRY_BACKOFF_MAX_SECONDS)


# ─────────────────────────────────────────────────────────────────────────────
# Main worker loop
# ─────────────────────────────────────────────────────────────────────────────


async def worker_loop(
    worker_id: str | None = None,
    batch_size: int | None = None,
    poll_interval: float | None = None,
    *,
    registry: HandlerRegistry | None = None,
    session_factory: async_sessionmaker[AsyncSession] | None = None,
    max_cycles: int | None = None,
    status: WorkerStatus | None = None,
) -> WorkerStatus:
    """Continuously claim and dispatch jobs.

    Runs until cancelled (e.g. on shutdown), until *max_cycles* cycles have
    run, or until the store has been unreachable for
    ``WORKER_MAX_CONNECTION_FAILURES`` consecutive cycles (re-raises).

    Args:
        worker_id:     Unique identifier for this worker (default: hostname+uuid).
        batch_size:    Max jobs claimed per cycle (default: WORKER_BATCH_SIZE).
        poll_interval: Seconds to sleep after an empty claim (default: WORKER_POLL_INTERVAL).
    """
    _worker_id = worker_id or _default_worker_id()
    _batch_size = batch_size if batch_size is not None else settings.WORKER_BATCH_SIZE
    _poll_interval = poll_interval if poll_interval is not None else settings.WORKER_POLL_INTERVAL
    _status = status or WorkerStatus(worker_id=_worker_id)
    worker_token = ctx_worker_id.set(_worker_id)

    logger.info(
        "Worker %s started (batch_size=%d, poll_interval=%.1fs, dialect=%s)",
        _worker_id, _batch_size, _poll_interval, settings.QUEUE_DB_DIALECT,
    )

    try:
        while max_cycles is None or _status.cycles < max_cycles:
            delay = 0.0
            try:
                report = await run_once(
                    batch_size=_batch_size,
                    registry=registry,
                    session_factory=session_factory,
                    status=_status,
                )
                _status.consecutive_store_failures = 0
                _status.jobs_claimed += len(report.claimed_ids)
                _status.jobs_failed += len(report.failed_ids) + len(report.quarantined_ids)
                if not report.claimed_ids and not report.quarantined_ids:
                    delay = _poll_interval

            except StoreConnectionError:
                _status.consecutive_store_failures += 1
                if _status.consecutive_store_failures >= settings.WORKER_MAX_CONNECTION_FAILURES:
                    logger.error(
                        "Worker %s giving up after %d consecutive store connection failures",
                        _worker_id, _status.consecutive_store_failures,
                    )
                    raise
                delay = _backoff_seconds(_status.consecutive_store_failures)
                logger.warning(
                    "Store unreachable (failure %d/%d); retrying in %.1fs",
                    _status.consecutive_store_failures,
                    settings.WORKER_MAX_CONNECTION_FAILURES,
                    delay,
                    exc_info=True,
                )

            except TransactionError:
                delay = _backoff_seconds(1)
                logger.warning("Claim transaction aborted; retrying in %.1fs", delay, exc_info=True)

            _status.cycles += 1
            _status.state = WorkerState.IDLE
            if delay and (max_cycles is None or _status.cycles < max_cycles):
                await asyncio.sleep(delay)

    except asyncio.CancelledError:
        logger.info("Worker %s shutting down after %d cycle(s)", _worker_id, _status.cycles)
        raise

    finally:
        _status.state = WorkerState.STOPPED
        ctx_worker_id.reset(worker_token)

    logger.info(
        "Worker %s stopped after %d cycle(s) (claimed=%d, failed=%d)",
        _worker_id, _status.cycles, _status.jobs_claimed, _status.jobs_failed,
    )
    return _status
