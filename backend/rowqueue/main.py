"""FastAPI application entry point."""

from __future__ import annotations

import asyncio
import logging
from contextlib import asynccontextmanager

from fastapi import FastAPI, Request
from fastapi.responses import JSONResponse, PlainTextResponse

from rowqueue import __version__
from rowqueue.config import settings
from rowqueue.db import engine as db_engine
from rowqueue.db.models import Base
from rowqueue.errors import StoreConnectionError, TransactionError

from rowqueue.api.jobs import router as jobs_router

from rowqueue.utils.logger import setup_logger
setup_logger(log_format=settings.LOG_FORMAT, log_level="DEBUG" if settings.DEBUG else settings.LOG_LEVEL)
logger = logging.getLogger("rowqueue.main")


@asynccontextmanager
async def lifespan(app: FastAPI):
    if settings.is_sqlite:
        async with db_engine.engine.begin() as conn:
            await conn.run_sync(Base.metadata.create_all)
    # else: for PostgreSQL, run `alembic upgrade head` before starting the server

    logger.info("Application lifespan startup complete — entering serve loop")

    # Start embedded worker when configured (default for SQLite dev mode)
    _worker_task: asyncio.Task | None = None
    if settings.WORKER_EMBEDDED:
        from rowqueue.worker.loop import worker_loop as _worker_loop
        _worker_task = asyncio.create_task(_worker_loop())
        logger.info(
            "Embedded worker started (batch_size=%d, poll_interval=%.1fs)",
            settings.WORKER_BATCH_SIZE,
            settings.WORKER_POLL_INTERVAL,
        )
    try:
        yield
    finally:
        if _worker_task is not None:
            _worker_task.cancel()
            try:
                await _worker_task
            except asyncio.CancelledError:
                pass
            except Exception:
                logger.exception("Embedded worker exited with an error")
        await db_engine.engine.dispose()


app = FastAPI(
    title="rowqueue",
    description="Relational-database-backed job queue",
    version=__version__,
    lifespan=lifespan,
)

app.include_router(jobs_router, prefix="/api/jobs", tags=["jobs"])


@app.exception_handler(StoreConnectionError)
async def _store_unavailable(request: Request, exc: StoreConnectionError):
    logger.error("Store unavailable during %s %s: %s", request.method, request.url.path, exc)
    return JSONResponse(status_code=503, content={"detail": "Job store unavailable"})


@app.exception_handler(TransactionError)
async def _transaction_aborted(request: Request, exc: TransactionError):
    logger.warning("Transaction aborted during %s %s: %s", request.method, request.url.path, exc)
    return JSONResponse(status_code=503, content={"detail": "Transaction aborted, retry the request"})


@app.get("/api/health")
async def health():
    return {"status": "ok"}


@app.get("/api/metrics", response_class=PlainTextResponse, tags=["observability"])
async def prometheus_metrics():
    """Prometheus-compatible text exposition of in-process metrics.

    Example line: ``rowqueue_jobs_claimed_total 42``
    """
    from rowqueue.utils.metrics import to_prometheus_text
    return to_prometheus_text()


@app.get("/api/metrics/summary", tags=["observability"])
async def metrics_summary():
    from rowqueue.utils.metrics import get_metrics_summary
    return get_metrics_summary()


def serve() -> None:
    """Run the API with uvicorn on ``settings.HOST``:``settings.PORT``.

        rowqueue-api                 # installed console script
        python -m rowqueue.main
    """
    import uvicorn

    uvicorn.run(
        "rowqueue.main:app",
        host=settings.HOST,
        port=settings.PORT,
        reload=settings.DEBUG,
        log_config=None,  # keep the handlers installed by setup_logger
    )


if __name__ == "__main__":
    serve()
