"""Worker process entrypoint.

Run as a standalone process (production PostgreSQL mode):

    python -m rowqueue.worker

    # With custom worker ID:
    WORKER_ID=worker-1 python -m rowqueue.worker

    # With custom batch size:
    WORKER_BATCH_SIZE=20 python -m rowqueue.worker

The worker will:
1. Load rowqueue.config.settings (honours .env file)
2. Block until the ``jobs`` table exists (new Alembic deployments may have a brief gap)
3. Start the claim-and-dispatch loop
4. Handle SIGINT/SIGTERM gracefully (finish the current step, then exit)

For single-process dev mode (SQLite), the worker is started automatically
as an asyncio.Task inside the API process (WORKER_EMBEDDED=true default).
"""

from __future__ import annotations

import asyncio
import logging
import os
import signal

logger = logging.getLogger("rowqueue.worker")


async def _wait_for_db(max_retries: int = 10, delay: float = 2.0) -> None:
    """Wait until the ``jobs`` table is accessible."""
    from sqlalchemy import text
    from rowqueue.db.engine import async_session

    for attempt in range(1, max_retries + 1):
        try:
            async with async_session() as db:
                await db.execute(text("SELECT 1 FROM jobs LIMIT 1"))
            logger.info("Database ready after %d attempt(s)", attempt)
            return
        except Exception as exc:
            logger.warning(
                "Database not ready (attempt %d/%d): %s", attempt, max_retries, exc
            )
            if attempt < max_retries:
                await asyncio.sleep(delay)

    raise RuntimeError(
        f"Database not accessible after {max_retries} attempts. "
        "Run `alembic upgrade head` before starting the worker."
    )


async def main() -> None:
    """Worker process entrypoint."""
    from rowqueue.config import settings
    from rowqueue.db.engine import engine
    from rowqueue.utils.logger import setup_logger
    from rowqueue.worker.loop import worker_loop

    setup_logger(log_format=settings.LOG_FORMAT, log_level=settings.LOG_LEVEL)

    worker_id = os.environ.get("WORKER_ID")

    logger.info(
        "Starting rowqueue worker (dialect=%s, batch_size=%d)",
        settings.QUEUE_DB_DIALECT,
        settings.WORKER_BATCH_SIZE,
    )

    await _wait_for_db()

    loop = asyncio.get_running_loop()
    stop_event = asyncio.Event()

    def _handle_stop(*_):
        logger.info("Received shutdown signal — stopping worker")
        stop_event.set()

    # Register SIGINT/SIGTERM handlers (Unix only; Windows uses default)
    for sig in (signal.SIGINT, signal.SIGTERM):
        try:
            loop.add_signal_handler(sig, _handle_stop)
        except (NotImplementedError, AttributeError):
            pass

    worker_task = asyncio.create_task(worker_loop(worker_id=worker_id))
    stop_task = asyncio.create_task(stop_event.wait())

    # Run until stop signal, or until the loop halts on an unrecoverable store error
    done, _ = await asyncio.wait({worker_task, stop_task}, return_when=asyncio.FIRST_COMPLETED)
    try:
        if worker_task in done:
            stop_task.cancel()
            worker_task.result()  # re-raise the fatal error, if any
        else:
            worker_task.cancel()
            try:
                await worker_task
            except asyncio.CancelledError:
                pass
    finally:
        await engine.dispose()

    logger.info("Worker stopped cleanly")


if __name__ == "__main__":
    asyncio.run(main())
