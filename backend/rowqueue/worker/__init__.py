"""Durable worker package.

The worker claims jobs from the ``jobs`` table and dispatches them to the
handler registry.

Single-process (SQLite dev):
    Worker runs as an asyncio.Task inside the API process.
    Enabled automatically when WORKER_EMBEDDED=true (default for SQLite).

Multi-process (PostgreSQL production):
    Start any number of workers separately:
        python -m rowqueue.worker          # default worker ID from hostname
        WORKER_ID=w1 python -m rowqueue.worker

Claiming uses a single ``UPDATE … WHERE id IN (SELECT … FOR UPDATE SKIP
LOCKED) RETURNING …`` statement, so concurrent workers never receive the same
job and never wait on each other's locks.
"""
