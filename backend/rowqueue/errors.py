"""Queue error taxonomy and store-error translation.

``StoreConnectionError`` and ``TransactionError`` abort a whole store
operation and are retryable by the worker loop.  ``DecodeError`` is a data
integrity fault for one row; ``RangeError`` only excludes a row from the
in-memory DomainJob batch.
"""

from __future__ import annotations

from contextlib import asynccontextmanager
from typing import AsyncIterator

from sqlalchemy import exc as sa_exc


class QueueError(Exception):
    """Base class for every error raised by rowqueue."""


class StoreConnectionError(QueueError):
    """The connection to the job store was lost or could not be opened."""


class TransactionError(QueueError):
    """The store rejected or aborted a transaction; nothing was committed."""


class DecodeError(QueueError):
    """A stored payload/params value does not match any known variant."""

    def __init__(self, message: str, *, job_id: int | None = None, field: str | None = None):
        self.job_id = job_id
        self.field = field
        prefix = f"job {job_id}: " if job_id is not None else ""
        label = f"{field}: " if field else ""
        super().__init__(f"{prefix}{label}{message}")


class RangeError(QueueError):
    """A job id cannot be narrowed into the domain identifier range."""

    def __init__(self, job_id: int, maximum: int):
        self.job_id = job_id
        self.maximum = maximum
        super().__init__(f"job id {job_id} is outside the domain identifier range 0..{maximum}")


class NoHandlerError(QueueError):
    """Raised when no handler is registered for a payload kind."""

    def __init__(self, kind: str):
        self.kind = kind
        super().__init__(f"No handler registered for payload kind '{kind}'")


def _is_connection_failure(err: BaseException) -> bool:
    if isinstance(err, sa_exc.DBAPIError) and err.connection_invalidated:
        return True
    # SQLite lock timeouts surface as OperationalError but the connection is fine.
    if "database is locked" in str(err):
        return False
    return isinstance(err, (sa_exc.OperationalError, sa_exc.InterfaceError, sa_exc.DisconnectionError, OSError))


@asynccontextmanager
async def translate_store_errors(operation: str) -> AsyncIterator[None]:
    """Re-raise SQLAlchemy / transport errors as ``QueueError`` subclasses.

    ``QueueError`` raised inside the block passes through untouched.
    """
    try:
        yield
    except QueueError:
        raise
    except (sa_exc.SQLAlchemyError, OSError) as err:
        if _is_connection_failure(err):
            raise StoreConnectionError(f"{operation}: store connection failed: {err}") from err
        raise TransactionError(f"{operation}: transaction aborted: {err}") from err
