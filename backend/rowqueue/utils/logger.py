"""Root logger setup: plain text for development, JSON for log shippers.

JSON records carry the ``worker_id`` / ``job_id`` of the worker cycle and
job being dispatched when those context variables are set.
"""
import contextvars
import logging
import sys

from pythonjsonlogger import jsonlogger

ctx_worker_id: contextvars.ContextVar[str | None] = contextvars.ContextVar("worker_id", default=None)
ctx_job_id: contextvars.ContextVar[int | None] = contextvars.ContextVar("job_id", default=None)

TEXT_FORMAT = "%(asctime)s - %(name)s - %(levelname)s - %(message)s"
JSON_FIELDS = "%(asctime)s %(levelname)s %(name)s %(message)s"

# Chatty libraries kept at WARNING regardless of LOG_LEVEL.
_QUIET_LOGGERS = ("aiosqlite", "asyncpg", "httpx", "alembic", "sqlalchemy.pool")


class CorrelationJsonFormatter(jsonlogger.JsonFormatter):
    def add_fields(self, log_record, record, message_dict):
        super().add_fields(log_record, record, message_dict)
        for key, var in (("worker_id", ctx_worker_id), ("job_id", ctx_job_id)):
            value = var.get()
            if value is not None:
                log_record[key] = value


def _build_formatter(log_format: str) -> logging.Formatter:
    if log_format.lower() == "json":
        return CorrelationJsonFormatter(
            JSON_FIELDS,
            rename_fields={"levelname": "level", "asctime": "timestamp"},
        )
    return logging.Formatter(TEXT_FORMAT)


def setup_logger(log_format: str = "text", log_level: str = "INFO"):
    """Install a single stdout handler on the root logger and return it."""
    root_logger = logging.getLogger()
    for handler in root_logger.handlers[:]:
        root_logger.removeHandler(handler)

    handler = logging.StreamHandler(sys.stdout)
    handler.setFormatter(_build_formatter(log_format))
    root_logger.addHandler(handler)
    root_logger.setLevel(getattr(logging, log_level.upper(), logging.INFO))

    for name in _QUIET_LOGGERS:
        logging.getLogger(name).setLevel(logging.WARNING)

    return root_logger
