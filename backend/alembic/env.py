"""Alembic environment for the ``jobs`` schema.

    cd backend/
    alembic upgrade head                 # apply migrations
    alembic upgrade head --sql           # print the SQL instead (offline)
    alembic downgrade base               # drop the schema

The target database comes from ``rowqueue.config.settings`` (``QUEUE_DB_URL``
or the ``QUEUE_DB_*`` parts, ``.env`` honoured).  Migrations run through a
synchronous driver: ``sqlite3`` for SQLite, ``psycopg2`` for PostgreSQL
(``pip install rowqueue[migrations]``).
"""

from __future__ import annotations

import os
import sys
from logging.config import fileConfig

from alembic import context
from sqlalchemy import engine_from_config, pool

# Allow `alembic` to be run from any cwd.
sys.path.insert(0, os.path.join(os.path.dirname(__file__), ".."))

from rowqueue.config import settings  # noqa: E402
from rowqueue.db.models import Base  # noqa: E402

config = context.config
if config.config_file_name is not None:
    fileConfig(config.config_file_name)

config.set_main_option("sqlalchemy.url", settings.sync_db_url())

target_metadata = Base.metadata


def _configure_options() -> dict:
    return {
        "target_metadata": target_metadata,
        "compare_type": True,
        "compare_server_default": True,
        # SQLite has no ALTER COLUMN; batch mode rebuilds the table.
        "render_as_batch": settings.is_sqlite,
    }


def run_migrations_offline() -> None:
    context.configure(
        url=config.get_main_option("sqlalchemy.url"),
        literal_binds=True,
        dialect_opts={"paramstyle": "named"},
        **_configure_options(),
    )
    with context.begin_transaction():
        context.run_migrations()


def run_migrations_online() -> None:
    connectable = engine_from_config(
        config.get_section(config.config_ini_section, {}),
        prefix="sqlalchemy.",
        poolclass=pool.NullPool,
    )
    with connectable.connect() as connection:
        context.configure(connection=connection, **_configure_options())
        with context.begin_transaction():
            context.run_migrations()


if context.is_offline_mode():
    run_migrations_offline()
else:
    run_migrations_online()
