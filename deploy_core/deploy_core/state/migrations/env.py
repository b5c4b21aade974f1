"""Alembic environment for the deployment state store.

The URL is taken from ``ALEMBIC_DATABASE_URL``, then the API's
``DEPLOY_API_DATABASE_URL``, then ``sqlalchemy.url`` in ``alembic.ini``.
Migrations run on a synchronous engine, so the async drivers the service
uses are swapped for their sync counterparts (asyncpg -> psycopg,
aiosqlite -> pysqlite).
"""

from __future__ import annotations

import logging
import os
from logging.config import fileConfig

from alembic import context
from deploy_core.state.tables import Base
from sqlalchemy import create_engine, pool
from sqlalchemy.engine import make_url

if context.config.config_file_name is not None:
    fileConfig(context.config.config_file_name)

logger = logging.getLogger("alembic.env")

_SYNC_DRIVERS: dict[str, str] = {
    "postgresql": "postgresql+psycopg",
    "postgresql+asyncpg": "postgresql+psycopg",
    "sqlite+aiosqlite": "sqlite",
}


def migration_url() -> str:
    raw = (
        os.environ.get("ALEMBIC_DATABASE_URL")
        or os.environ.get("DEPLOY_API_DATABASE_URL")
        or context.config.get_main_option("sqlalchemy.url")
    )
    if not raw:
        raise RuntimeError("No database URL: set ALEMBIC_DATABASE_URL or DEPLOY_API_DATABASE_URL")
    url = make_url(raw)
    driver = _SYNC_DRIVERS.get(url.drivername)
    if driver is not None:
        url = url.set(drivername=driver)
    logger.info("Migrating %s database %s", url.get_backend_name(), url.database)
    return url.render_as_string(hide_password=False)


def run_offline() -> None:
    """Emit the migration SQL instead of executing it."""
    context.configure(
        url=migration_url(),
        target_metadata=Base.metadata,
        literal_binds=True,
        dialect_opts={"paramstyle": "named"},
    )
    with context.begin_transaction():
        context.run_migrations()


def run_online() -> None:
    engine = create_engine(migration_url(), poolclass=pool.NullPool)
    try:
        with engine.connect() as connection:
            context.configure(
                connection=connection,
                target_metadata=Base.metadata,
                compare_type=True,
                # SQLite cannot ALTER most constraints in place.
                render_as_batch=connection.dialect.name == "sqlite",
            )
            with context.begin_transaction():
                context.run_migrations()
    finally:
        engine.dispose()


if context.is_offline_mode():
    run_offline()
else:
    run_online()
