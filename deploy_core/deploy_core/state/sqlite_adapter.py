"""SQLite backend for local development and tests.

Uses the same ORM tables as PostgreSQL through ``aiosqlite``.  Every
connection runs in WAL mode with a busy timeout so concurrent store calls
serialize on the write lock instead of failing immediately; this is what
lets the compare-and-swap tests exercise real concurrent writers.

In-memory databases give each connection its own private database, so
anything that opens more than one session at a time should use a file.
"""

from __future__ import annotations

import logging
from pathlib import Path

from sqlalchemy import event
from sqlalchemy.ext.asyncio import AsyncEngine, create_async_engine

logger = logging.getLogger(__name__)

_BUSY_TIMEOUT_MS = 10000


def get_local_engine(db_path: Path | str = ".deploy/state.db") -> AsyncEngine:
    """Create an async engine backed by a SQLite file (or ``:memory:``).

    Parent directories of *db_path* are created automatically.
    """
    if str(db_path) == ":memory:":
        url = "sqlite+aiosqlite:///:memory:"
    else:
        path = Path(db_path)
        path.parent.mkdir(parents=True, exist_ok=True)
        url = f"sqlite+aiosqlite:///{path}"

    engine = create_async_engine(
        url,
        echo=False,
        connect_args={"check_same_thread": False, "timeout": _BUSY_TIMEOUT_MS / 1000},
    )

    @event.listens_for(engine.sync_engine, "connect")
    def _set_sqlite_pragmas(dbapi_conn: object, _: object) -> None:
        cursor = dbapi_conn.cursor()  # type: ignore[attr-defined]
        cursor.execute("PRAGMA journal_mode=WAL")
        cursor.execute("PRAGMA foreign_keys=ON")
        cursor.execute("PRAGMA synchronous=NORMAL")
        cursor.execute(f"PRAGMA busy_timeout={_BUSY_TIMEOUT_MS}")
        cursor.close()

    logger.info("Created SQLite engine: %s", url)
    return engine


async def create_local_tables(engine: AsyncEngine) -> None:
    """Create every ORM table; idempotent, safe on every startup."""
    from deploy_core.state.tables import Base

    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)

    logger.info("SQLite tables created/verified")
