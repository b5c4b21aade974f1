"""Shared fixtures for deploy_core tests.

Store tests run against a file-backed SQLite database in WAL mode so that
concurrent store calls really use separate connections.
"""

from __future__ import annotations

from collections.abc import AsyncGenerator
from pathlib import Path

import pytest_asyncio
from deploy_core.models.orgapp import MemberRole
from deploy_core.state.repository import ApplicationRepository, OrganizationRepository
from deploy_core.state.sqlite_adapter import create_local_tables, get_local_engine
from deploy_core.state.store import StateStore
from sqlalchemy.ext.asyncio import AsyncEngine


@pytest_asyncio.fixture
async def engine(tmp_path: Path) -> AsyncGenerator[AsyncEngine, None]:
    engine = get_local_engine(tmp_path / "state.db")
    await create_local_tables(engine)
    yield engine
    await engine.dispose()


@pytest_asyncio.fixture
async def store(engine: AsyncEngine) -> StateStore:
    """A StateStore seeded with org ``org-1`` (members u1, u2) and apps app-1, app-2."""
    store = StateStore(engine)
    async with store.session() as session:
        orgs = OrganizationRepository(session)
        await orgs.create("org-1", "Acme Inc", "acme")
        await orgs.create("org-2", "Globex", "globex")
        await orgs.add_member("org-1", "u1", role=MemberRole.OWNER)
        await orgs.add_member("org-1", "u2")
        await orgs.add_member("org-2", "u9", role=MemberRole.OWNER)
        apps = ApplicationRepository(session)
        await apps.create("app-1", "Budget Tracker", latest_version="1", generated_app_id="gen-1")
        await apps.create("app-2", "Leave Planner", latest_version="3")
    return store
