"""Health-check endpoint.

Always answers 200 so load-balancers see the service as alive; the
``db`` and ``provider`` fields report downstream reachability.
"""

from __future__ import annotations

import asyncio
import logging
from typing import Any

from fastapi import APIRouter
from sqlalchemy import text
from sqlalchemy.exc import SQLAlchemyError

from deploy_api import __version__
from deploy_api.dependencies import ProviderDep, StoreDep

logger = logging.getLogger(__name__)

# Short timeout so probes respond quickly when the provider hangs.
_PROVIDER_HEALTH_TIMEOUT = 2.0

router = APIRouter(tags=["health"])


async def _check_provider(provider: ProviderDep) -> bool:
    health_check = getattr(provider, "health_check", None)
    if health_check is None:
        return True
    try:
        return await asyncio.wait_for(health_check(), timeout=_PROVIDER_HEALTH_TIMEOUT)
    except TimeoutError:
        return False


@router.get("/health")
async def health(store: StoreDep, provider: ProviderDep) -> dict[str, Any]:
    result: dict[str, Any] = {
        "status": "healthy",
        "version": __version__,
        "db": "ok",
        "provider": "ok",
    }

    try:
        async with store.session() as session:
            await session.execute(text("SELECT 1"))
    except SQLAlchemyError as exc:
        logger.warning("DB health check failed: %s", exc)
        result["db"] = "degraded"

    if not await _check_provider(provider):
        result["provider"] = "unavailable"

    return result
