"""Fork-on-modify: give an organization its own copy before it edits an app.

An organization may modify an app it generated itself in place.  For
anything else the provider forks the generated app first, and the copy is
attached to the OrgApp afterwards.  Attaching is best effort: the fork
already exists at the provider, so a failed attach is reported in the
result and logged for follow-up instead of failing the request.
"""

from __future__ import annotations

import logging

from deploy_core.errors import LifecycleError, NotForkable
from deploy_core.models.orgapp import OrgAppRecord
from deploy_core.state.repository import ApplicationRepository
from deploy_core.state.store import StateStore
from pydantic import BaseModel
from sqlalchemy.exc import SQLAlchemyError

from deploy_api.services.event_bus import EventBus, EventType, get_event_bus
from deploy_api.services.provider_client import ComputeProvider

logger = logging.getLogger(__name__)


class AttachResult(BaseModel):
    """Outcome of linking a fresh fork to its OrgApp."""

    attached: bool
    error: str | None = None


class ModifyResult(BaseModel):
    generated_app_id: str
    forked: bool
    attach: AttachResult | None = None


class ForkService:
    def __init__(self, store: StateStore, provider: ComputeProvider, *, bus: EventBus | None = None) -> None:
        self._store = store
        self._provider = provider
        self._bus = bus or get_event_bus()

    async def modify(self, org_id: str, app_id: str, *, user_id: str | None = None) -> ModifyResult:
        """Return the generated app the organization should edit.

        Raises
        ------
        NotForkable
            If the OrgApp has no generated app behind it.
        ProviderError
            If the provider could not fork; nothing is changed locally.
        """
        record = await self._store.require(org_id, app_id)
        source_id = record.generated_app_id
        if not source_id:
            raise NotForkable(f"App {app_id} has no generated source to modify")

        async with self._store.session() as session:
            lineage = await ApplicationRepository(session).get_generated_app(source_id)
        if lineage is not None and lineage.owner_org_id == org_id:
            return ModifyResult(generated_app_id=source_id, forked=False)

        fork_id = await self._provider.fork(source_id)
        logger.info("Forked %s as %s for %s/%s", source_id, fork_id, org_id, app_id)

        attach = await self._attach(record, source_id, fork_id, user_id)
        if attach.attached:
            await self._bus.emit(
                EventType.APP_FORKED,
                org_id=org_id,
                data={"app_id": app_id, "forked_from_id": source_id, "generated_app_id": fork_id},
            )
        else:
            logger.error(
                "Fork %s of %s was created but not attached to %s/%s: %s",
                fork_id,
                source_id,
                org_id,
                app_id,
                attach.error,
            )
        return ModifyResult(generated_app_id=fork_id, forked=True, attach=attach)

    async def _attach(self, record: OrgAppRecord, source_id: str, fork_id: str, user_id: str | None) -> AttachResult:
        try:
            async with self._store.session() as session:
                await ApplicationRepository(session).record_generated_app(
                    fork_id,
                    owner_org_id=record.org_id,
                    created_by=user_id,
                    forked_from_id=source_id,
                )
            await self._store.mutate(
                record.org_id,
                record.app_id,
                lambda current: current.model_copy(update={"generated_app_id": fork_id}),
            )
        except LifecycleError as exc:
            return AttachResult(attached=False, error=exc.message)
        except SQLAlchemyError as exc:
            return AttachResult(attached=False, error=str(exc))
        return AttachResult(attached=True)
