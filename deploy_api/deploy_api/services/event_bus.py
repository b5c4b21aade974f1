"""Lightweight event bus for OrgApp lifecycle hooks.

Services emit an event after each committed transition; handler errors
are logged and never reach the caller, so a broken audit or metrics hook
never fails a deployment.

Usage::

    bus = get_event_bus()
    await bus.emit(EventType.DEPLOY_STARTED, org_id="org-1", data={...})

``init_event_bus()`` installs the audit and metrics handlers at startup.
"""

from __future__ import annotations

import asyncio
import logging
import uuid
from collections.abc import Awaitable, Callable
from datetime import UTC, datetime
from enum import Enum
from typing import Any

from pydantic import BaseModel, Field

from deploy_api.middleware.prometheus import DEPLOYMENTS_TOTAL, DRAFT_PREVIEWS_EXPIRED_TOTAL

logger = logging.getLogger(__name__)


# ---------------------------------------------------------------------------
# Event types
# ---------------------------------------------------------------------------


class EventType(str, Enum):
    """Lifecycle events emitted by the deployment control plane."""

    DEPLOY_STARTED = "orgapp.deploy_started"
    DEPLOY_RUNNING = "orgapp.running"
    DEPLOY_PREVIEW = "orgapp.preview"
    DEPLOY_FAILED = "orgapp.failed"
    DEPLOY_TIMED_OUT = "orgapp.timed_out"
    ORGAPP_STOPPED = "orgapp.stopped"
    ORGAPP_REMOVED = "orgapp.removed"
    HOSTNAME_CHANGED = "orgapp.hostname_changed"
    ACCESS_CHANGED = "orgapp.access_changed"
    APP_FORKED = "orgapp.forked"
    APP_PUBLISHED = "application.published"
    DRAFT_CREATED = "draft.created"
    DRAFT_EXPIRED = "draft.expired"


# Deployment outcome label recorded for each event that resolves an attempt.
_OUTCOME_LABELS: dict[EventType, str] = {
    EventType.DEPLOY_STARTED: "started",
    EventType.DEPLOY_RUNNING: "running",
    EventType.DEPLOY_PREVIEW: "preview",
    EventType.DEPLOY_FAILED: "failed",
    EventType.DEPLOY_TIMED_OUT: "timed_out",
}


# ---------------------------------------------------------------------------
# Event payload
# ---------------------------------------------------------------------------


class EventPayload(BaseModel):
    """Structured event payload dispatched to handlers.

    ``org_id`` is empty for events that are not scoped to one
    organization (publishing an application, user-owned drafts).
    """

    event_type: EventType
    org_id: str = ""
    timestamp: datetime = Field(default_factory=lambda: datetime.now(UTC))
    correlation_id: str = Field(default_factory=lambda: uuid.uuid4().hex)
    data: dict[str, Any] = Field(default_factory=dict)


EventHandler = Callable[[EventPayload], Awaitable[None]]


# ---------------------------------------------------------------------------
# Event bus
# ---------------------------------------------------------------------------


class EventBus:
    """Dispatches lifecycle events to the handlers subscribed to their type.

    A handler registered without an event type receives every event.  All
    matching handlers run concurrently and fail independently.
    """

    def __init__(self) -> None:
        self._handlers: dict[EventType | None, list[EventHandler]] = {}

    def register_handler(self, handler: EventHandler, *, event_type: EventType | None = None) -> None:
        """Register a handler for a specific event type, or all events when ``None``."""
        self._handlers.setdefault(event_type, []).append(handler)
        logger.debug("Registered event handler %s for %s", handler.__name__, event_type or "ALL")

    async def emit(
        self,
        event_type: EventType,
        *,
        org_id: str = "",
        data: dict[str, Any] | None = None,
        correlation_id: str | None = None,
    ) -> None:
        """Emit an event to all matching handlers; handler exceptions are logged, not raised."""
        payload = EventPayload(
            event_type=event_type,
            org_id=org_id,
            data=data or {},
            correlation_id=correlation_id or uuid.uuid4().hex,
        )

        handlers = list(self._handlers.get(event_type, []))
        handlers.extend(self._handlers.get(None, []))
        if not handlers:
            logger.debug("No handlers for event %s", event_type.value)
            return

        logger.debug(
            "Emitting %s for org=%s corr=%s (%d handler(s))",
            event_type.value,
            org_id or "-",
            payload.correlation_id[:8],
            len(handlers),
        )

        async def _safe_call(handler: EventHandler) -> None:
            try:
                await handler(payload)
            except Exception:
                logger.exception("Handler %s failed for event %s (org=%s)", handler.__name__, event_type.value, org_id)

        await asyncio.gather(*[_safe_call(h) for h in handlers])

    @property
    def handler_count(self) -> int:
        return sum(len(v) for v in self._handlers.values())


# ---------------------------------------------------------------------------
# Built-in handlers
# ---------------------------------------------------------------------------


async def audit_log_handler(payload: EventPayload) -> None:
    """Write every lifecycle event to the audit log."""
    logger.info(
        "AUDIT: %s org=%s corr=%s data=%s",
        payload.event_type.value,
        payload.org_id or "-",
        payload.correlation_id[:8],
        payload.data,
    )


async def metrics_handler(payload: EventPayload) -> None:
    """Increment the Prometheus lifecycle counters."""
    outcome = _OUTCOME_LABELS.get(payload.event_type)
    if outcome is not None:
        DEPLOYMENTS_TOTAL.labels(outcome=outcome).inc()
    elif payload.event_type == EventType.DRAFT_EXPIRED:
        DRAFT_PREVIEWS_EXPIRED_TOTAL.inc()


# ---------------------------------------------------------------------------
# Module-level singleton
# ---------------------------------------------------------------------------

_event_bus: EventBus | None = None


def init_event_bus() -> EventBus:
    """Create the global event bus with the built-in audit and metrics handlers."""
    global _event_bus  # noqa: PLW0603
    _event_bus = EventBus()
    _event_bus.register_handler(audit_log_handler)
    _event_bus.register_handler(metrics_handler)
    logger.info("Event bus initialised with %d handler(s)", _event_bus.handler_count)
    return _event_bus


def get_event_bus() -> EventBus:
    """Return the module-level event bus instance."""
    if _event_bus is None:
        return init_event_bus()
    return _event_bus
