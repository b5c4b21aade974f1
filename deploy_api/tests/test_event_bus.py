"""Tests for the lifecycle event bus.

Validates handler registration, dispatch, error isolation, and the
built-in metrics handler.
"""

from __future__ import annotations

import pytest
from prometheus_client import REGISTRY

from deploy_api.services.event_bus import (
    EventBus,
    EventPayload,
    EventType,
    audit_log_handler,
    get_event_bus,
    init_event_bus,
    metrics_handler,
)

# ---------------------------------------------------------------------------
# Fixtures
# ---------------------------------------------------------------------------


@pytest.fixture
def fresh_bus() -> EventBus:
    """Return a fresh EventBus instance (no built-in handlers)."""
    return EventBus()


def _sample(name: str, **labels: str) -> float:
    return REGISTRY.get_sample_value(name, labels) or 0.0


# ---------------------------------------------------------------------------
# Handler registration
# ---------------------------------------------------------------------------


class TestHandlerRegistration:
    def test_register_wildcard_handler(self, fresh_bus: EventBus) -> None:
        async def handler(p: EventPayload) -> None:
            pass

        fresh_bus.register_handler(handler)
        assert fresh_bus.handler_count == 1

    def test_register_typed_handlers(self, fresh_bus: EventBus) -> None:
        async def h1(p: EventPayload) -> None:
            pass

        async def h2(p: EventPayload) -> None:
            pass

        fresh_bus.register_handler(h1, event_type=EventType.DEPLOY_STARTED)
        fresh_bus.register_handler(h2, event_type=EventType.DEPLOY_FAILED)
        assert fresh_bus.handler_count == 2

    def test_init_registers_builtin_handlers(self) -> None:
        bus = init_event_bus()
        assert bus.handler_count == 2
        assert get_event_bus() is bus


# ---------------------------------------------------------------------------
# Dispatch
# ---------------------------------------------------------------------------


class TestEmit:
    @pytest.mark.asyncio
    async def test_wildcard_handler_receives_payload(self, fresh_bus: EventBus) -> None:
        received: list[EventPayload] = []

        async def handler(p: EventPayload) -> None:
            received.append(p)

        fresh_bus.register_handler(handler)
        await fresh_bus.emit(EventType.DEPLOY_STARTED, org_id="org-1", data={"app_id": "app-1"})

        assert len(received) == 1
        payload = received[0]
        assert payload.event_type == EventType.DEPLOY_STARTED
        assert payload.org_id == "org-1"
        assert payload.data == {"app_id": "app-1"}
        assert len(payload.correlation_id) == 32

    @pytest.mark.asyncio
    async def test_typed_handler_only_sees_its_type(self, fresh_bus: EventBus) -> None:
        received: list[EventType] = []

        async def handler(p: EventPayload) -> None:
            received.append(p.event_type)

        fresh_bus.register_handler(handler, event_type=EventType.DEPLOY_FAILED)
        await fresh_bus.emit(EventType.DEPLOY_STARTED, org_id="org-1")
        await fresh_bus.emit(EventType.DEPLOY_FAILED, org_id="org-1")

        assert received == [EventType.DEPLOY_FAILED]

    @pytest.mark.asyncio
    async def test_correlation_id_is_passed_through(self, fresh_bus: EventBus) -> None:
        received: list[str] = []

        async def handler(p: EventPayload) -> None:
            received.append(p.correlation_id)

        fresh_bus.register_handler(handler)
        await fresh_bus.emit(EventType.ACCESS_CHANGED, correlation_id="corr-123")

        assert received == ["corr-123"]

    @pytest.mark.asyncio
    async def test_failing_handler_is_isolated(self, fresh_bus: EventBus) -> None:
        calls: list[str] = []

        async def broken(p: EventPayload) -> None:
            calls.append("broken")
            raise RuntimeError("handler bug")

        async def healthy(p: EventPayload) -> None:
            calls.append("healthy")

        fresh_bus.register_handler(broken)
        fresh_bus.register_handler(healthy)
        await fresh_bus.emit(EventType.ORGAPP_REMOVED, org_id="org-1")

        assert sorted(calls) == ["broken", "healthy"]

    @pytest.mark.asyncio
    async def test_emit_without_handlers(self, fresh_bus: EventBus) -> None:
        await fresh_bus.emit(EventType.DRAFT_CREATED)


# ---------------------------------------------------------------------------
# Built-in handlers
# ---------------------------------------------------------------------------


class TestBuiltinHandlers:
    @pytest.mark.asyncio
    async def test_outcome_counter(self) -> None:
        before = _sample("deploy_deployments_total", outcome="timed_out")

        await metrics_handler(EventPayload(event_type=EventType.DEPLOY_TIMED_OUT, org_id="org-1"))

        assert _sample("deploy_deployments_total", outcome="timed_out") == before + 1

    @pytest.mark.asyncio
    async def test_draft_expiry_counter(self) -> None:
        before = _sample("deploy_draft_previews_expired_total")

        await metrics_handler(EventPayload(event_type=EventType.DRAFT_EXPIRED))

        assert _sample("deploy_draft_previews_expired_total") == before + 1

    @pytest.mark.asyncio
    async def test_other_events_are_not_counted(self) -> None:
        before = _sample("deploy_deployments_total", outcome="started")

        await metrics_handler(EventPayload(event_type=EventType.HOSTNAME_CHANGED, org_id="org-1"))

        assert _sample("deploy_deployments_total", outcome="started") == before

    @pytest.mark.asyncio
    async def test_audit_handler_logs(self, caplog: pytest.LogCaptureFixture) -> None:
        with caplog.at_level("INFO", logger="deploy_api.services.event_bus"):
            await audit_log_handler(EventPayload(event_type=EventType.APP_PUBLISHED, data={"app_id": "app-1"}))

        assert "AUDIT: application.published" in caplog.text
