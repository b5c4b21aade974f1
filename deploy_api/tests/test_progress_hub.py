"""Tests for the in-process progress hub."""

from __future__ import annotations

import asyncio

import pytest
from deploy_core.models.progress import DeployStage, ProgressEvent

from deploy_api.services.progress_streamer import ProgressHub


def _event(stage: DeployStage, attempt_id: int = 1, **kwargs: str) -> ProgressEvent:
    return ProgressEvent.for_stage(stage, attempt_id=attempt_id, **kwargs)


# ---------------------------------------------------------------------------
# Publish
# ---------------------------------------------------------------------------


class TestPublish:
    def test_publish_without_subscribers(self) -> None:
        hub = ProgressHub()
        assert hub.publish("org-1", "app-1", _event(DeployStage.BUILDING)) is True
        assert hub.subscriber_count("org-1", "app-1") == 0

    def test_older_attempt_is_dropped(self) -> None:
        hub = ProgressHub()
        hub.publish("org-1", "app-1", _event(DeployStage.PREPARING, attempt_id=2))
        assert hub.publish("org-1", "app-1", _event(DeployStage.RUNNING, attempt_id=1)) is False

    def test_channels_are_per_org_app(self) -> None:
        hub = ProgressHub()
        hub.publish("org-1", "app-1", _event(DeployStage.PREPARING, attempt_id=5))
        assert hub.publish("org-2", "app-1", _event(DeployStage.PREPARING, attempt_id=1)) is True


# ---------------------------------------------------------------------------
# Subscribe
# ---------------------------------------------------------------------------


class TestSubscribe:
    @pytest.mark.asyncio
    async def test_snapshot_first_when_channel_is_empty(self) -> None:
        hub = ProgressHub()
        snapshot = _event(DeployStage.RUNNING, fly_url="https://x.fly.dev")

        events = [e async for e in hub.subscribe("org-1", "app-1", snapshot)]

        assert events == [snapshot]
        assert hub.subscriber_count("org-1", "app-1") == 0

    @pytest.mark.asyncio
    async def test_fresher_channel_event_replaces_snapshot(self) -> None:
        hub = ProgressHub()
        hub.publish("org-1", "app-1", _event(DeployStage.BUILDING))
        stream = hub.subscribe("org-1", "app-1", _event(DeployStage.PREPARING))

        first = await anext(stream)

        assert first.stage == DeployStage.BUILDING
        await stream.aclose()

    @pytest.mark.asyncio
    async def test_terminal_snapshot_wins_over_in_flight_event(self) -> None:
        hub = ProgressHub()
        hub.publish("org-1", "app-1", _event(DeployStage.BUILDING))

        events = [e async for e in hub.subscribe("org-1", "app-1", _event(DeployStage.FAILED, error="boom"))]

        assert [e.stage for e in events] == [DeployStage.FAILED]

    @pytest.mark.asyncio
    async def test_snapshot_of_newer_attempt_wins(self) -> None:
        hub = ProgressHub()
        hub.publish("org-1", "app-1", _event(DeployStage.FAILED, attempt_id=1))
        stream = hub.subscribe("org-1", "app-1", _event(DeployStage.PREPARING, attempt_id=2))

        first = await anext(stream)

        assert first.attempt_id == 2
        assert first.stage == DeployStage.PREPARING
        await stream.aclose()

    @pytest.mark.asyncio
    async def test_live_events_until_terminal(self) -> None:
        hub = ProgressHub()
        stream = hub.subscribe("org-1", "app-1", _event(DeployStage.PREPARING))
        assert (await anext(stream)).stage == DeployStage.PREPARING
        assert hub.subscriber_count("org-1", "app-1") == 1

        hub.publish("org-1", "app-1", _event(DeployStage.BUILDING))
        hub.publish("org-1", "app-1", _event(DeployStage.RUNNING))

        rest = [e.stage async for e in stream]

        assert rest == [DeployStage.BUILDING, DeployStage.RUNNING]
        assert hub.subscriber_count("org-1", "app-1") == 0

    @pytest.mark.asyncio
    async def test_fan_out_to_every_subscriber(self) -> None:
        hub = ProgressHub()
        first = hub.subscribe("org-1", "app-1", _event(DeployStage.PREPARING))
        second = hub.subscribe("org-1", "app-1", _event(DeployStage.PREPARING))
        await anext(first)
        await anext(second)

        hub.publish("org-1", "app-1", _event(DeployStage.RUNNING))

        assert [e.stage async for e in first] == [DeployStage.RUNNING]
        assert [e.stage async for e in second] == [DeployStage.RUNNING]

    @pytest.mark.asyncio
    async def test_duplicate_events_are_collapsed(self) -> None:
        hub = ProgressHub()
        stream = hub.subscribe("org-1", "app-1", _event(DeployStage.PREPARING))
        await anext(stream)

        hub.publish("org-1", "app-1", _event(DeployStage.PREPARING))
        hub.publish("org-1", "app-1", _event(DeployStage.FAILED, error="boom"))

        assert [e.stage async for e in stream] == [DeployStage.FAILED]

    @pytest.mark.asyncio
    async def test_cancelled_subscriber_is_unregistered(self) -> None:
        hub = ProgressHub()
        stream = hub.subscribe("org-1", "app-1", _event(DeployStage.PREPARING))
        await anext(stream)

        task = asyncio.ensure_future(anext(stream))
        await asyncio.sleep(0)
        task.cancel()
        with pytest.raises(asyncio.CancelledError):
            await task

        assert hub.subscriber_count("org-1", "app-1") == 0

    @pytest.mark.asyncio
    async def test_close_ends_subscriptions(self) -> None:
        hub = ProgressHub()
        stream = hub.subscribe("org-1", "app-1", _event(DeployStage.BUILDING))
        await anext(stream)

        hub.close("org-1", "app-1")

        assert [e async for e in stream] == []
        assert hub.subscriber_count("org-1", "app-1") == 0
