"""Per-OrgApp progress channels fanned out to any number of subscribers.

The hub is in-process: one channel per ``(org_id, app_id)`` remembers the
last event of the newest attempt it has seen, so a late subscriber starts
from the current state instead of an empty stream.  Subscribers that go
away never affect the deployment; the orchestrator publishes whether or
not anyone is listening.
"""

from __future__ import annotations

import asyncio
import logging
from collections.abc import AsyncGenerator
from dataclasses import dataclass, field

from deploy_core.models.progress import ProgressEvent

from deploy_api.middleware.prometheus import ACTIVE_STREAMS

logger = logging.getLogger(__name__)

# Queue item that ends a subscription without a terminal event.
_CLOSED = None


@dataclass
class _Channel:
    attempt_id: int = 0
    last_event: ProgressEvent | None = None
    subscribers: set[asyncio.Queue[ProgressEvent | None]] = field(default_factory=set)


class ProgressHub:
    """Broadcast progress events per OrgApp, dropping events from superseded attempts."""

    def __init__(self) -> None:
        self._channels: dict[tuple[str, str], _Channel] = {}

    def publish(self, org_id: str, app_id: str, event: ProgressEvent) -> bool:
        """Record *event* as the channel's latest and fan it out.

        Returns False (and delivers nothing) when *event* belongs to an
        attempt older than one the channel has already seen.
        """
        channel = self._channels.setdefault((org_id, app_id), _Channel())
        if event.attempt_id < channel.attempt_id:
            logger.debug(
                "Dropping %s event for %s/%s: attempt %d superseded by %d",
                event.stage.value,
                org_id,
                app_id,
                event.attempt_id,
                channel.attempt_id,
            )
            return False
        channel.attempt_id = event.attempt_id
        channel.last_event = event
        for queue in channel.subscribers:
            queue.put_nowait(event)
        return True

    async def subscribe(
        self, org_id: str, app_id: str, snapshot: ProgressEvent
    ) -> AsyncGenerator[ProgressEvent, None]:
        """Yield the current state, then every newer event until a terminal one.

        Parameters
        ----------
        org_id, app_id:
            The OrgApp to follow.
        snapshot:
            Event synthesized from the stored record.  It is the first event
            yielded unless the channel already holds a fresher one.
        """
        channel = self._channels.setdefault((org_id, app_id), _Channel())
        queue: asyncio.Queue[ProgressEvent | None] = asyncio.Queue()
        # Registered before the initial event is chosen so nothing published
        # afterwards can be missed.
        channel.subscribers.add(queue)
        ACTIVE_STREAMS.inc()
        try:
            current = _initial_event(channel.last_event, snapshot)
            yield current
            if current.is_terminal:
                return
            while True:
                event = await queue.get()
                if event is _CLOSED:
                    return
                if event.attempt_id < current.attempt_id:
                    continue
                if event == current:
                    continue
                current = event
                yield event
                if event.is_terminal:
                    return
        finally:
            channel.subscribers.discard(queue)
            ACTIVE_STREAMS.dec()

    def close(self, org_id: str, app_id: str) -> None:
        """End every subscription to the OrgApp and forget its channel."""
        channel = self._channels.pop((org_id, app_id), None)
        if channel is None:
            return
        for queue in channel.subscribers:
            queue.put_nowait(_CLOSED)

    def subscriber_count(self, org_id: str, app_id: str) -> int:
        channel = self._channels.get((org_id, app_id))
        return len(channel.subscribers) if channel is not None else 0


def _initial_event(last_event: ProgressEvent | None, snapshot: ProgressEvent) -> ProgressEvent:
    if last_event is None or last_event.attempt_id < snapshot.attempt_id:
        return snapshot
    if last_event.attempt_id == snapshot.attempt_id and snapshot.is_terminal and not last_event.is_terminal:
        # The store already resolved the attempt; the terminal publish is in flight.
        return snapshot
    return last_event
