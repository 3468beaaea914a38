import asyncio
from abc import ABC, abstractmethod
from collections import defaultdict
from typing import AsyncIterator, Dict, List, Optional, Set

from loguru import logger

from webhook_tunnel.common.config import FeedType
from webhook_tunnel.common.models import Event, EventStatus
from webhook_tunnel.common.store import Store, Table


class EventSource(ABC):
    """Row-inserted notifications for events, scoped by endpoint id.

    Delivery is at-least-once; consumers guard against replays by checking
    the event status.
    """

    @abstractmethod
    def subscribe(self, endpoint_id: str) -> AsyncIterator[Event]:
        pass


class MemoryEventSource(EventSource):
    """Push feed for a single process: ``publish`` fans out to subscribers."""

    def __init__(self):
        self._subscribers: Dict[str, List[asyncio.Queue]] = defaultdict(list)

    async def publish(self, event: Event) -> int:
        queues = self._subscribers.get(event.endpoint_id, [])
        for queue in queues:
            queue.put_nowait(event)
        logger.debug(
            f"Published event {event.id} to {len(queues)} subscriber(s) "
            f"of endpoint {event.endpoint_id}"
        )
        return len(queues)

    def subscriber_count(self, endpoint_id: str) -> int:
        return len(self._subscribers.get(endpoint_id, []))

    async def subscribe(self, endpoint_id: str) -> AsyncIterator[Event]:
        queue: asyncio.Queue = asyncio.Queue()
        self._subscribers[endpoint_id].append(queue)
        logger.info(f"Subscribed to events for endpoint {endpoint_id}")
        try:
            while True:
                yield await queue.get()
        finally:
            self._subscribers[endpoint_id].remove(queue)
            if not self._subscribers[endpoint_id]:
                del self._subscribers[endpoint_id]
            logger.info(f"Unsubscribed from events for endpoint {endpoint_id}")


class PollingEventSource(EventSource):
    """Poll-loop feed over the store for stores without change notifications."""

    def __init__(self, store: Store, poll_interval: float = 1.0):
        self.store = store
        self.poll_interval = poll_interval

    async def subscribe(self, endpoint_id: str) -> AsyncIterator[Event]:
        seen: Set[str] = set()
        logger.info(
            f"Polling events for endpoint {endpoint_id} every {self.poll_interval}s"
        )
        while True:
            pending = await self.store.find(
                Table.EVENTS, endpoint_id=endpoint_id, status=EventStatus.PENDING
            )
            for event in sorted(pending, key=lambda e: e.timestamp):
                if event.id in seen:
                    continue
                seen.add(event.id)
                yield event
            # Forget ids that are no longer pending so the set stays bounded
            seen &= {event.id for event in pending}
            await asyncio.sleep(self.poll_interval)


def create_event_source(
    feed_type: FeedType,
    store: Optional[Store] = None,
    poll_interval: float = 1.0,
) -> EventSource:
    if feed_type == FeedType.MEMORY:
        return MemoryEventSource()
    elif feed_type == FeedType.POLL:
        if not store:
            raise ValueError("Poll feed selected but no store provided")
        return PollingEventSource(store, poll_interval=poll_interval)
    else:
        raise ValueError(f"Unsupported feed type: {feed_type}")
