import asyncio
from typing import Dict, Iterable, Optional, Set

import aiohttp
from loguru import logger

from webhook_tunnel.common.feed import EventSource
from webhook_tunnel.common.metrics import measure_time, metrics
from webhook_tunnel.common.models import (
    DeliveryResponse,
    Event,
    EventStatus,
    encode_body,
    utcnow,
)
from webhook_tunnel.common.store import Store, Table
from webhook_tunnel.relay.connection import LifecycleState

RECONNECT_DELAY = 5  # seconds
DELIVERY_TIMEOUT = 30  # seconds

# Hop-by-hop or recomputed by the HTTP client
SKIPPED_REQUEST_HEADERS = {"host", "content-length", "transfer-encoding", "connection"}


class RelayClient:
    """Delivers an endpoint's inbound events to a service on localhost.

    Every pending event it is notified about ends in a terminal state:
    ``completed`` when the local service answered, ``failed`` with a
    synthesized 500 response otherwise.
    """

    def __init__(
        self,
        store: Store,
        event_source: EventSource,
        endpoint_id: str,
        port: int,
        reconnect_delay: float = RECONNECT_DELAY,
        timeout: float = DELIVERY_TIMEOUT,
        max_response_body_size: Optional[int] = None,
        store_response_body: bool = True,
        store_response_headers: bool = True,
        excluded_response_headers: Optional[Iterable[str]] = None,
    ):
        self.store = store
        self.event_source = event_source
        self.endpoint_id = endpoint_id
        self.port = port
        self.local_addr = f"http://localhost:{port}"
        self.reconnect_delay = reconnect_delay
        self.timeout = timeout
        self.max_response_body_size = max_response_body_size
        self.store_response_body = store_response_body
        self.store_response_headers = store_response_headers
        self.excluded_response_headers = {h.lower() for h in excluded_response_headers or ()}
        self.state = LifecycleState.CREATED
        self._stop_event = asyncio.Event()
        self._stream_task: Optional[asyncio.Task] = None
        self._inflight: Set[asyncio.Task] = set()

    def target_url(self, event: Event) -> str:
        request = event.origin_request
        url = f"{self.local_addr}{request.path}"
        if request.query:
            url = f"{url}?{request.query}"
        return url

    async def run(self) -> None:
        """Consume notifications until stopped, reconnecting on errors."""
        if self.state is not LifecycleState.CREATED:
            logger.warning(f"Relay for endpoint {self.endpoint_id} already {self.state.value}")
            return
        self.state = LifecycleState.RUNNING
        logger.info(f"Starting relay for endpoint {self.endpoint_id} to {self.local_addr}")

        try:
            while self.state is LifecycleState.RUNNING:
                self._stream_task = asyncio.create_task(self._consume())
                try:
                    await self._stream_task
                    logger.warning(f"Event stream for endpoint {self.endpoint_id} ended")
                except asyncio.CancelledError:
                    if self.state is LifecycleState.STOPPED:
                        break
                    raise
                except Exception as e:
                    logger.error(f"Event stream for endpoint {self.endpoint_id} failed: {e}")

                if self.state is not LifecycleState.RUNNING:
                    break

                metrics.relay_reconnects_total.labels(endpoint=self.endpoint_id).inc()
                logger.info(f"Reconnecting in {self.reconnect_delay} seconds...")
                try:
                    await asyncio.wait_for(self._stop_event.wait(), timeout=self.reconnect_delay)
                except asyncio.TimeoutError:
                    pass
        finally:
            await self._drain()
            logger.info(f"Relay for endpoint {self.endpoint_id} stopped")

    async def _consume(self) -> None:
        async for event in self.event_source.subscribe(self.endpoint_id):
            if self.state is not LifecycleState.RUNNING:
                break
            metrics.relay_events_total.labels(endpoint=self.endpoint_id).inc()
            task = asyncio.create_task(self.handle_event(event))
            self._inflight.add(task)
            task.add_done_callback(self._inflight.discard)

    async def handle_event(self, event: Event) -> None:
        """Deliver one notified event and write its terminal state."""
        if event.status != EventStatus.PENDING:
            logger.debug(f"Ignoring event {event.id} with status {event.status.value}")
            return

        logger.info(
            f"Received event {event.id}: {event.origin_request.method} "
            f"{event.origin_request.source_url}"
        )
        try:
            try:
                response = await self.forward_event(event)
            except Exception as e:
                await self._mark_failed(event, e)
            else:
                await self._mark_completed(event, response)
        except Exception as e:
            # Only the store can fail here; nothing more to do for this event
            logger.error(f"Failed to record delivery outcome of event {event.id}: {e}")

    @measure_time(metrics.relay_delivery_latency, lambda self: {"endpoint": self.endpoint_id})
    async def forward_event(self, event: Event) -> DeliveryResponse:
        """Replay the original request against the local service."""
        request = event.origin_request
        url = self.target_url(event)
        headers: Dict[str, str] = {
            key: value
            for key, value in request.headers.items()
            if key.lower() not in SKIPPED_REQUEST_HEADERS
        }

        async with aiohttp.ClientSession() as session:
            async with session.request(
                request.method,
                url,
                headers=headers,
                data=request.body_bytes(),
                timeout=aiohttp.ClientTimeout(total=self.timeout),
            ) as response:
                body = await response.read()
                logger.info(f"Local service answered event {event.id} with {response.status}")

                return DeliveryResponse(
                    status=response.status,
                    headers=self._stored_headers(response.headers),
                    body=self._stored_body(event, body),
                )

    def _stored_headers(self, headers) -> Dict[str, str]:
        if not self.store_response_headers:
            return {}
        return {
            key: value
            for key, value in headers.items()
            if key.lower() not in self.excluded_response_headers
        }

    def _stored_body(self, event: Event, body: bytes) -> Optional[str]:
        if not self.store_response_body:
            return None
        if self.max_response_body_size is not None and len(body) > self.max_response_body_size:
            logger.warning(
                f"Response body of event {event.id} is {len(body)} bytes, "
                f"over the {self.max_response_body_size} byte limit; not stored"
            )
            return None
        return encode_body(body)

    async def _mark_completed(self, event: Event, response: DeliveryResponse) -> None:
        await self.store.update(
            Table.EVENTS,
            event.id,
            status=EventStatus.COMPLETED,
            completed_at=utcnow(),
            response=response,
        )
        metrics.relay_deliveries_total.labels(endpoint=self.endpoint_id, status="completed").inc()
        logger.info(f"Updated event {event.id} status to completed")

    async def _mark_failed(self, event: Event, error: Exception) -> None:
        if isinstance(error, asyncio.TimeoutError):
            message = f"Request to {self.target_url(event)} timed out after {self.timeout}s"
        else:
            message = str(error) or error.__class__.__name__
        logger.error(f"Error delivering event {event.id}: {message}")

        await self.store.update(
            Table.EVENTS,
            event.id,
            status=EventStatus.FAILED,
            completed_at=utcnow(),
            failed_reason=message,
            response=DeliveryResponse(
                status=500,
                headers={"content-type": "text/plain"},
                body=encode_body(message),
            ),
        )
        metrics.relay_deliveries_total.labels(endpoint=self.endpoint_id, status="failed").inc()
        logger.info(f"Updated event {event.id} status to failed")

    async def stop(self) -> None:
        """Close the event stream and let in-flight deliveries finish."""
        if self.state is LifecycleState.STOPPED:
            return
        self.state = LifecycleState.STOPPED
        self._stop_event.set()
        logger.info(f"Stopping relay for endpoint {self.endpoint_id}...")

        if self._stream_task and not self._stream_task.done():
            self._stream_task.cancel()
        await self._drain()

    async def _drain(self) -> None:
        if self._inflight:
            logger.debug(f"Waiting for {len(self._inflight)} in-flight deliveries")
            await asyncio.gather(*list(self._inflight), return_exceptions=True)
