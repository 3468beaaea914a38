import asyncio
from enum import Enum
from typing import Optional

from loguru import logger

from webhook_tunnel.common.config import RelayConfig
from webhook_tunnel.common.metrics import metrics
from webhook_tunnel.common.models import Connection, Endpoint, EndpointStatus, utcnow
from webhook_tunnel.common.store import Store, Table

HEARTBEAT_INTERVAL = 30  # seconds


class LifecycleState(str, Enum):
    CREATED = "created"
    RUNNING = "running"
    STOPPED = "stopped"


class ConnectionManager:
    """Owns the durable connection record of one relay and its heartbeat.

    Store failures are logged and never abort the relay: a relay without a
    connection record still delivers events.
    """

    def __init__(
        self,
        store: Store,
        config: RelayConfig,
        heartbeat_interval: Optional[float] = None,
    ):
        self.store = store
        self.config = config
        self.endpoint_id = config.endpoint_id
        self.heartbeat_interval = (
            heartbeat_interval if heartbeat_interval is not None else config.heartbeat_interval
        )
        self.state = LifecycleState.CREATED
        self.connection_id: Optional[str] = None
        self._heartbeat_task: Optional[asyncio.Task] = None
        self._lock = asyncio.Lock()

    async def create(self) -> Optional[Connection]:
        """Insert the connection record and mark the endpoint active."""
        async with self._lock:
            if self.state is not LifecycleState.CREATED:
                logger.debug(f"Connection for endpoint {self.endpoint_id} already {self.state.value}")
                return None
            self.state = LifecycleState.RUNNING

            try:
                await self._close_stale_connections()
                connection = await self.store.insert(
                    Table.CONNECTIONS,
                    Connection(
                        endpoint_id=self.endpoint_id,
                        client_id=self.config.client_id,
                        ip_address=self.config.ip_address,
                        client_version=self.config.client_version,
                        client_os=self.config.client_os,
                        client_hostname=self.config.client_hostname,
                    ),
                )
                self.connection_id = connection.id
                await self._set_endpoint_status(EndpointStatus.ACTIVE, last_connection_at=utcnow())
                logger.info(
                    f"Created connection {connection.id} for endpoint {self.endpoint_id}"
                )
                return connection
            except Exception as e:
                logger.error(
                    f"Failed to create connection record for endpoint {self.endpoint_id}: {e}"
                )
                return None

    def start_heartbeat(self) -> None:
        if self.state is LifecycleState.STOPPED:
            logger.debug("Connection stopped, not starting heartbeat")
            return
        if self._heartbeat_task and not self._heartbeat_task.done():
            return
        self._heartbeat_task = asyncio.create_task(self._heartbeat_loop())
        logger.debug(
            f"Started heartbeat for endpoint {self.endpoint_id} "
            f"every {self.heartbeat_interval}s"
        )

    async def _heartbeat_loop(self) -> None:
        while self.state is not LifecycleState.STOPPED:
            await asyncio.sleep(self.heartbeat_interval)
            if self.state is LifecycleState.STOPPED:
                break
            await self.ping()

    async def ping(self) -> None:
        """Refresh the open connection's last_ping_at and the endpoint status."""
        ok = True
        try:
            await self._set_endpoint_status(EndpointStatus.ACTIVE)
        except Exception as e:
            ok = False
            metrics.heartbeat_errors_total.labels(endpoint=self.endpoint_id).inc()
            logger.error(f"Failed to update endpoint {self.endpoint_id} status: {e}")

        if self.connection_id:
            try:
                await self.store.update(
                    Table.CONNECTIONS, self.connection_id, last_ping_at=utcnow()
                )
            except Exception as e:
                ok = False
                metrics.heartbeat_errors_total.labels(endpoint=self.endpoint_id).inc()
                logger.error(f"Failed to update connection {self.connection_id} ping: {e}")

        if ok:
            logger.debug(f"Heartbeat sent for endpoint {self.endpoint_id}")

    async def stop(self) -> None:
        """Cancel the heartbeat and mark the connection disconnected.

        Only the first call has an effect; later or concurrent calls return
        immediately.
        """
        if self.state is LifecycleState.STOPPED:
            return
        self.state = LifecycleState.STOPPED

        if self._heartbeat_task and not self._heartbeat_task.done():
            self._heartbeat_task.cancel()
            try:
                await self._heartbeat_task
            except asyncio.CancelledError:
                pass

        # Waits for an in-progress create() so its record gets closed too
        async with self._lock:
            try:
                await self._set_endpoint_status(EndpointStatus.INACTIVE)
                if self.connection_id:
                    await self.store.update(
                        Table.CONNECTIONS, self.connection_id, disconnected_at=utcnow()
                    )
                logger.info(f"Marked endpoint {self.endpoint_id} disconnected")
            except Exception as e:
                logger.error(
                    f"Failed to update endpoint {self.endpoint_id} status on disconnect: {e}"
                )

    async def _close_stale_connections(self) -> None:
        stale = await self.store.find(
            Table.CONNECTIONS, endpoint_id=self.endpoint_id, disconnected_at=None
        )
        for connection in stale:
            logger.warning(f"Closing stale connection {connection.id} for endpoint {self.endpoint_id}")
            await self.store.update(Table.CONNECTIONS, connection.id, disconnected_at=utcnow())

    async def _set_endpoint_status(self, status: EndpointStatus, **fields) -> None:
        updated = await self.store.update(
            Table.ENDPOINTS, self.endpoint_id, status=status, **fields
        )
        if updated is None:
            await self.store.insert(
                Table.ENDPOINTS, Endpoint(id=self.endpoint_id, status=status, **fields)
            )
