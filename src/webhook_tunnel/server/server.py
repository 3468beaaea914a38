import asyncio
from typing import Optional

import uvicorn
from fastapi import FastAPI
from loguru import logger

from webhook_tunnel.common.config import ServerConfig
from webhook_tunnel.common.metrics import metrics, start_metrics_server
from webhook_tunnel.relay.client import RelayClient
from webhook_tunnel.relay.connection import ConnectionManager
from webhook_tunnel.server.routes import router


def create_app(config: ServerConfig) -> FastAPI:
    app = FastAPI(
        title="Webhook Tunnel",
        description="Receives webhooks, relays them to a local service and forwards copies",
        version="0.1.0",
    )

    app.include_router(router)

    @app.on_event("startup")
    async def startup_event():
        from webhook_tunnel.server.app import get_event_source, get_store, seed_store

        store = get_store()
        await seed_store(store, config)

        # Start metrics server if enabled
        if config.metrics.enabled:
            start_metrics_server(config.metrics.port, config.metrics.host)
            logger.info(
                f"Metrics server started on {config.metrics.host}:{config.metrics.port}"
            )

        relay_config = config.relay
        connection_manager = ConnectionManager(store, relay_config)
        relay = RelayClient(
            store=store,
            event_source=get_event_source(),
            endpoint_id=relay_config.endpoint_id,
            port=relay_config.local_port,
            reconnect_delay=relay_config.reconnect_delay,
            timeout=relay_config.delivery_timeout,
            max_response_body_size=relay_config.max_response_body_size,
            store_response_body=relay_config.store_response_body,
            store_response_headers=relay_config.store_response_headers,
            excluded_response_headers=relay_config.excluded_response_headers,
        )

        await connection_manager.create()
        connection_manager.start_heartbeat()
        app.state.connection_manager = connection_manager
        app.state.relay = relay
        app.state.relay_task = asyncio.create_task(relay.run())

        metrics.up.labels(component="relay").set(1)
        logger.info(f"Webhook Tunnel started on {config.host}:{config.port}")
        logger.info(
            f"Relaying endpoint {relay_config.endpoint_id} to localhost:{relay_config.local_port}"
        )

    @app.on_event("shutdown")
    async def shutdown_event():
        # Startup may have failed before any of these were set
        relay = getattr(app.state, "relay", None)
        relay_task = getattr(app.state, "relay_task", None)
        connection_manager = getattr(app.state, "connection_manager", None)

        # In-flight deliveries finish before the connection is marked disconnected
        if relay is not None:
            await relay.stop()
        if relay_task is not None:
            await asyncio.gather(relay_task, return_exceptions=True)
        if connection_manager is not None:
            await connection_manager.stop()
        metrics.up.labels(component="relay").set(0)
        logger.info("Webhook Tunnel shutting down")

    return app


def run_server(config: Optional[ServerConfig] = None):
    if not config:
        from webhook_tunnel.server.app import get_app_config

        config = get_app_config()

    app = create_app(config)

    uvicorn.run(
        app,
        host=config.host,
        port=config.port,
        log_level="info",
    )
