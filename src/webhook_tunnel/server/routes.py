from fastapi import APIRouter, BackgroundTasks, Depends, HTTPException, Request
from loguru import logger

from webhook_tunnel.common.config import ServerConfig
from webhook_tunnel.common.feed import EventSource, MemoryEventSource
from webhook_tunnel.common.metrics import metrics
from webhook_tunnel.common.models import Event, OriginRequest, encode_body
from webhook_tunnel.common.store import Store, Table
from webhook_tunnel.forwarding.forwarder import WebhookForwarder


router = APIRouter()

INGEST_METHODS = ["GET", "POST", "PUT", "PATCH", "DELETE"]


async def get_config() -> ServerConfig:
    from webhook_tunnel.server.app import get_app_config
    return get_app_config()


async def get_store() -> Store:
    from webhook_tunnel.server.app import get_store
    return get_store()


async def get_event_source() -> EventSource:
    from webhook_tunnel.server.app import get_event_source
    return get_event_source()


async def get_forwarder() -> WebhookForwarder:
    from webhook_tunnel.server.app import get_forwarder
    return get_forwarder()


async def run_forwarding(forwarder: WebhookForwarder, event: Event) -> None:
    try:
        await forwarder.process_event(event)
    except Exception as e:
        logger.error(f"Forwarding of event {event.id} failed: {e}")


@router.api_route("/webhooks/{endpoint_id}/{path:path}", methods=INGEST_METHODS, status_code=202)
async def receive_webhook(
    endpoint_id: str,
    path: str,
    request: Request,
    background_tasks: BackgroundTasks,
    config: ServerConfig = Depends(get_config),
    store: Store = Depends(get_store),
    event_source: EventSource = Depends(get_event_source),
    forwarder: WebhookForwarder = Depends(get_forwarder),
):
    body = await request.body()
    origin_request = OriginRequest(
        method=request.method,
        headers={k: v for k, v in request.headers.items()},
        body=encode_body(body) if body else None,
        source_url=str(request.url),
        content_type=request.headers.get("content-type"),
        size=len(body),
        client_ip=request.client.host if request.client else None,
    )
    event = Event(
        endpoint_id=endpoint_id,
        source=request.query_params.get("source", "*"),
        origin_request=origin_request,
    )

    metrics.webhook_received_total.labels(endpoint=endpoint_id).inc()

    try:
        await store.insert(Table.EVENTS, event)
    except Exception as e:
        logger.error(f"Failed to store event for endpoint {endpoint_id}: {e}")
        raise HTTPException(status_code=500, detail="Failed to store event")

    if isinstance(event_source, MemoryEventSource):
        await event_source.publish(event)

    if config.forwarding.enabled:
        background_tasks.add_task(run_forwarding, forwarder, event)

    logger.info(f"Webhook for endpoint {endpoint_id} stored as event {event.id}")
    return {"status": "accepted", "event_id": event.id}


@router.get("/events/{event_id}")
async def get_event(event_id: str, store: Store = Depends(get_store)):
    event = await store.get(Table.EVENTS, event_id)
    if event is None:
        raise HTTPException(status_code=404, detail=f"Unknown event: {event_id}")
    return event.model_dump(mode="json")


@router.get("/health")
async def health_check():
    return {"status": "ok"}
