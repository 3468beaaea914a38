"""Server component: ingestion endpoint, relay wiring and CLI."""

from webhook_tunnel.server.app import (
    cli,
    get_app_config,
    get_event_source,
    get_forwarder,
    get_store,
    load_config_from_file,
    seed_store,
    setup_app,
)
from webhook_tunnel.server.server import create_app, run_server

__all__ = [
    "get_app_config",
    "get_event_source",
    "get_forwarder",
    "get_store",
    "load_config_from_file",
    "seed_store",
    "setup_app",
    "cli",
    "create_app",
    "run_server",
]
