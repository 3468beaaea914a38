import asyncio
import json
import sys
from pathlib import Path
from typing import Optional

import click
import yaml
from loguru import logger

from webhook_tunnel.common.config import ServerConfig
from webhook_tunnel.common.feed import EventSource, create_event_source
from webhook_tunnel.common.store import MemoryStore, Store, Table
from webhook_tunnel.forwarding.forwarder import WebhookForwarder
from webhook_tunnel.forwarding.sandbox import TransformationSandbox
from webhook_tunnel.server.server import run_server


_app_config: Optional[ServerConfig] = None
_store: Optional[Store] = None
_event_source: Optional[EventSource] = None
_forwarder: Optional[WebhookForwarder] = None


def get_app_config() -> ServerConfig:
    global _app_config
    if not _app_config:
        raise RuntimeError("Application config not initialized")
    return _app_config


def get_store() -> Store:
    global _store
    if not _store:
        raise RuntimeError("Store not initialized")
    return _store


def get_event_source() -> EventSource:
    global _event_source
    if not _event_source:
        raise RuntimeError("Event source not initialized")
    return _event_source


def get_forwarder() -> WebhookForwarder:
    global _forwarder
    if not _forwarder:
        raise RuntimeError("Forwarder not initialized")
    return _forwarder


def load_config_from_file(config_path: str) -> ServerConfig:
    """Load configuration from a YAML file."""
    file_path = Path(config_path)
    if not file_path.exists():
        raise FileNotFoundError(f"Config file not found: {config_path}")

    with open(file_path, "r") as f:
        config_data = yaml.safe_load(f)

    return ServerConfig.model_validate(config_data)


def setup_app(config: ServerConfig):
    """Initialize the application with the given config."""
    global _app_config, _store, _event_source, _forwarder

    # Configure logging
    logger.remove()
    logger.add(
        sys.stderr,
        level=config.log_level,
        format="<green>{time:YYYY-MM-DD HH:mm:ss.SSS}</green> | <level>{level: <8}</level> | <cyan>{name}</cyan>:<cyan>{function}</cyan>:<cyan>{line}</cyan> - <level>{message}</level>",
    )

    config.validate_feed_config()
    config.validate_forwarding_config()

    _store = MemoryStore()
    _event_source = create_event_source(
        feed_type=config.feed_type,
        store=_store,
        poll_interval=config.poll_interval,
    )
    _forwarder = WebhookForwarder(
        store=_store,
        sandbox=TransformationSandbox(
            timeout_ms=config.forwarding.sandbox.timeout_ms,
            memory_limit_mb=config.forwarding.sandbox.memory_limit_mb,
        ),
        dispatch_timeout=config.forwarding.dispatch_timeout,
    )

    _app_config = config

    logger.info("Webhook Tunnel initialized")
    logger.info(f"Notification feed: {config.feed_type.value}")


async def seed_store(store: Store, config: ServerConfig) -> None:
    """Load the configured destinations and rules into the store."""
    for destination in config.forwarding.destinations:
        await store.insert(Table.FORWARDING_DESTINATIONS, destination)
    for rule in config.forwarding.rules:
        if rule.endpoint_id is None:
            rule = rule.model_copy(update={"endpoint_id": config.relay.endpoint_id})
        await store.insert(Table.FORWARDING_RULES, rule)
    logger.info(
        f"Loaded {len(config.forwarding.rules)} forwarding rule(s) and "
        f"{len(config.forwarding.destinations)} destination(s)"
    )


@click.group()
def cli():
    """Webhook Tunnel CLI"""
    pass


@cli.command("serve")
@click.option(
    "--config",
    "-c",
    required=True,
    help="Path to configuration file",
)
def serve(config: str):
    """Receive webhooks, relay them to localhost and forward copies."""
    try:
        config_obj = load_config_from_file(config)
        setup_app(config_obj)
        run_server(config_obj)
    except Exception as e:
        logger.error(f"Failed to start webhook tunnel: {e}")
        sys.exit(1)


@cli.command("validate-transform")
@click.option("--code", "code_path", required=True, help="Path to the transformation code")
@click.option("--sample", "sample_path", required=True, help="Path to a JSON sample body")
@click.option("--timeout-ms", default=5000, show_default=True, help="Sandbox timeout")
@click.option("--memory-limit-mb", default=128, show_default=True, help="Sandbox memory ceiling")
def validate_transform(code_path: str, sample_path: str, timeout_ms: int, memory_limit_mb: int):
    """Run transformation code against a sample body before activating it."""
    try:
        code = Path(code_path).read_text()
        sample = json.loads(Path(sample_path).read_text())
    except (OSError, ValueError) as e:
        logger.error(f"Failed to read inputs: {e}")
        sys.exit(1)

    sandbox = TransformationSandbox(timeout_ms=timeout_ms, memory_limit_mb=memory_limit_mb)
    result = asyncio.run(sandbox.validate(code, sample))
    click.echo(json.dumps(result.model_dump(), indent=2, default=str))
    if not result.valid:
        sys.exit(1)


if __name__ == "__main__":
    cli()
