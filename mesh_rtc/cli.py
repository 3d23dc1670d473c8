"""Command-line interface for mesh-rtc using Click."""

import asyncio
import json
import logging
import sys

import click
from loguru import logger

from mesh_rtc.config import get_config
from mesh_rtc.events import PEER_JOINED, PEER_LEFT, PEER_UPDATED
from mesh_rtc.node import MeshNode
from mesh_rtc.relay import serve

LOG_LEVELS = ["DEBUG", "INFO", "WARNING", "ERROR"]


def _configure_logging(level: str) -> None:
    logging.basicConfig(
        level=getattr(logging, level),
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )
    logger.remove()
    logger.add(sys.stderr, level=level)


@click.group()
def cli():
    pass


@cli.command()
@click.option(
    "--server",
    "-s",
    default=None,
    help="Relay WebSocket URL (default: from config).",
)
@click.option(
    "--stun",
    default=None,
    help="STUN server URL handed to every peer connection.",
)
@click.option(
    "--timeout",
    "-t",
    type=float,
    default=None,
    help="Seconds without activity before a peer is dropped.",
)
@click.option(
    "--label",
    default=None,
    help="Data channel label.",
)
@click.option(
    "--log-level",
    type=click.Choice(LOG_LEVELS, case_sensitive=False),
    default="INFO",
    show_default=True,
)
def node(server, stun, timeout, label, log_level):
    """Join a relay and connect directly to every other node on it.

    Peer events are printed as they happen, one line each.

    Example:
        mesh-rtc node --server ws://127.0.0.1:9001
    """
    _configure_logging(log_level.upper())

    # CLI options override config file and environment
    config = get_config()
    overrides = {}
    if server:
        overrides["signaling_websocket"] = server
    if stun:
        overrides["stun_server"] = stun
    if timeout is not None:
        overrides["peer_timeout"] = timeout
    if label:
        overrides["channel_label"] = label
    config.apply(overrides)

    mesh = MeshNode(config=config)
    mesh.on(PEER_JOINED, lambda peer_id: click.echo(f"joined {peer_id}"))
    mesh.on(PEER_LEFT, lambda peer_id: click.echo(f"left {peer_id}"))
    mesh.on(
        PEER_UPDATED,
        lambda peer_id, payload: click.echo(f"update {peer_id} {json.dumps(payload)}"),
    )
    click.echo(f"Node {mesh.identifier} joining {config.get_websocket_url()}")

    try:
        asyncio.run(mesh.run_forever())
    except KeyboardInterrupt:
        logger.info("Node interrupted by user. Shutting down...")
    except OSError as e:
        logger.error(f"Could not reach relay: {e}")
        sys.exit(1)


@cli.command()
@click.option("--host", default="localhost", show_default=True, help="Host to bind to.")
@click.option("--port", "-p", type=int, default=9001, show_default=True, help="Port to listen on.")
@click.option(
    "--log-level",
    type=click.Choice(LOG_LEVELS, case_sensitive=False),
    default="INFO",
    show_default=True,
)
def relay(host, port, log_level):
    """Run a signaling relay that mesh nodes can join.

    Example:
        mesh-rtc relay --host 0.0.0.0 --port 9001
    """
    _configure_logging(log_level.upper())
    try:
        asyncio.run(serve(host, port))
    except KeyboardInterrupt:
        logger.info("Relay stopped")


if __name__ == "__main__":
    cli()
