"""Minimal WebSocket relay for mesh-rtc nodes.

The relay knows nothing about WebRTC. It learns each connection's node
identifier from the ``uuid`` of the first frame it sends, then forwards:

- frames with a ``target`` to the connection registered under that id,
- frames without one (join announcements) to every other connection.

Frames are forwarded verbatim.

Usage:
    mesh-rtc relay [--host HOST] [--port PORT]
"""

import asyncio
import logging
from typing import Dict, Set

import websockets

from mesh_rtc.exceptions import ProtocolError
from mesh_rtc.protocol import decode_envelope

logger = logging.getLogger(__name__)


class Relay:
    """Connection table and forwarding rules of the relay.

    Attributes:
        nodes: Node identifier -> websocket connection.
        connections: Every open connection, registered or not.
    """

    def __init__(self):
        self.nodes: Dict[str, object] = {}
        self.connections: Set[object] = set()

    async def handler(self, websocket):
        """Handle one node's WebSocket connection."""
        self.connections.add(websocket)
        node_id = None

        try:
            async for frame in websocket:
                try:
                    envelope = decode_envelope(frame)
                except ProtocolError as e:
                    logger.warning(f"Dropping malformed frame: {e}")
                    continue

                if node_id is None:
                    node_id = envelope.sender
                    self.nodes[node_id] = websocket
                    logger.info(f"Registered node: {node_id} (total: {len(self.nodes)})")

                if envelope.target is None:
                    others = [ws for ws in self.connections if ws is not websocket]
                    websockets.broadcast(others, frame)
                    logger.debug(f"Broadcast from {node_id} to {len(others)} nodes")
                    continue

                target = self.nodes.get(envelope.target)
                if target is None:
                    logger.warning(f"Target node not found: {envelope.target}")
                    continue
                try:
                    await target.send(frame)
                except websockets.exceptions.ConnectionClosed:
                    logger.warning(f"Target node {envelope.target} already closed")
                    continue
                logger.debug(f"Forwarded frame from {node_id} to {envelope.target}")

        except websockets.exceptions.ConnectionClosed:
            logger.info(f"Connection closed: {node_id}")
        finally:
            self.connections.discard(websocket)
            if node_id is not None and self.nodes.get(node_id) is websocket:
                del self.nodes[node_id]
                logger.info(f"Removed node: {node_id} (remaining: {len(self.nodes)})")


async def serve(host: str, port: int):
    """Start the relay and run forever."""
    relay = Relay()
    async with websockets.serve(relay.handler, host, port):
        logger.info(f"Relay running on ws://{host}:{port}")
        await asyncio.Future()  # Run forever
