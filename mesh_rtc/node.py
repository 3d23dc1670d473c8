"""Application-facing mesh node.

A MeshNode joins a relay, negotiates a direct WebRTC data channel with every
other node it hears about, and reports peers coming and going through
callbacks::

    node = MeshNode()
    node.on("peer-joined", lambda peer_id: print("joined", peer_id))
    node.on("peer-updated", lambda peer_id, payload: print(peer_id, payload))
    node.on("peer-left", lambda peer_id: print("left", peer_id))
    await node.connect()
    node.broadcast({"hello": "mesh"})
"""

import json
import logging
import time
from typing import Any, Callable, List, Optional

from mesh_rtc.config import Config, get_config
from mesh_rtc.events import EventBus
from mesh_rtc.exceptions import ChannelNotOpenError
from mesh_rtc.negotiation import NegotiationEngine
from mesh_rtc.protocol import generate_identifier
from mesh_rtc.pruner import Pruner
from mesh_rtc.registry import PeerRegistry, PeerState
from mesh_rtc.signaling import SignalingLink

logger = logging.getLogger(__name__)


class MeshNode:
    """One participant in the mesh.

    Attributes:
        identifier: This node's identifier, fixed for the node's lifetime.
        config: Settings used for the relay URL, STUN server and timeouts.
        events: Lifecycle callback registry.
        registry: Live peers.
        link: Relay connection.
        engine: Negotiation state machine.
        pruner: Staleness sweeper.
    """

    def __init__(
        self,
        config: Optional[Config] = None,
        identifier: Optional[str] = None,
        connection_factory: Optional[Callable[[], Any]] = None,
        clock: Callable[[], float] = time.monotonic,
    ):
        """Initialize MeshNode.

        Args:
            config: Configuration; defaults to the global configuration.
            identifier: Node identifier; generated if not given.
            connection_factory: Optional factory for peer connections
                (defaults to aiortc RTCPeerConnection).
            clock: Time source for activity tracking, in seconds.
        """
        self.config = config or get_config()
        self.identifier = identifier or generate_identifier()

        self.events = EventBus()
        self.registry = PeerRegistry(clock=clock)
        self.link = SignalingLink(
            self.identifier,
            self.config.get_websocket_url(),
            on_close=self._on_relay_closed,
        )
        self.engine = NegotiationEngine(
            self.identifier,
            self.registry,
            self.events,
            send=self.link.send,
            stun_server=self.config.stun_server,
            channel_options=self.config.get_channel_options(),
            connection_factory=connection_factory,
        )
        self.link.on_envelope = self.engine.handle_envelope
        self.pruner = Pruner(
            self.registry, self.config.peer_timeout, evict=self.engine.close_peer
        )

    def on(self, name: str, handler: Callable[..., Any]) -> None:
        """Register the handler for ``peer-joined``, ``peer-left`` or ``peer-updated``."""
        self.events.on(name, handler)

    async def connect(self) -> None:
        """Join the relay and start evicting stale peers."""
        await self.link.connect()
        self.pruner.start()

    async def disconnect(self) -> None:
        """Close every peer, stop the pruner and leave the relay."""
        logger.info("Closing connection...")
        self.pruner.stop()
        try:
            await self.engine.close_all()
        finally:
            await self.link.disconnect()

    async def run_forever(self) -> None:
        """Connect and wait until the relay connection ends."""
        await self.connect()
        try:
            await self.link.wait_closed()
        finally:
            await self.disconnect()

    async def _on_relay_closed(self) -> None:
        # Leave all the connections
        logger.warning("Relay closed, leaving all peers")
        self.pruner.stop()
        await self.engine.close_all()

    @property
    def peers(self) -> List[str]:
        """Identifiers of peers with an open sending channel."""
        result = []
        for peer_id in self.registry.peer_ids():
            record = self.registry.get(peer_id)
            if record is not None and _is_open(record.channel):
                result.append(peer_id)
        return result

    def state_of(self, peer_id: str) -> Optional[PeerState]:
        """Negotiation state of a peer, or None if unknown."""
        return self.registry.state_of(peer_id)

    def send(self, peer_id: str, payload: Any) -> None:
        """Send a JSON-serializable payload to one peer.

        Delivery is unordered and best-effort.

        Raises:
            ChannelNotOpenError: If the peer has no open sending channel.
        """
        record = self.registry.get(peer_id)
        if record is None or not _is_open(record.channel):
            raise ChannelNotOpenError(peer_id)
        record.channel.send(json.dumps(payload))

    def broadcast(self, payload: Any) -> int:
        """Send a payload to every connected peer.

        Returns:
            Number of peers the payload was handed to.
        """
        message = json.dumps(payload)
        sent = 0
        for peer_id in self.registry.peer_ids():
            record = self.registry.get(peer_id)
            if record is None or not _is_open(record.channel):
                continue
            record.channel.send(message)
            sent += 1
        return sent


def _is_open(channel) -> bool:
    return channel is not None and channel.readyState == "open"
