"""Per-peer negotiation state machine.

The engine turns relay envelopes into WebRTC connections. Each remote node
goes through:

    (unknown) -> INITIALIZING -> OFFERING | ANSWERING -> CONNECTED -> CLOSED

Roles are not negotiated explicitly. A node that already holds a fresh
(INITIALIZING) record when it sees a join announcement becomes the offerer;
a node that receives an offer becomes the answerer. Since announcements are
broadcast and never delivered back to their sender, only the nodes already
on the relay offer to a newcomer.

Every node creates its own data channel toward each peer and listens on it.
The channel created by the remote side arrives through the ``datachannel``
event and is used for sending.

All state changes happen synchronously in ``handle_envelope`` or in an event
callback; only the transport calls (create/apply descriptions, add
candidates, close) are awaited, inside tracked tasks. After every await the
task re-checks that its record is still the live one before continuing.
"""

import asyncio
import json
import logging
from typing import Any, Awaitable, Callable, Dict, Optional, Set

from aiortc import RTCConfiguration, RTCIceServer, RTCPeerConnection

from mesh_rtc.config import ChannelOptions
from mesh_rtc.events import PEER_JOINED, PEER_LEFT, PEER_UPDATED, EventBus
from mesh_rtc.exceptions import NegotiationError, ProtocolError
from mesh_rtc.protocol import (
    SDP_ANSWER,
    SDP_OFFER,
    SignalingEnvelope,
    candidate_from_json,
    candidate_to_json,
    description_from_json,
    description_to_json,
)
from mesh_rtc.registry import PeerRecord, PeerRegistry, PeerState

logger = logging.getLogger(__name__)

# ICE connection states that end a peer
ICE_FAILURE_STATES = ("failed", "disconnected", "closed")


class NegotiationEngine:
    """Drives the handshake with every peer seen on the relay.

    Attributes:
        identifier: This node's identifier.
        registry: Table of live peers.
        events: Bus used for peer-joined / peer-left / peer-updated.
        send: Coroutine function delivering an envelope to the relay.
        stun_server: Connectivity-check server URL for new connections.
        channel_options: Options for the data channel opened to each peer.
    """

    def __init__(
        self,
        identifier: str,
        registry: PeerRegistry,
        events: EventBus,
        send: Callable[[SignalingEnvelope], Awaitable[None]],
        stun_server: Optional[str] = None,
        channel_options: Optional[ChannelOptions] = None,
        connection_factory: Optional[Callable[[], Any]] = None,
    ):
        """Initialize NegotiationEngine.

        Args:
            identifier: This node's identifier.
            registry: PeerRegistry shared with the pruner.
            events: EventBus shared with the application.
            send: Coroutine function that transmits an envelope on the relay.
            stun_server: STUN URL handed to every new connection.
            channel_options: Data channel settings (label, retransmission window).
            connection_factory: Optional zero-argument callable returning a
                peer connection. Defaults to an aiortc RTCPeerConnection.
        """
        self.identifier = identifier
        self.registry = registry
        self.events = events
        self.send = send
        self.stun_server = stun_server
        self.channel_options = channel_options or ChannelOptions()
        self.connection_factory = connection_factory

        # Joined flags survive state changes caused by re-offers
        self._joined: Dict[str, PeerRecord] = {}
        self._tasks: Set[asyncio.Task] = set()

    # ===== Connection construction =====

    def _create_connection(self):
        """Create a peer connection configured with the STUN server."""
        if self.connection_factory is not None:
            return self.connection_factory()

        if self.stun_server:
            config = RTCConfiguration(iceServers=[RTCIceServer(urls=self.stun_server)])
            return RTCPeerConnection(configuration=config)

        logger.warning("No STUN server configured, using default RTCPeerConnection")
        return RTCPeerConnection()

    def _ensure_peer(self, peer_id: str) -> PeerRecord:
        """Return the live record for ``peer_id``, creating it on first sight."""
        record = self.registry.get(peer_id)
        if record is not None:
            return record

        logger.info(f"Initializing peer {peer_id}")
        connection = self._create_connection()
        record = PeerRecord(peer_id=peer_id, connection=connection)
        self._wire_connection(peer_id, record)

        options = self.channel_options
        channel = connection.createDataChannel(
            options.label,
            ordered=options.ordered,
            maxPacketLifeTime=options.max_packet_lifetime,
        )
        record.receive_channel = channel
        self._wire_receive_channel(peer_id, record, channel)

        self.registry.insert(record)
        return record

    def _wire_connection(self, peer_id: str, record: PeerRecord) -> None:
        connection = record.connection

        @connection.on("iceconnectionstatechange")
        async def on_ice_state_change():
            ice_state = connection.iceConnectionState
            if ice_state in ICE_FAILURE_STATES:
                logger.warning(f"ICE {ice_state} with {peer_id}")
                await self._close_record(peer_id, record)
            else:
                logger.debug(f"ICE state with {peer_id}: {ice_state}")

        @connection.on("icecandidate")
        async def on_ice_candidate(candidate):
            if candidate is None or not self._is_live(peer_id, record):
                return
            await self.send(
                SignalingEnvelope(
                    sender=self.identifier,
                    target=peer_id,
                    candidate=candidate_to_json(candidate),
                )
            )
            logger.debug(f"Sent ICE candidate to {peer_id}")

        @connection.on("datachannel")
        def on_datachannel(channel):
            # This is the _sending_ channel, created by the remote side
            logger.info(
                f"Received data channel from {peer_id}: {channel.label} "
                f"(state: {channel.readyState})"
            )

            @channel.on("open")
            def on_open():
                if self._is_live(peer_id, record):
                    self.registry.attach_channel(peer_id, channel)

            @channel.on("close")
            def on_close():
                logger.info(f"Sending channel closed with {peer_id}")
                self.registry.detach_channel(peer_id, channel)

            @channel.on("message")
            def on_message(message):
                self._on_message(peer_id, record, message)

            # aiortc announces remote channels once they are already open
            if channel.readyState == "open" and self._is_live(peer_id, record):
                self.registry.attach_channel(peer_id, channel)

    def _wire_receive_channel(self, peer_id: str, record: PeerRecord, channel) -> None:
        @channel.on("open")
        def on_open():
            self._on_channel_open(peer_id, record)

        @channel.on("close")
        async def on_close():
            logger.info(f"Data channel closed with {peer_id}")
            await self._close_record(peer_id, record)

        @channel.on("message")
        def on_message(message):
            self._on_message(peer_id, record, message)

    # ===== Envelope handling =====

    def handle_envelope(self, envelope: SignalingEnvelope) -> Optional[asyncio.Task]:
        """Apply one inbound envelope from the relay.

        The envelope must already be addressed to this node (see
        ``SignalingEnvelope.is_addressed_to``).

        Returns:
            The task carrying the transport work for this envelope, or None
            if the envelope required no asynchronous work.
        """
        peer_id = envelope.sender
        record = self._ensure_peer(peer_id)

        # Only accepted negotiation steps count as activity
        if envelope.candidate is not None:
            self.registry.touch(peer_id)
            logger.debug(f"Add ICE candidate for {peer_id}")
            return self._spawn(self._apply_candidate(peer_id, record, envelope.candidate))

        if envelope.description is None:
            if record.state is not PeerState.INITIALIZING:
                logger.debug(f"Ignoring announcement from {peer_id} in state {record.state.value}")
                return None
            logger.info(f"Offer connection to {peer_id}")
            self.registry.touch(peer_id)
            self.registry.set_state(peer_id, PeerState.OFFERING)
            return self._spawn(self._offer(peer_id, record))

        try:
            description = description_from_json(envelope.description)
        except ProtocolError as e:
            logger.error(f"Discarding envelope from {peer_id}: {e}")
            return None

        logger.info(f"SDP type [{description.type}] from {peer_id}")
        if description.type == SDP_OFFER:
            self.registry.touch(peer_id)
            self.registry.set_state(peer_id, PeerState.ANSWERING)
            return self._spawn(self._answer(peer_id, record, description))

        if description.type == SDP_ANSWER:
            if record.state is not PeerState.OFFERING:
                logger.warning(
                    f"Rejecting answer from {peer_id}: not offering "
                    f"(state {record.state.value})"
                )
                return None
            self.registry.touch(peer_id)
            return self._spawn(self._apply_answer(peer_id, record, description))

        return None

    async def _offer(self, peer_id: str, record: PeerRecord) -> None:
        connection = record.connection
        try:
            offer = await connection.createOffer()
            await connection.setLocalDescription(offer)
        except Exception as e:
            logger.error(f"{NegotiationError(peer_id, 'offer', e)}")
            # Let a later announcement retry
            if self._is_live(peer_id, record) and record.state is PeerState.OFFERING:
                self.registry.set_state(peer_id, PeerState.INITIALIZING)
            return

        if not self._is_live(peer_id, record):
            logger.debug(f"Peer {peer_id} closed before offer was sent")
            return

        await self.send(
            SignalingEnvelope(
                sender=self.identifier,
                target=peer_id,
                description=description_to_json(connection.localDescription),
            )
        )
        logger.info(f"Sent offer to {peer_id}")

    async def _answer(self, peer_id: str, record: PeerRecord, offer) -> None:
        connection = record.connection
        try:
            await connection.setRemoteDescription(offer)
            answer = await connection.createAnswer()
            await connection.setLocalDescription(answer)
        except Exception as e:
            logger.error(f"{NegotiationError(peer_id, 'answer', e)}")
            return

        if not self._is_live(peer_id, record):
            logger.debug(f"Peer {peer_id} closed before answer was sent")
            return

        # A re-offer on a live link does not reopen the channel
        if self._joined.get(peer_id) is record and record.state is PeerState.ANSWERING:
            self.registry.set_state(peer_id, PeerState.CONNECTED)

        await self.send(
            SignalingEnvelope(
                sender=self.identifier,
                target=peer_id,
                description=description_to_json(connection.localDescription),
            )
        )
        logger.info(f"Sent answer to {peer_id}")

    async def _apply_answer(self, peer_id: str, record: PeerRecord, answer) -> None:
        try:
            await record.connection.setRemoteDescription(answer)
        except Exception as e:
            logger.error(f"{NegotiationError(peer_id, 'answer', e)}")
            return
        logger.info(f"Applied answer from {peer_id}")

    async def _apply_candidate(
        self, peer_id: str, record: PeerRecord, payload: Dict[str, Any]
    ) -> None:
        if not self._is_live(peer_id, record):
            logger.debug(f"Dropping ICE candidate for closed peer {peer_id}")
            return

        try:
            candidate = candidate_from_json(payload)
        except ProtocolError as e:
            logger.error(f"Discarding candidate from {peer_id}: {e}")
            return

        if candidate is None:
            logger.debug(f"End of candidates from {peer_id}")
            return

        try:
            await record.connection.addIceCandidate(candidate)
        except Exception as e:
            logger.error(f"{NegotiationError(peer_id, 'candidate', e)}")

    # ===== Channel callbacks =====

    def _on_channel_open(self, peer_id: str, record: PeerRecord) -> None:
        if not self._is_live(peer_id, record) or self._joined.get(peer_id) is record:
            return
        logger.info(f"Data channel open with {peer_id}")
        self._joined[peer_id] = record
        self.registry.set_state(peer_id, PeerState.CONNECTED)
        self.registry.touch(peer_id)
        self.events.emit(PEER_JOINED, peer_id)

    def _on_message(self, peer_id: str, record: PeerRecord, message) -> None:
        if not self._is_live(peer_id, record):
            return
        self.registry.touch(peer_id)
        if isinstance(message, bytes):
            message = message.decode("utf-8", errors="replace")
        try:
            payload = json.loads(message)
        except json.JSONDecodeError as e:
            logger.warning(f"Dropping undecodable message from {peer_id}: {e}")
            return
        self.events.emit(PEER_UPDATED, peer_id, payload)

    # ===== Teardown =====

    def _is_live(self, peer_id: str, record: PeerRecord) -> bool:
        return self.registry.get(peer_id) is record

    async def _close_record(self, peer_id: str, record: PeerRecord) -> bool:
        if not self._is_live(peer_id, record):
            return False
        return await self.close_peer(peer_id)

    async def close_peer(self, peer_id: str) -> bool:
        """Tear down a peer: evict it, close its channels and connection.

        The record is removed before anything is awaited, so concurrent
        teardown triggers (channel close, ICE failure, staleness) run the
        teardown at most once per record.

        Returns:
            True if a record was closed, False if none existed.
        """
        record = self.registry.remove(peer_id)
        if record is None:
            return False

        logger.info(f"Closing {peer_id}")
        if self._joined.get(peer_id) is record:
            del self._joined[peer_id]

        for channel in (record.channel, record.receive_channel):
            if channel is not None:
                channel.close()

        try:
            self.events.emit(PEER_LEFT, peer_id)
        except Exception as e:
            logger.error(f"peer-left handler failed for {peer_id}: {e}")

        try:
            await record.connection.close()
        except Exception as e:
            logger.error(f"Error closing connection to {peer_id}: {e}")
        return True

    async def close_all(self) -> None:
        """Cancel pending negotiation work and close every peer."""
        for task in list(self._tasks):
            task.cancel()
        for peer_id in self.registry.peer_ids():
            try:
                await self.close_peer(peer_id)
            except Exception as e:
                logger.error(f"Error closing {peer_id}: {e}")

    # ===== Task tracking =====

    def _spawn(self, coro) -> asyncio.Task:
        task = asyncio.create_task(coro)
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)
        return task

    @property
    def pending(self) -> int:
        """Number of negotiation tasks still running."""
        return len(self._tasks)
