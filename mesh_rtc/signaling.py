"""Relay connection for mesh-rtc.

The signaling link owns the WebSocket to the relay. It announces this node
on connect, serializes outbound envelopes, and hands inbound envelopes that
are addressed to this node to a callback (the negotiation engine).
"""

import asyncio
import logging
from typing import Any, Awaitable, Callable, Optional

import websockets

from mesh_rtc.exceptions import ProtocolError
from mesh_rtc.protocol import SignalingEnvelope, decode_envelope, encode_envelope

logger = logging.getLogger(__name__)


class SignalingLink:
    """Bidirectional envelope pipe to the relay.

    Attributes:
        identifier: This node's identifier; also its address on the relay.
        url: Relay WebSocket URL.
        on_envelope: Called with every envelope addressed to this node.
        on_close: Coroutine function awaited when the relay closes the
            connection on its own (not after ``disconnect()``).
        websocket: Open relay connection, or None.
    """

    def __init__(
        self,
        identifier: str,
        url: str,
        on_envelope: Optional[Callable[[SignalingEnvelope], Any]] = None,
        on_close: Optional[Callable[[], Awaitable[None]]] = None,
    ):
        self.identifier = identifier
        self.url = url
        self.on_envelope = on_envelope
        self.on_close = on_close
        self.websocket = None
        self._receive_task: Optional[asyncio.Task] = None

    @property
    def connected(self) -> bool:
        return self.websocket is not None

    async def connect(self) -> None:
        """Open the relay connection and announce this node.

        Raises:
            OSError: If the relay cannot be reached.
            websockets.exceptions.InvalidHandshake: If the relay rejects the
                WebSocket upgrade.
        """
        if self.connected:
            logger.warning("Relay connection already open")
            return

        logger.info(f"Connecting to relay {self.url}")
        self.websocket = await websockets.connect(self.url)

        # Signal the group in order to join
        await self.send(SignalingEnvelope(sender=self.identifier))
        logger.info(f"Joined relay as {self.identifier}")

        self._receive_task = asyncio.create_task(self._receive_loop(self.websocket))

    async def send(self, envelope: SignalingEnvelope) -> None:
        """Transmit one envelope. Failures are logged and not retried."""
        websocket = self.websocket
        if websocket is None:
            logger.warning("Cannot send envelope: relay not connected")
            return

        try:
            await websocket.send(encode_envelope(envelope))
        except websockets.exceptions.ConnectionClosed as e:
            logger.warning(f"Failed to send envelope, relay closed: {e}")
            return
        logger.debug(f"Sent envelope to {envelope.target or 'all'}")

    async def disconnect(self) -> None:
        """Close the relay connection and stop receiving."""
        websocket, self.websocket = self.websocket, None
        task, self._receive_task = self._receive_task, None

        if websocket is not None:
            logger.info("Closing relay connection...")
            await websocket.close()

        if task is not None and not task.done():
            task.cancel()

    async def wait_closed(self) -> None:
        """Wait until the receive loop ends."""
        if self._receive_task is not None:
            await asyncio.shield(self._receive_task)

    def dispatch(self, frame) -> Optional[SignalingEnvelope]:
        """Decode, filter and deliver one inbound frame.

        Returns:
            The delivered envelope, or None if it was malformed, a loop-back,
            or addressed to another node.
        """
        try:
            envelope = decode_envelope(frame)
        except ProtocolError as e:
            logger.error(f"Discarding malformed frame: {e}")
            return None

        # Ignore our own requests and ones not targeted for us
        if not envelope.is_addressed_to(self.identifier):
            return None

        if self.on_envelope is not None:
            try:
                self.on_envelope(envelope)
            except Exception as e:
                logger.error(f"Error handling envelope from {envelope.sender}: {e}")
                return None
        return envelope

    async def _receive_loop(self, websocket):
        try:
            async for frame in websocket:
                self.dispatch(frame)
        except websockets.exceptions.ConnectionClosed as e:
            logger.warning(f"Relay connection lost: {e}")
        except asyncio.CancelledError:
            logger.debug("Relay receive loop cancelled")
            return

        # Closed by the relay rather than by disconnect()
        if self.websocket is websocket:
            self.websocket = None
            logger.info("Relay connection closed")
            if self.on_close is not None:
                await self.on_close()
