"""Tests for MeshNode and end-to-end negotiation between two nodes."""

import asyncio
import json
from unittest.mock import AsyncMock, patch

import pytest

from mesh_rtc.config import Config
from mesh_rtc.events import EventBus
from mesh_rtc.exceptions import ChannelNotOpenError
from mesh_rtc.negotiation import NegotiationEngine
from mesh_rtc.node import MeshNode
from mesh_rtc.protocol import SignalingEnvelope, decode_envelope, encode_envelope
from mesh_rtc.registry import PeerRegistry, PeerState

from fakes import (
    SELF_ID,
    EventRecorder,
    FakeClock,
    FakeDataChannel,
    FakePeerConnection,
    FakeWebSocket,
    settle,
)


@pytest.fixture
def mesh():
    return MeshNode(
        config=Config(),
        identifier=SELF_ID,
        connection_factory=FakePeerConnection,
        clock=FakeClock(),
    )


async def connect_peer(mesh, peer_id):
    """Create a peer and hand it an already-open sending channel."""
    mesh.engine.handle_envelope(SignalingEnvelope(sender=peer_id))
    record = mesh.registry.get(peer_id)
    channel = FakeDataChannel("mesh")
    channel.open()
    record.connection.emit("datachannel", channel)
    await settle()
    return channel


class TestMessaging:
    @pytest.mark.asyncio
    async def test_send_to_connected_peer(self, mesh):
        channel = await connect_peer(mesh, "peer-a")
        mesh.send("peer-a", {"x": 1})
        assert [json.loads(m) for m in channel.sent] == [{"x": 1}]
        assert mesh.peers == ["peer-a"]

    @pytest.mark.asyncio
    async def test_send_to_unknown_peer_raises(self, mesh):
        with pytest.raises(ChannelNotOpenError) as exc_info:
            mesh.send("nobody", {"x": 1})
        assert exc_info.value.peer_id == "nobody"

    @pytest.mark.asyncio
    async def test_send_before_channel_opens_raises(self, mesh):
        mesh.engine.handle_envelope(SignalingEnvelope(sender="peer-a"))
        assert mesh.peers == []
        with pytest.raises(ChannelNotOpenError):
            mesh.send("peer-a", {"x": 1})
        await settle()

    @pytest.mark.asyncio
    async def test_broadcast_skips_unopened_peers(self, mesh):
        first = await connect_peer(mesh, "peer-a")
        second = await connect_peer(mesh, "peer-b")
        mesh.engine.handle_envelope(SignalingEnvelope(sender="peer-c"))
        await settle()

        assert mesh.broadcast({"tick": 7}) == 2
        assert first.sent == second.sent == ['{"tick": 7}']

    @pytest.mark.asyncio
    async def test_closed_channel_no_longer_listed(self, mesh):
        channel = await connect_peer(mesh, "peer-a")
        channel.close()
        assert mesh.peers == []
        assert mesh.state_of("peer-a") is not None

    def test_state_of_unknown_peer(self, mesh):
        assert mesh.state_of("nobody") is None

    def test_generated_identifier(self):
        first = MeshNode(config=Config())
        second = MeshNode(config=Config())
        assert first.identifier != second.identifier


class TestLifecycle:
    @pytest.mark.asyncio
    async def test_connect_and_disconnect(self, mesh):
        websocket = FakeWebSocket()
        recorder = EventRecorder(mesh.events)
        with patch("mesh_rtc.signaling.websockets.connect", new=AsyncMock(return_value=websocket)):
            await mesh.connect()

        assert mesh.pruner.running
        assert json.loads(websocket.sent[0])["uuid"] == SELF_ID

        await connect_peer(mesh, "peer-a")
        await mesh.disconnect()
        await settle()

        assert not mesh.pruner.running
        assert len(mesh.registry) == 0
        assert recorder.left == ["peer-a"]
        assert websocket.closed
        assert FakePeerConnection.instances[0].closed

    @pytest.mark.asyncio
    async def test_disconnect_survives_failing_peer_left_handler(self, mesh):
        websocket = FakeWebSocket()
        with patch("mesh_rtc.signaling.websockets.connect", new=AsyncMock(return_value=websocket)):
            await mesh.connect()
        await connect_peer(mesh, "peer-a")
        await connect_peer(mesh, "peer-b")

        def on_left(peer_id):
            raise RuntimeError("handler bug")

        mesh.on("peer-left", on_left)
        await mesh.disconnect()
        await settle()

        assert len(mesh.registry) == 0
        assert websocket.closed
        assert not mesh.link.connected
        assert all(conn.closed for conn in FakePeerConnection.instances)

    @pytest.mark.asyncio
    async def test_relay_loss_leaves_all_peers(self, mesh):
        websocket = FakeWebSocket()
        recorder = EventRecorder(mesh.events)
        with patch("mesh_rtc.signaling.websockets.connect", new=AsyncMock(return_value=websocket)):
            runner = asyncio.create_task(mesh.run_forever())
            await settle()
            await connect_peer(mesh, "peer-a")

            websocket.end()
            await asyncio.wait_for(runner, timeout=1.0)

        assert recorder.left == ["peer-a"]
        assert not mesh.pruner.running
        assert not mesh.link.connected


class TwoNodeRelay:
    """Routes envelopes between engines the way the relay and link do."""

    def __init__(self):
        self.engines = {}
        self.frames = []

    def add(self, identifier, connection_factory=FakePeerConnection):
        bus = EventBus()
        recorder = EventRecorder(bus)

        async def send(envelope):
            self.route(encode_envelope(envelope))

        engine = NegotiationEngine(
            identifier,
            PeerRegistry(clock=FakeClock()),
            bus,
            send=send,
            connection_factory=connection_factory,
        )
        self.engines[identifier] = engine
        return engine, recorder

    def route(self, frame):
        self.frames.append(frame)
        envelope = decode_envelope(frame)
        for identifier, engine in self.engines.items():
            if envelope.is_addressed_to(identifier):
                engine.handle_envelope(envelope)


class TestTwoNodeHandshake:
    @pytest.mark.asyncio
    @pytest.mark.parametrize("open_first", ["A", "B"])
    async def test_newcomer_is_offered_and_both_connect(self, open_first):
        relay = TwoNodeRelay()
        engine_a, events_a = relay.add("A")
        engine_b, events_b = relay.add("B")

        # A joins; B is already on the relay and offers
        relay.route(encode_envelope(SignalingEnvelope(sender="A")))
        await settle(10)

        record_ab = engine_a.registry.get("B")
        record_ba = engine_b.registry.get("A")
        assert record_ba.state is PeerState.OFFERING
        assert record_ab.state is PeerState.ANSWERING
        assert record_ab.connection.remoteDescription.type == "offer"
        assert record_ba.connection.remoteDescription.type == "answer"

        sdp_types = [
            json.loads(frame)["sdp"]["type"]
            for frame in relay.frames
            if json.loads(frame)["sdp"]
        ]
        assert sdp_types == ["offer", "answer"]

        # Each side's receive channel is the other side's sending channel
        record_ab.connection.emit("datachannel", record_ba.receive_channel)
        record_ba.connection.emit("datachannel", record_ab.receive_channel)
        first, second = (record_ab, record_ba) if open_first == "A" else (record_ba, record_ab)
        first.receive_channel.open()
        second.receive_channel.open()
        await settle()

        assert record_ab.state is PeerState.CONNECTED
        assert record_ba.state is PeerState.CONNECTED
        assert events_a.joined == ["B"]
        assert events_b.joined == ["A"]
        assert record_ab.channel is record_ba.receive_channel
        assert record_ba.channel is record_ab.receive_channel


async def wait_until(predicate, timeout=15.0):
    loop = asyncio.get_running_loop()
    deadline = loop.time() + timeout
    while not predicate():
        if loop.time() > deadline:
            raise AssertionError("condition not reached before timeout")
        await asyncio.sleep(0.05)


class TestAiortcHandshake:
    """Two engines on real aiortc connections over the local host."""

    @pytest.mark.asyncio
    async def test_join_and_exchange_message(self):
        relay = TwoNodeRelay()
        engine_a, events_a = relay.add("A", connection_factory=None)
        engine_b, events_b = relay.add("B", connection_factory=None)

        try:
            relay.route(encode_envelope(SignalingEnvelope(sender="A")))
            await wait_until(lambda: events_a.joined == ["B"] and events_b.joined == ["A"])

            # Remote channels are attached once aiortc reports them
            await wait_until(
                lambda: engine_a.registry.get("B").channel is not None
                and engine_b.registry.get("A").channel is not None
            )
            assert engine_a.registry.state_of("B") is PeerState.CONNECTED
            assert engine_b.registry.state_of("A") is PeerState.CONNECTED

            engine_a.registry.get("B").channel.send(json.dumps({"hello": "B"}))
            await wait_until(lambda: events_b.updated == [("A", {"hello": "B"})])
        finally:
            await engine_a.close_all()
            await engine_b.close_all()

        assert events_a.left == ["B"]
        assert events_b.left == ["A"]
