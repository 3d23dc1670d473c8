"""Shared fixtures for mesh-rtc tests."""

from unittest.mock import AsyncMock

import pytest

from mesh_rtc.events import EventBus
from mesh_rtc.negotiation import NegotiationEngine
from mesh_rtc.registry import PeerRegistry

from fakes import SELF_ID, EventRecorder, FakeClock, FakePeerConnection


@pytest.fixture(autouse=True)
def reset_fake_connections():
    FakePeerConnection.instances = []
    yield
    FakePeerConnection.instances = []


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def registry(clock):
    return PeerRegistry(clock=clock)


@pytest.fixture
def bus():
    return EventBus()


@pytest.fixture
def recorder(bus):
    return EventRecorder(bus)


@pytest.fixture
def relay_send():
    return AsyncMock()


@pytest.fixture
def engine(registry, bus, relay_send):
    return NegotiationEngine(
        SELF_ID,
        registry,
        bus,
        send=relay_send,
        stun_server="stun:127.0.0.1:3478",
        connection_factory=FakePeerConnection,
    )
