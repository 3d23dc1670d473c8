"""Direct WebRTC data-channel mesh built on a shared signaling relay."""

from mesh_rtc.events import PEER_JOINED, PEER_LEFT, PEER_UPDATED, EventBus
from mesh_rtc.exceptions import (
    ChannelNotOpenError,
    InvalidDescriptionError,
    MeshError,
    NegotiationError,
    ProtocolError,
)
from mesh_rtc.node import MeshNode
from mesh_rtc.protocol import SignalingEnvelope

__all__ = [
    "MeshNode",
    "EventBus",
    "SignalingEnvelope",
    "PEER_JOINED",
    "PEER_LEFT",
    "PEER_UPDATED",
    "MeshError",
    "ProtocolError",
    "InvalidDescriptionError",
    "NegotiationError",
    "ChannelNotOpenError",
]
