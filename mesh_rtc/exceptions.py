"""Exceptions raised by mesh-rtc.

None of these escape the signaling loop: the negotiation engine and the
signaling link catch them, log them and discard the offending envelope.
They are public so that callers of the lower-level helpers (and the
application-facing ``MeshNode.send``) can handle them explicitly.
"""


class MeshError(Exception):
    """Base class for all mesh-rtc errors."""

    pass


class ProtocolError(MeshError):
    """Raised when a relay frame cannot be decoded into an envelope."""

    pass


class InvalidDescriptionError(ProtocolError):
    """Raised when a session description has an unrecognized type.

    Attributes:
        description_type: The offending ``type`` value as received.
    """

    def __init__(self, description_type):
        self.description_type = description_type
        super().__init__(f"Bad SDP type: {description_type!r}")


class NegotiationError(MeshError):
    """Raised when the transport rejects a negotiation step.

    Attributes:
        peer_id: Identifier of the peer whose negotiation failed.
        step: Short name of the failed step (e.g. ``"offer"``).
    """

    def __init__(self, peer_id: str, step: str, cause: Exception):
        self.peer_id = peer_id
        self.step = step
        super().__init__(f"{step} failed for {peer_id}: {cause}")


class ChannelNotOpenError(MeshError):
    """Raised when sending to a peer that has no open data channel."""

    def __init__(self, peer_id: str):
        self.peer_id = peer_id
        super().__init__(f"No open data channel to peer {peer_id}")
