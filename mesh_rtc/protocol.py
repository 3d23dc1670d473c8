"""Relay wire protocol for mesh-rtc.

Nodes talk to the relay in newline-free JSON text frames, one envelope per
frame. Every frame carries the same four fields:

**uuid**
    Identifier of the sending node. Always present.

**target**
    Identifier of the receiving node, or ``false`` to broadcast to every
    node currently listening on the relay.

**sdp**
    Session description ``{"type": "offer" | "answer", "sdp": "..."}``,
    or ``false``.

**ice**
    Connectivity candidate in the browser ``RTCIceCandidate.toJSON()``
    shape ``{"candidate": "candidate:...", "sdpMid": "0",
    "sdpMLineIndex": 0}``, or ``false``.

A ``false`` value means "absent", not "empty". A frame with neither
``sdp`` nor ``ice`` is a join announcement.

Examples:
    Join announcement from node ``A``::

        {"ice": false, "sdp": false, "target": false, "uuid": "A"}

    Offer from ``B`` to ``A``::

        {"ice": false, "sdp": {"type": "offer", "sdp": "v=0..."},
         "target": "A", "uuid": "B"}
"""

import json
import uuid
from dataclasses import dataclass
from typing import Any, Dict, Optional

from aiortc import RTCIceCandidate, RTCSessionDescription
from aiortc.sdp import candidate_from_sdp, candidate_to_sdp

from mesh_rtc.exceptions import InvalidDescriptionError, ProtocolError

# Wire field names
FIELD_CANDIDATE = "ice"
FIELD_DESCRIPTION = "sdp"
FIELD_TARGET = "target"
FIELD_SENDER = "uuid"

# Session description types
SDP_OFFER = "offer"
SDP_ANSWER = "answer"
SDP_TYPES = (SDP_OFFER, SDP_ANSWER)


def generate_identifier() -> str:
    """Generate a random node identifier.

    Returns:
        A 32-character hex token. Uniqueness is probabilistic only.
    """
    return uuid.uuid4().hex


@dataclass(frozen=True)
class SignalingEnvelope:
    """A single negotiation message exchanged through the relay.

    Attributes:
        sender: Identifier of the node that sent the envelope.
        target: Identifier of the intended receiver, or None for broadcast.
        candidate: Candidate payload, or None.
        description: Session description payload, or None.
    """

    sender: str
    target: Optional[str] = None
    candidate: Optional[Dict[str, Any]] = None
    description: Optional[Dict[str, Any]] = None

    @property
    def is_announcement(self) -> bool:
        """True if the envelope carries neither a description nor a candidate."""
        return self.candidate is None and self.description is None

    def is_addressed_to(self, identifier: str) -> bool:
        """Check whether a node with ``identifier`` should process this envelope.

        Loop-back envelopes (sent by ``identifier`` itself) and envelopes
        targeted at some other node are rejected.
        """
        if self.sender == identifier:
            return False
        if self.target is not None and self.target != identifier:
            return False
        return True


def _absent(value: Any) -> bool:
    return value is None or value is False


def encode_envelope(envelope: SignalingEnvelope) -> str:
    """Serialize an envelope into a relay frame.

    Examples:
        >>> encode_envelope(SignalingEnvelope(sender="A"))
        '{"ice": false, "sdp": false, "target": false, "uuid": "A"}'
    """
    return json.dumps(
        {
            FIELD_CANDIDATE: envelope.candidate if envelope.candidate is not None else False,
            FIELD_DESCRIPTION: (
                envelope.description if envelope.description is not None else False
            ),
            FIELD_TARGET: envelope.target if envelope.target is not None else False,
            FIELD_SENDER: envelope.sender,
        }
    )


def decode_envelope(frame) -> SignalingEnvelope:
    """Parse a relay frame into an envelope.

    Args:
        frame: JSON text (or UTF-8 bytes) received from the relay.

    Returns:
        The decoded SignalingEnvelope.

    Raises:
        ProtocolError: If the frame is not a JSON object with a string
            ``uuid``, or if ``sdp`` / ``ice`` / ``target`` have the wrong shape.
    """
    if isinstance(frame, (bytes, bytearray)):
        frame = frame.decode("utf-8", errors="replace")
    try:
        data = json.loads(frame)
    except json.JSONDecodeError as e:
        raise ProtocolError(f"Frame is not valid JSON: {e}") from e

    if not isinstance(data, dict):
        raise ProtocolError("Frame is not a JSON object")

    sender = data.get(FIELD_SENDER)
    if not isinstance(sender, str) or not sender:
        raise ProtocolError("Frame has no sender uuid")

    target = data.get(FIELD_TARGET)
    if _absent(target):
        target = None
    elif not isinstance(target, str):
        raise ProtocolError(f"Invalid target: {target!r}")

    description = data.get(FIELD_DESCRIPTION)
    if _absent(description):
        description = None
    elif not isinstance(description, dict):
        raise ProtocolError("Session description must be an object")

    candidate = data.get(FIELD_CANDIDATE)
    if _absent(candidate):
        candidate = None
    elif not isinstance(candidate, dict):
        raise ProtocolError("Candidate must be an object")

    return SignalingEnvelope(
        sender=sender, target=target, candidate=candidate, description=description
    )


def description_from_json(payload: Dict[str, Any]) -> RTCSessionDescription:
    """Build an aiortc session description from its wire form.

    Raises:
        InvalidDescriptionError: If ``type`` is not ``offer`` or ``answer``.
        ProtocolError: If ``sdp`` is missing.
    """
    description_type = payload.get("type")
    if description_type not in SDP_TYPES:
        raise InvalidDescriptionError(description_type)
    sdp = payload.get("sdp")
    if not isinstance(sdp, str):
        raise ProtocolError("Session description has no sdp text")
    return RTCSessionDescription(sdp=sdp, type=description_type)


def description_to_json(description: RTCSessionDescription) -> Dict[str, Any]:
    """Convert an aiortc session description to its wire form."""
    return {"type": description.type, "sdp": description.sdp}


def candidate_from_json(payload: Dict[str, Any]) -> Optional[RTCIceCandidate]:
    """Build an aiortc candidate from the browser JSON shape.

    Returns:
        The candidate, or None for the end-of-candidates marker (an empty
        ``candidate`` string).

    Raises:
        ProtocolError: If the candidate line cannot be parsed.
    """
    line = payload.get("candidate")
    if not line:
        return None
    if not isinstance(line, str):
        raise ProtocolError(f"Invalid candidate line: {line!r}")
    if line.startswith("candidate:"):
        line = line.split(":", 1)[1]
    try:
        candidate = candidate_from_sdp(line)
    except (AssertionError, IndexError, ValueError) as e:
        raise ProtocolError(f"Invalid candidate line: {payload.get('candidate')!r}") from e
    candidate.sdpMid = payload.get("sdpMid")
    candidate.sdpMLineIndex = payload.get("sdpMLineIndex")
    return candidate


def candidate_to_json(candidate: RTCIceCandidate) -> Dict[str, Any]:
    """Convert an aiortc candidate to the browser JSON shape."""
    return {
        "candidate": "candidate:" + candidate_to_sdp(candidate),
        "sdpMid": candidate.sdpMid,
        "sdpMLineIndex": candidate.sdpMLineIndex,
    }
