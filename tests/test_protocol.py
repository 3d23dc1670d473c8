"""Tests for the relay wire format and payload conversion."""

import json

import pytest

from mesh_rtc.exceptions import InvalidDescriptionError, ProtocolError
from mesh_rtc.protocol import (
    SignalingEnvelope,
    candidate_from_json,
    candidate_to_json,
    decode_envelope,
    description_from_json,
    encode_envelope,
    generate_identifier,
)

from fakes import CANDIDATE_JSON


class TestEnvelopeEncoding:
    def test_announcement_uses_false_for_absent_fields(self):
        frame = json.loads(encode_envelope(SignalingEnvelope(sender="A")))
        assert frame == {"ice": False, "sdp": False, "target": False, "uuid": "A"}

    def test_offer_frame(self):
        envelope = SignalingEnvelope(
            sender="B", target="A", description={"type": "offer", "sdp": "v=0"}
        )
        frame = json.loads(encode_envelope(envelope))
        assert frame["target"] == "A"
        assert frame["sdp"] == {"type": "offer", "sdp": "v=0"}
        assert frame["ice"] is False

    def test_decode_maps_false_to_none(self):
        envelope = decode_envelope('{"ice": false, "sdp": false, "target": false, "uuid": "A"}')
        assert envelope == SignalingEnvelope(sender="A")
        assert envelope.is_announcement

    def test_decode_missing_fields_as_absent(self):
        envelope = decode_envelope('{"uuid": "A", "target": "B"}')
        assert envelope.target == "B"
        assert envelope.is_announcement

    def test_decode_bytes(self):
        envelope = decode_envelope(b'{"uuid": "A", "ice": {"candidate": ""}}')
        assert envelope.candidate == {"candidate": ""}
        assert not envelope.is_announcement

    @pytest.mark.parametrize(
        "frame",
        [
            "not json",
            "[1, 2]",
            '{"sdp": false}',
            '{"uuid": 5}',
            '{"uuid": ""}',
            '{"uuid": "A", "target": 7}',
            '{"uuid": "A", "sdp": "v=0"}',
            '{"uuid": "A", "ice": "candidate:..."}',
        ],
    )
    def test_decode_rejects_malformed(self, frame):
        with pytest.raises(ProtocolError):
            decode_envelope(frame)


class TestAddressing:
    def test_loop_back_rejected(self):
        assert not SignalingEnvelope(sender="A").is_addressed_to("A")

    def test_broadcast_accepted(self):
        assert SignalingEnvelope(sender="B").is_addressed_to("A")

    def test_targeted_at_self_accepted(self):
        assert SignalingEnvelope(sender="B", target="A").is_addressed_to("A")

    def test_targeted_elsewhere_rejected(self):
        assert not SignalingEnvelope(sender="B", target="C").is_addressed_to("A")


class TestDescriptions:
    def test_offer(self):
        description = description_from_json({"type": "offer", "sdp": "v=0"})
        assert description.type == "offer"
        assert description.sdp == "v=0"

    def test_invalid_type(self):
        with pytest.raises(InvalidDescriptionError) as exc_info:
            description_from_json({"type": "pranswer", "sdp": "v=0"})
        assert exc_info.value.description_type == "pranswer"

    def test_missing_sdp(self):
        with pytest.raises(ProtocolError):
            description_from_json({"type": "answer"})


class TestCandidates:
    def test_from_browser_shape(self):
        candidate = candidate_from_json(CANDIDATE_JSON)
        assert candidate.ip == "192.168.1.2"
        assert candidate.port == 54321
        assert candidate.type == "host"
        assert candidate.sdpMid == "0"
        assert candidate.sdpMLineIndex == 0

    def test_to_browser_shape(self):
        payload = candidate_to_json(candidate_from_json(CANDIDATE_JSON))
        assert payload["candidate"].startswith("candidate:1 1 ")
        assert "192.168.1.2 54321 typ host" in payload["candidate"]
        assert payload["sdpMid"] == "0"
        assert payload["sdpMLineIndex"] == 0

    def test_end_of_candidates(self):
        assert candidate_from_json({"candidate": "", "sdpMid": "0"}) is None

    @pytest.mark.parametrize("line", ["candidate:garbage", "candidate:1 1 UDP", 42])
    def test_unparseable_candidate(self, line):
        with pytest.raises(ProtocolError):
            candidate_from_json({"candidate": line})


def test_generate_identifier_is_unique_hex():
    first, second = generate_identifier(), generate_identifier()
    assert first != second
    assert len(first) == 32
    int(first, 16)
