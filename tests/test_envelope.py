"""
Tests for signaling envelopes, identities and chat payloads.
"""

import json

import pytest

from peerbeam.exceptions import MalformedEnvelope
from peerbeam.mesh.envelope import (
    IceCandidateEnvelope,
    JoinEnvelope,
    OfferEnvelope,
    RoomsListEnvelope,
    SessionDescription,
    envelope_target,
    parse_envelope,
)
from peerbeam.mesh.identity import (
    ChatMessage,
    PeerIdentity,
    generate_room_id,
    handshake_payload,
    normalize_room_id,
)


class TestParseEnvelope:
    """Tests for parse_envelope."""

    def test_join_with_camel_case_keys(self):
        """Test join fields come from camelCase wire keys."""
        env = parse_envelope('{"type": "join", "roomId": "ABCD", "peerId": "p1", "peerName": "Ann"}')
        assert isinstance(env, JoinEnvelope)
        assert env.room_id == "ABCD"
        assert env.peer_id == "p1"
        assert env.peer_name == "Ann"

    def test_offer_from_key(self):
        """Test the reserved 'from' key maps to from_."""
        env = parse_envelope({
            "type": "offer",
            "from": "p1",
            "fromName": "Ann",
            "to": "p2",
            "offer": {"type": "offer", "sdp": "v=0"},
        })
        assert isinstance(env, OfferEnvelope)
        assert env.from_ == "p1"
        assert env.offer.sdp == "v=0"

    def test_bytes_input(self):
        """Test raw bytes are accepted."""
        env = parse_envelope(b'{"type": "get-rooms"}')
        assert env.type == "get-rooms"

    def test_rooms_list(self):
        """Test nested room summaries parse."""
        env = parse_envelope({
            "type": "rooms-list",
            "rooms": [{"id": "ABCD", "peerCount": 1, "peers": [{"id": "p1", "name": "Ann"}]}],
        })
        assert isinstance(env, RoomsListEnvelope)
        assert env.rooms[0].peer_count == 1
        assert env.rooms[0].peers[0].name == "Ann"

    def test_invalid_json(self):
        """Test non-JSON input is rejected."""
        with pytest.raises(MalformedEnvelope):
            parse_envelope("{not json")

    def test_non_object(self):
        """Test a JSON array is rejected."""
        with pytest.raises(MalformedEnvelope):
            parse_envelope("[1, 2]")

    def test_unknown_type(self):
        """Test unknown envelope types are rejected."""
        with pytest.raises(MalformedEnvelope):
            parse_envelope({"type": "teleport"})

    def test_missing_required_field(self):
        """Test an offer without a recipient is rejected."""
        with pytest.raises(MalformedEnvelope):
            parse_envelope({"type": "offer", "from": "p1", "offer": {"type": "offer", "sdp": "x"}})


class TestEnvelopeSerialization:
    """Tests for envelope wire output."""

    def test_to_dict_uses_aliases(self):
        """Test serialized keys are camelCase."""
        env = OfferEnvelope(
            from_="p1", from_name="Ann", to="p2",
            offer=SessionDescription(type="offer", sdp="v=0"),
        )
        data = env.to_dict()
        assert data["from"] == "p1"
        assert data["fromName"] == "Ann"
        assert data["offer"] == {"type": "offer", "sdp": "v=0"}

    def test_none_fields_omitted(self):
        """Test a join without a room omits roomId."""
        data = json.loads(JoinEnvelope(peer_id="p1", peer_name="Ann").to_json())
        assert "roomId" not in data
        assert data["type"] == "join"

    def test_envelope_target(self):
        """Test only directed envelopes have a target."""
        candidate = IceCandidateEnvelope(from_="p1", to="p2", candidate={"candidate": "c"})
        assert envelope_target(candidate) == "p2"
        assert envelope_target(JoinEnvelope(peer_id="p1")) is None


class TestIdentity:
    """Tests for identities and room ids."""

    def test_room_id_shape(self):
        """Test generated room ids are 6 upper-case alphanumerics."""
        for _ in range(20):
            room_id = generate_room_id()
            assert len(room_id) == 6
            assert room_id.isalnum()
            assert room_id == room_id.upper()

    def test_normalize_room_id(self):
        """Test room ids compare case-insensitively."""
        assert normalize_room_id(" abcd ") == "ABCD"
        assert normalize_room_id(None) == ""

    def test_generated_identities_differ(self):
        """Test peer ids are random."""
        a = PeerIdentity.generate("Ann")
        b = PeerIdentity.generate("Ann")
        assert a.id != b.id
        assert a.display_name == "Ann"

    def test_chat_message_dict(self):
        """Test chat payload keys."""
        identity = PeerIdentity(id="p1", display_name="Ann")
        message = ChatMessage.create(identity, "hello")
        data = message.to_dict()
        assert data["sender"] == "p1"
        assert data["senderName"] == "Ann"
        assert data["text"] == "hello"
        assert ChatMessage.from_dict(data) == message

    def test_chat_message_missing_text(self):
        """Test a payload without text is rejected."""
        with pytest.raises(KeyError):
            ChatMessage.from_dict({"id": "m1", "sender": "p1"})

    def test_handshake_payload(self):
        """Test the handshake shape."""
        identity = PeerIdentity(id="p1", display_name="Ann")
        assert handshake_payload(identity) == {"type": "handshake", "name": "Ann", "id": "p1"}
