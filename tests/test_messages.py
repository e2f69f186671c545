"""Tests for signaling message parsing."""
from __future__ import annotations

import pytest

from meshcall.core.exceptions import MessageError
from meshcall.webrtc.messages import (
    IceCandidate,
    Join,
    Offer,
    Participant,
    PeerJoined,
    PeerLeft,
    Roster,
    parse_message,
)


def test_roster_parses_participants_and_own_id():
    message = parse_message({
        "type": "roster",
        "peerId": "p3",
        "participants": [
            {"peerId": "p1", "userId": "u1", "displayName": "Alice"},
            {"peerId": "p2"},
        ],
    })

    assert isinstance(message, Roster)
    assert message.peer_id == "p3"
    assert message.participants == [
        Participant(peer_id="p1", user_id="u1", display_name="Alice"),
        Participant(peer_id="p2"),
    ]


def test_wire_names_are_camel_case():
    assert Join(room_id="r", user_id="u", display_name="Alice").to_dict() == {
        "type": "join", "roomId": "r", "userId": "u", "displayName": "Alice"
    }
    assert Offer(sender="a", target="b", sdp="v=0").to_dict() == {
        "type": "offer", "from": "a", "to": "b", "sdp": "v=0"
    }
    assert PeerJoined(Participant("p1", "u1", "Alice")).to_dict() == {
        "type": "peer-joined", "peerId": "p1", "userId": "u1", "displayName": "Alice"
    }


def test_ice_candidate_keeps_browser_fields():
    message = parse_message({
        "type": "ice-candidate",
        "from": "a",
        "to": "b",
        "candidate": {"candidate": "candidate:1 1 udp 1 10.0.0.1 5000 typ host", "sdpMid": "0", "sdpMLineIndex": 0},
    })

    assert isinstance(message, IceCandidate)
    assert message.candidate["sdpMid"] == "0"


def test_peer_left():
    assert parse_message({"type": "peer-left", "peerId": "p1"}) == PeerLeft(peer_id="p1")


@pytest.mark.parametrize("data", [
    "offer",
    {"sdp": "v=0"},
    {"type": "bogus"},
    {"type": "offer", "from": "a", "to": "b"},
    {"type": "answer", "from": "a", "to": 7, "sdp": "v=0"},
    {"type": "ice-candidate", "from": "a", "to": "b", "candidate": "candidate:1"},
    {"type": "ice-candidate", "from": "a", "to": "b", "candidate": {"sdpMid": "0"}},
    {"type": "roster", "participants": "p1"},
    {"type": "roster", "participants": [{"userId": "u1"}]},
    {"type": "peer-joined", "displayName": "Alice"},
])
def test_malformed_messages_raise(data):
    with pytest.raises(MessageError):
        parse_message(data)
