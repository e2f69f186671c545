"""
Typed signaling messages exchanged with the relay.

Every message is a JSON object discriminated by its ``type`` field. Python
attributes use snake_case; wire fields keep the relay's camelCase names.
"""
from dataclasses import dataclass, field
from typing import Any, ClassVar, Dict, List, Optional, Union

from meshcall.core.exceptions import MessageError
from meshcall.core.validation_utils import ValidationUtils


@dataclass(frozen=True)
class Participant:
    """A room member as reported by the relay."""

    peer_id: str
    user_id: str = ""
    display_name: str = ""

    def to_dict(self) -> Dict[str, Any]:
        return {"peerId": self.peer_id, "userId": self.user_id, "displayName": self.display_name}

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "Participant":
        error = ValidationUtils.validate_peer_id(data.get("peerId"))
        if error:
            raise MessageError(error, {"participant": data})
        return cls(
            peer_id=data["peerId"],
            user_id=data.get("userId") or "",
            display_name=data.get("displayName") or "",
        )


@dataclass(frozen=True)
class Join:
    type: ClassVar[str] = "join"

    room_id: str
    user_id: str
    display_name: str

    def to_dict(self) -> Dict[str, Any]:
        return {"type": self.type, "roomId": self.room_id, "userId": self.user_id,
                "displayName": self.display_name}

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "Join":
        _require(data, ["roomId", "userId", "displayName"])
        return cls(room_id=data["roomId"], user_id=data["userId"], display_name=data["displayName"])


@dataclass(frozen=True)
class Roster:
    """Existing room members, sent once to a newly joined peer.

    ``peer_id`` is the receiver's own relay-assigned id.
    """
    type: ClassVar[str] = "roster"

    participants: List[Participant] = field(default_factory=list)
    peer_id: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        data = {"type": self.type, "participants": [p.to_dict() for p in self.participants]}
        if self.peer_id is not None:
            data["peerId"] = self.peer_id
        return data

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "Roster":
        participants = data.get("participants", [])
        if not isinstance(participants, list):
            raise MessageError("participants must be a list", {"type": cls.type})
        return cls(
            participants=[Participant.from_dict(p) for p in participants],
            peer_id=data.get("peerId"),
        )


@dataclass(frozen=True)
class PeerJoined:
    type: ClassVar[str] = "peer-joined"

    participant: Participant

    @property
    def peer_id(self) -> str:
        return self.participant.peer_id

    def to_dict(self) -> Dict[str, Any]:
        return {"type": self.type, **self.participant.to_dict()}

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "PeerJoined":
        return cls(participant=Participant.from_dict(data))


@dataclass(frozen=True)
class Offer:
    type: ClassVar[str] = "offer"

    sender: str
    target: str
    sdp: str

    def to_dict(self) -> Dict[str, Any]:
        return {"type": self.type, "from": self.sender, "to": self.target, "sdp": self.sdp}

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "Offer":
        _require(data, ["from", "to", "sdp"])
        return cls(sender=data["from"], target=data["to"], sdp=data["sdp"])


@dataclass(frozen=True)
class Answer:
    type: ClassVar[str] = "answer"

    sender: str
    target: str
    sdp: str

    def to_dict(self) -> Dict[str, Any]:
        return {"type": self.type, "from": self.sender, "to": self.target, "sdp": self.sdp}

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "Answer":
        _require(data, ["from", "to", "sdp"])
        return cls(sender=data["from"], target=data["to"], sdp=data["sdp"])


@dataclass(frozen=True)
class IceCandidate:
    """A trickled ICE candidate in browser form: candidate, sdpMid, sdpMLineIndex."""
    type: ClassVar[str] = "ice-candidate"

    sender: str
    target: str
    candidate: Dict[str, Any]

    def to_dict(self) -> Dict[str, Any]:
        return {"type": self.type, "from": self.sender, "to": self.target, "candidate": self.candidate}

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "IceCandidate":
        _require(data, ["from", "to"])
        candidate = data.get("candidate")
        if not isinstance(candidate, dict) or not candidate.get("candidate"):
            raise MessageError("candidate must be an object with a candidate line",
                               {"type": cls.type, "from": data["from"]})
        return cls(sender=data["from"], target=data["to"], candidate=candidate)


@dataclass(frozen=True)
class PeerLeft:
    type: ClassVar[str] = "peer-left"

    peer_id: str

    def to_dict(self) -> Dict[str, Any]:
        return {"type": self.type, "peerId": self.peer_id}

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "PeerLeft":
        _require(data, ["peerId"])
        return cls(peer_id=data["peerId"])


@dataclass(frozen=True)
class Leave:
    type: ClassVar[str] = "leave"

    room_id: str

    def to_dict(self) -> Dict[str, Any]:
        return {"type": self.type, "roomId": self.room_id}

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "Leave":
        _require(data, ["roomId"])
        return cls(room_id=data["roomId"])


SignalingMessage = Union[Join, Roster, PeerJoined, Offer, Answer, IceCandidate, PeerLeft, Leave]

MESSAGE_TYPES = {
    cls.type: cls
    for cls in (Join, Roster, PeerJoined, Offer, Answer, IceCandidate, PeerLeft, Leave)
}


def _require(data: Dict[str, Any], fields: List[str]):
    error = (ValidationUtils.validate_required_fields(data, fields)
             or ValidationUtils.validate_string_fields(data, fields))
    if error:
        raise MessageError(error, {"type": data.get("type")})


def parse_message(data: Any) -> SignalingMessage:
    """Build a typed message from a decoded JSON object.

    Raises:
        MessageError: if the object is not a known, well-formed message.
    """
    if not isinstance(data, dict):
        raise MessageError("Signaling message must be a JSON object",
                           {"received": type(data).__name__})

    message_type = data.get("type")
    message_cls = MESSAGE_TYPES.get(message_type)
    if message_cls is None:
        raise MessageError("Unknown signaling message type", {"type": message_type})

    return message_cls.from_dict(data)
