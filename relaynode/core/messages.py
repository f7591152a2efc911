"""
Wire models shared by clients and nodes.

Client frames are a JSON tagged union ``{"type": ..., "payload": {...}}``.
Binary fields travel as JSON arrays of byte values.
"""

from typing import Annotated, Any, List, Literal, Optional, Union

from pydantic import BaseModel, Field, PlainSerializer, PlainValidator, TypeAdapter, ValidationError


def _to_bytes(value: Any) -> bytes:
    if isinstance(value, (bytes, bytearray)):
        return bytes(value)
    if isinstance(value, (list, tuple)):
        for item in value:
            if isinstance(item, bool) or not isinstance(item, int) or not 0 <= item <= 255:
                raise ValueError("byte arrays must only contain integers between 0 and 255")
        return bytes(value)
    raise ValueError("expected an array of byte values")


# bytes <-> [int, ...]
Blob = Annotated[bytes, PlainValidator(_to_bytes), PlainSerializer(list, return_type=List[int])]


# === Payloads ===


class RegisterPayload(BaseModel):
    peer_id: str


class JoinPayload(BaseModel):
    user_id: str
    user_color: str
    room_id: str
    encrypted_data: Optional[Blob] = None


class SyncUpdatePayload(BaseModel):
    update: Blob
    room_id: str
    encrypted_data: Optional[Blob] = None


class LeaveRoomPayload(BaseModel):
    room_id: str


class GetRoomsPayload(BaseModel):
    pass


class RoomInfo(BaseModel):
    """One row of a RoomList. peer_count is local to the answering node."""

    room_id: str
    peer_count: int
    encrypted: bool


class RoomListPayload(BaseModel):
    rooms: List[RoomInfo] = Field(default_factory=list)


class OfferPayload(BaseModel):
    sdp: str
    from_peer: str
    to_peer: str


class AnswerPayload(BaseModel):
    sdp: str
    from_peer: str
    to_peer: str


class IceCandidatePayload(BaseModel):
    candidate: str
    from_peer: str
    to_peer: str


# === Tagged variants ===


class Register(BaseModel):
    type: Literal["Register"] = "Register"
    payload: RegisterPayload


class Join(BaseModel):
    type: Literal["Join"] = "Join"
    payload: JoinPayload


class SyncUpdate(BaseModel):
    type: Literal["SyncUpdate"] = "SyncUpdate"
    payload: SyncUpdatePayload


class LeaveRoom(BaseModel):
    type: Literal["LeaveRoom"] = "LeaveRoom"
    payload: LeaveRoomPayload


class GetRooms(BaseModel):
    type: Literal["GetRooms"] = "GetRooms"
    payload: GetRoomsPayload = Field(default_factory=GetRoomsPayload)


class RoomList(BaseModel):
    type: Literal["RoomList"] = "RoomList"
    payload: RoomListPayload


class Offer(BaseModel):
    type: Literal["Offer"] = "Offer"
    payload: OfferPayload


class Answer(BaseModel):
    type: Literal["Answer"] = "Answer"
    payload: AnswerPayload


class IceCandidate(BaseModel):
    type: Literal["IceCandidate"] = "IceCandidate"
    payload: IceCandidatePayload


SignalingMessage = Annotated[
    Union[Register, Join, SyncUpdate, LeaveRoom, GetRooms, RoomList, Offer, Answer, IceCandidate],
    Field(discriminator="type"),
]

# Variants addressed to a single peer rather than a room.
PointToPoint = (Offer, Answer, IceCandidate)

_signaling_adapter: TypeAdapter[SignalingMessage] = TypeAdapter(SignalingMessage)


def decode_message(raw: Union[str, bytes]) -> Optional[SignalingMessage]:
    """
    Parses a client frame.
    Returns None for anything malformed or unknown, the caller drops it.
    """
    try:
        return _signaling_adapter.validate_json(raw)
    except ValidationError:
        return None


def encode_message(message: BaseModel) -> str:
    """Serializes a signaling message to its JSON wire form."""
    return message.model_dump_json()


# === Replication ===


class RoomState(BaseModel):
    """Externally visible projection of a room."""

    document_state: Blob = b""
    encrypted: bool = False
    last_updated: int = 0
    peer_count: int = 0


class RoomUpdateEnvelope(BaseModel):
    """What nodes publish on the overlay after a local write."""

    room_id: str
    room: RoomState
    timestamp: int
