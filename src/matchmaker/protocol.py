"""WebSocket message protocol definitions.

Defines Pydantic models for signaling message serialization/deserialization.
Messages are JSON-encoded text frames discriminated by their ``type`` field.
Relayed messages carry ``to`` on the way in and ``from`` on the way out.
"""

import json
from typing import Any, Literal

from pydantic import BaseModel, ConfigDict, Field, ValidationError, model_validator


class ProtocolError(ValueError):
    """Raised when a frame cannot be decoded into a known message."""


class _Message(BaseModel):
    model_config = ConfigDict(populate_by_name=True, frozen=True)

    def to_json(self) -> str:
        """Serialize using wire field names (``from`` instead of ``from_id``)."""
        return self.model_dump_json(by_alias=True)


class IceCandidatePayload(BaseModel):
    """ICE candidate as produced by a browser or aiortc.

    ``candidate`` is the SDP attribute line, with or without the
    ``candidate:`` prefix. At least one of ``sdp_mid`` and
    ``sdp_mline_index`` must be set, otherwise the candidate cannot be bound
    to a media section.
    """

    model_config = ConfigDict(frozen=True)

    candidate: str = Field(..., min_length=1, description="SDP candidate attribute")
    sdp_mid: str | None = Field(default=None, description="Media stream id")
    sdp_mline_index: int | None = Field(default=None, ge=0, description="m-line index")

    @model_validator(mode="after")
    def require_media_section(self) -> "IceCandidatePayload":
        if self.sdp_mid is None and self.sdp_mline_index is None:
            raise ValueError("sdp_mid or sdp_mline_index is required")
        return self


# ---------------------------------------------------------------------------
# Client → Server
# ---------------------------------------------------------------------------


class SearchRequestMessage(_Message):
    """Client → Server: look for a partner."""

    type: Literal["search-request"] = "search-request"


class CancelSearchMessage(_Message):
    """Client → Server: stop looking for a partner."""

    type: Literal["cancel-search"] = "cancel-search"


class OfferMessage(_Message):
    """Client → Server: SDP offer addressed to a partner."""

    type: Literal["offer"] = "offer"
    sdp: str = Field(..., min_length=1)
    to: str = Field(..., min_length=1, description="Recipient connection id")


class AnswerMessage(_Message):
    """Client → Server: SDP answer addressed to a partner."""

    type: Literal["answer"] = "answer"
    sdp: str = Field(..., min_length=1)
    to: str = Field(..., min_length=1, description="Recipient connection id")


class IceCandidateMessage(_Message):
    """Client → Server: trickled ICE candidate addressed to a partner."""

    type: Literal["ice-candidate"] = "ice-candidate"
    candidate: IceCandidatePayload
    to: str = Field(..., min_length=1, description="Recipient connection id")


class LeaveMessage(_Message):
    """Client → Server: the client hung up."""

    type: Literal["leave"] = "leave"


# ---------------------------------------------------------------------------
# Server → Client
# ---------------------------------------------------------------------------


class HelloMessage(_Message):
    """Server → Client: connection accepted, carries the assigned identity."""

    type: Literal["hello"] = "hello"
    connection_id: str


class SearchingAckMessage(_Message):
    """Server → Client: the client now occupies the waiting slot."""

    type: Literal["searching-ack"] = "searching-ack"


class MatchedMessage(_Message):
    """Server → Client: a partner was found."""

    type: Literal["matched"] = "matched"
    partner_id: str
    should_initiate: bool


class RelayedOfferMessage(_Message):
    """Server → Client: offer forwarded from a partner."""

    type: Literal["offer"] = "offer"
    sdp: str
    from_id: str = Field(..., alias="from")


class RelayedAnswerMessage(_Message):
    """Server → Client: answer forwarded from a partner."""

    type: Literal["answer"] = "answer"
    sdp: str
    from_id: str = Field(..., alias="from")


class RelayedIceCandidateMessage(_Message):
    """Server → Client: ICE candidate forwarded from a partner."""

    type: Literal["ice-candidate"] = "ice-candidate"
    candidate: IceCandidatePayload
    from_id: str = Field(..., alias="from")


class PeerLeftMessage(_Message):
    """Server → Client: broadcast when any other participant leaves."""

    type: Literal["peer-left"] = "peer-left"
    from_id: str = Field(..., alias="from")


class ErrorMessage(_Message):
    """Server → Client: error notification."""

    type: Literal["error"] = "error"
    message: str = Field(..., description="Error description")
    code: str = Field(default="INTERNAL_ERROR", description="Error code")


# Union type for all client → server messages
ClientMessage = (
    SearchRequestMessage
    | CancelSearchMessage
    | OfferMessage
    | AnswerMessage
    | IceCandidateMessage
    | LeaveMessage
)

# Union type for all server → client messages
ServerMessage = (
    HelloMessage
    | SearchingAckMessage
    | MatchedMessage
    | RelayedOfferMessage
    | RelayedAnswerMessage
    | RelayedIceCandidateMessage
    | PeerLeftMessage
    | ErrorMessage
)

RelayKind = Literal["offer", "answer", "ice-candidate"]

_CLIENT_TYPES: dict[str, type[BaseModel]] = {
    "search-request": SearchRequestMessage,
    "cancel-search": CancelSearchMessage,
    "offer": OfferMessage,
    "answer": AnswerMessage,
    "ice-candidate": IceCandidateMessage,
    "leave": LeaveMessage,
}

_SERVER_TYPES: dict[str, type[BaseModel]] = {
    "hello": HelloMessage,
    "searching-ack": SearchingAckMessage,
    "matched": MatchedMessage,
    "offer": RelayedOfferMessage,
    "answer": RelayedAnswerMessage,
    "ice-candidate": RelayedIceCandidateMessage,
    "peer-left": PeerLeftMessage,
    "error": ErrorMessage,
}


def _decode(raw: str | bytes | dict[str, Any], registry: dict[str, type[BaseModel]]) -> Any:
    if isinstance(raw, dict):
        data = raw
    else:
        try:
            data = json.loads(raw)
        except (json.JSONDecodeError, UnicodeDecodeError) as e:
            raise ProtocolError(f"Invalid JSON: {e}") from e

    if not isinstance(data, dict):
        raise ProtocolError("Message must be a JSON object")

    message_type = data.get("type")
    model = registry.get(message_type) if isinstance(message_type, str) else None
    if model is None:
        raise ProtocolError(f"Unknown message type: {message_type!r}")

    try:
        return model.model_validate(data)
    except ValidationError as e:
        raise ProtocolError(f"Invalid {message_type} message: {e.error_count()} error(s)") from e


def parse_client_message(raw: str | bytes | dict[str, Any]) -> ClientMessage:
    """Decode a client → server frame.

    Raises:
        ProtocolError: If the frame is not JSON, has an unknown type, or
            fails validation
    """
    message: ClientMessage = _decode(raw, _CLIENT_TYPES)
    return message


def parse_server_message(raw: str | bytes | dict[str, Any]) -> ServerMessage:
    """Decode a server → client frame.

    Raises:
        ProtocolError: If the frame is not JSON, has an unknown type, or
            fails validation
    """
    message: ServerMessage = _decode(raw, _SERVER_TYPES)
    return message
