"""Unit tests for signaling message parsing and serialization."""

import json

import pytest

from matchmaker.protocol import (
    AnswerMessage,
    CancelSearchMessage,
    ErrorMessage,
    HelloMessage,
    IceCandidateMessage,
    LeaveMessage,
    MatchedMessage,
    OfferMessage,
    PeerLeftMessage,
    ProtocolError,
    RelayedIceCandidateMessage,
    RelayedOfferMessage,
    SearchRequestMessage,
    parse_client_message,
    parse_server_message,
)


@pytest.mark.parametrize(
    ("raw", "expected_type"),
    [
        ('{"type": "search-request"}', SearchRequestMessage),
        ('{"type": "cancel-search"}', CancelSearchMessage),
        ('{"type": "offer", "sdp": "v=0", "to": "conn-1"}', OfferMessage),
        ('{"type": "answer", "sdp": "v=0", "to": "conn-1"}', AnswerMessage),
        ('{"type": "leave"}', LeaveMessage),
    ],
)
def test_parse_client_messages(raw: str, expected_type: type) -> None:
    assert isinstance(parse_client_message(raw), expected_type)


def test_parse_client_candidate() -> None:
    raw = json.dumps(
        {
            "type": "ice-candidate",
            "to": "conn-b",
            "candidate": {
                "candidate": "candidate:842163049 1 udp 1677729535 1.2.3.4 5000 typ srflx",
                "sdp_mid": "0",
                "sdp_mline_index": 0,
            },
        }
    )

    message = parse_client_message(raw)

    assert isinstance(message, IceCandidateMessage)
    assert message.to == "conn-b"
    assert message.candidate.sdp_mid == "0"
    assert message.candidate.sdp_mline_index == 0


def test_parse_accepts_bytes_and_dicts() -> None:
    assert isinstance(parse_client_message(b'{"type": "leave"}'), LeaveMessage)
    assert isinstance(parse_client_message({"type": "leave"}), LeaveMessage)


@pytest.mark.parametrize(
    "raw",
    [
        "not json",
        "[1, 2, 3]",
        '{"no_type": true}',
        '{"type": "dance"}',
        '{"type": "offer", "to": "conn-1"}',  # missing sdp
        '{"type": "offer", "sdp": "v=0"}',  # missing recipient
        '{"type": "ice-candidate", "to": "x", "candidate": {"candidate": ""}}',
        # no media section
        '{"type": "ice-candidate", "to": "x", "candidate": {"candidate": "candidate:1"}}',
        b"\xff\xfe",
    ],
)
def test_invalid_client_frames_raise(raw: str | bytes) -> None:
    with pytest.raises(ProtocolError):
        parse_client_message(raw)


def test_server_only_types_are_not_client_messages() -> None:
    with pytest.raises(ProtocolError):
        parse_client_message('{"type": "matched", "partner_id": "x", "should_initiate": true}')


def test_relayed_offer_uses_from_on_the_wire() -> None:
    wire = json.loads(RelayedOfferMessage(sdp="v=0", from_id="conn-a").to_json())

    assert wire == {"type": "offer", "sdp": "v=0", "from": "conn-a"}


def test_parse_server_messages() -> None:
    assert parse_server_message('{"type": "hello", "connection_id": "conn-a"}') == HelloMessage(
        connection_id="conn-a"
    )
    assert parse_server_message(
        '{"type": "matched", "partner_id": "conn-b", "should_initiate": false}'
    ) == MatchedMessage(partner_id="conn-b", should_initiate=False)
    assert parse_server_message('{"type": "peer-left", "from": "conn-b"}') == PeerLeftMessage(
        from_id="conn-b"
    )


def test_parse_server_candidate() -> None:
    message = parse_server_message(
        {
            "type": "ice-candidate",
            "from": "conn-b",
            "candidate": {"candidate": "candidate:1", "sdp_mline_index": 0},
        }
    )

    assert isinstance(message, RelayedIceCandidateMessage)
    assert message.from_id == "conn-b"
    assert message.candidate.sdp_mid is None


def test_error_message_defaults() -> None:
    wire = json.loads(ErrorMessage(message="boom").to_json())

    assert wire == {"type": "error", "message": "boom", "code": "INTERNAL_ERROR"}
