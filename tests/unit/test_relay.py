"""Unit tests for the signaling relay."""

import pytest

from matchmaker.metrics import MetricsCollector
from matchmaker.protocol import (
    IceCandidatePayload,
    PeerLeftMessage,
    RelayedAnswerMessage,
    RelayedIceCandidateMessage,
    RelayedOfferMessage,
    SearchingAckMessage,
)
from matchmaker.relay import SignalingRelay
from tests.helpers.fakes import FakeChannel


@pytest.fixture
def metrics() -> MetricsCollector:
    return MetricsCollector()


@pytest.fixture
def relay(metrics: MetricsCollector) -> SignalingRelay:
    return SignalingRelay(metrics=metrics)


def test_register_and_unregister(relay: SignalingRelay) -> None:
    relay.register(FakeChannel("A"))

    assert relay.is_registered("A")
    assert relay.connection_count == 1

    relay.unregister("A")
    relay.unregister("A")  # unknown ids are ignored
    assert not relay.is_registered("A")
    assert relay.connection_count == 0


def test_duplicate_registration_rejected(relay: SignalingRelay) -> None:
    relay.register(FakeChannel("A"))

    with pytest.raises(ValueError, match="already registered"):
        relay.register(FakeChannel("A"))


@pytest.mark.asyncio
async def test_relay_offer_tags_sender(relay: SignalingRelay) -> None:
    b = FakeChannel("B")
    relay.register(FakeChannel("A"))
    relay.register(b)

    delivered = await relay.relay("offer", "v=0...", from_id="A", to_id="B")

    assert delivered is True
    assert b.sent == [RelayedOfferMessage(sdp="v=0...", from_id="A")]
    assert '"from":"A"' in b.sent[0].to_json()


@pytest.mark.asyncio
async def test_relay_answer_and_candidate(relay: SignalingRelay) -> None:
    a = FakeChannel("A")
    relay.register(a)
    relay.register(FakeChannel("B"))
    candidate = IceCandidatePayload(
        candidate="candidate:1 1 udp 1 10.0.0.1 5000 typ host", sdp_mid="0"
    )

    await relay.relay("answer", "v=0 answer", from_id="B", to_id="A")
    await relay.relay("ice-candidate", candidate, from_id="B", to_id="A")

    assert a.sent == [
        RelayedAnswerMessage(sdp="v=0 answer", from_id="B"),
        RelayedIceCandidateMessage(candidate=candidate, from_id="B"),
    ]


@pytest.mark.asyncio
async def test_relay_to_unknown_recipient_is_dropped(
    relay: SignalingRelay, metrics: MetricsCollector
) -> None:
    """Messages for departed recipients vanish without an error."""
    a = FakeChannel("A")
    relay.register(a)

    delivered = await relay.relay("offer", "v=0", from_id="A", to_id="gone")

    assert delivered is False
    assert a.sent == []
    summary = metrics.get_summary()
    assert summary["dropped_offer"] == 1
    assert summary["relayed_offer"] == 0


@pytest.mark.asyncio
async def test_relay_to_closed_channel_is_dropped(relay: SignalingRelay) -> None:
    b = FakeChannel("B")
    relay.register(b)
    await b.close()

    assert await relay.relay("answer", "v=0", from_id="A", to_id="B") is False


@pytest.mark.asyncio
async def test_relay_preserves_order(relay: SignalingRelay) -> None:
    """Messages from one sender to one recipient arrive in send order."""
    b = FakeChannel("B")
    relay.register(b)

    await relay.relay("offer", "v=0", from_id="A", to_id="B")
    for i in range(5):
        await relay.relay(
            "ice-candidate",
            IceCandidatePayload(candidate=f"candidate:{i}", sdp_mid="0"),
            from_id="A",
            to_id="B",
        )

    assert b.types() == ["offer"] + ["ice-candidate"] * 5
    assert [m.candidate.candidate for m in b.sent[1:]] == [f"candidate:{i}" for i in range(5)]


@pytest.mark.asyncio
async def test_relay_counts_delivered(relay: SignalingRelay, metrics: MetricsCollector) -> None:
    relay.register(FakeChannel("B"))

    await relay.relay("offer", "v=0", from_id="A", to_id="B")
    await relay.relay(
        "ice-candidate", IceCandidatePayload(candidate="c", sdp_mid="0"), from_id="A", to_id="B"
    )

    summary = metrics.get_summary()
    assert summary["relayed_offer"] == 1
    assert summary["relayed_ice_candidate"] == 1


@pytest.mark.asyncio
async def test_candidate_kind_requires_candidate_payload(relay: SignalingRelay) -> None:
    with pytest.raises(TypeError):
        await relay.relay("ice-candidate", "not a candidate", from_id="A", to_id="B")


@pytest.mark.asyncio
async def test_send_to(relay: SignalingRelay) -> None:
    a = FakeChannel("A")
    relay.register(a)

    assert await relay.send_to("A", SearchingAckMessage()) is True
    assert await relay.send_to("B", SearchingAckMessage()) is False
    assert a.types() == ["searching-ack"]


@pytest.mark.asyncio
async def test_announce_leave_broadcasts_to_everyone_else(relay: SignalingRelay) -> None:
    """Departure goes to every other connection, not just the partner."""
    channels = {cid: FakeChannel(cid) for cid in ("A", "B", "C")}
    for channel in channels.values():
        relay.register(channel)

    delivered = await relay.announce_leave("A")

    assert delivered == 2
    assert channels["A"].sent == []
    assert channels["B"].sent == [PeerLeftMessage(from_id="A")]
    assert channels["C"].sent == [PeerLeftMessage(from_id="A")]


@pytest.mark.asyncio
async def test_announce_leave_skips_closed_channels(relay: SignalingRelay) -> None:
    b = FakeChannel("B")
    c = FakeChannel("C")
    relay.register(b)
    relay.register(c)
    await c.close()

    assert await relay.announce_leave("A") == 1
    assert b.types() == ["peer-left"]
