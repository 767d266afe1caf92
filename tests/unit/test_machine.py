"""Unit tests for the negotiation state machine (pure reducer)."""

from dataclasses import replace

import pytest

from caller.machine import (
    NO_TRACKS,
    AcceptOffer,
    AnswerReceived,
    ApplyAnswer,
    ApplyCandidate,
    CallEnded,
    CallPhase,
    CandidateReceived,
    ConnectivityChanged,
    ConnectivityStatus,
    Matched,
    MuteToggled,
    NegotiationFailed,
    NegotiationState,
    OfferReceived,
    PartnerLeft,
    RemoteDescriptionApplied,
    RemoteTrackAdded,
    SearchCancelled,
    SearchStarted,
    SendMessage,
    SetMicrophoneEnabled,
    StartOffer,
    Teardown,
    reduce,
)
from matchmaker.protocol import (
    CancelSearchMessage,
    IceCandidatePayload,
    LeaveMessage,
    SearchRequestMessage,
)

IDLE = NegotiationState()


def cand(n: int) -> IceCandidatePayload:
    return IceCandidatePayload(
        candidate=f"candidate:{n} 1 udp 1 10.0.0.{n} 5000 typ host", sdp_mid="0"
    )


def searching() -> NegotiationState:
    return reduce(IDLE, SearchStarted()).state


def negotiating(initiator: bool = False, partner: str = "B") -> NegotiationState:
    return reduce(searching(), Matched(partner, initiator, at=10.0)).state


def test_search_started_sends_request() -> None:
    transition = reduce(IDLE, SearchStarted())

    assert transition.state.phase is CallPhase.SEARCHING
    assert transition.state.media_ready is True
    assert transition.effects == (SendMessage(SearchRequestMessage()),)


def test_search_started_twice_is_ignored() -> None:
    state = searching()

    transition = reduce(state, SearchStarted())

    assert transition.ignored is not None
    assert transition.state is state
    assert transition.effects == ()


def test_cancel_releases_media_and_tells_server() -> None:
    transition = reduce(searching(), SearchCancelled())

    assert transition.state == IDLE
    assert transition.effects == (
        SendMessage(CancelSearchMessage()),
        Teardown(notify_partner=False),
    )


def test_cancel_while_idle_is_ignored() -> None:
    assert reduce(IDLE, SearchCancelled()).ignored is not None


def test_matched_as_initiator_starts_offer() -> None:
    transition = reduce(searching(), Matched("B", True, at=5.0))

    assert transition.state.phase is CallPhase.NEGOTIATING
    assert transition.state.partner_id == "B"
    assert transition.state.is_initiator is True
    assert transition.state.call_started_at == 5.0
    assert transition.effects == (StartOffer("B"),)


def test_matched_as_responder_waits_for_offer() -> None:
    transition = reduce(searching(), Matched("B", False, at=5.0))

    assert transition.state.phase is CallPhase.NEGOTIATING
    assert transition.effects == ()


def test_match_after_cancel_releases_partner() -> None:
    """The server paired us before our cancel arrived; the partner must be freed."""
    transition = reduce(IDLE, Matched("B", True, at=1.0))

    assert transition.ignored is None
    assert transition.state == IDLE
    assert transition.effects == (SendMessage(LeaveMessage()),)


def test_matched_while_in_call_is_ignored() -> None:
    state = negotiating()
    transition = reduce(state, Matched("C", True, at=20.0))

    assert transition.ignored is not None
    assert transition.state == state


def test_offer_accepted_from_partner() -> None:
    transition = reduce(negotiating(), OfferReceived("v=0", "B", at=12.0))

    assert transition.effects == (AcceptOffer("v=0", "B"),)
    assert transition.state.remote_description_applied is False
    assert transition.state.call_started_at == 12.0


def test_offer_while_searching_adopts_sender() -> None:
    transition = reduce(searching(), OfferReceived("v=0", "B", at=1.0))

    assert transition.state.phase is CallPhase.NEGOTIATING
    assert transition.state.partner_id == "B"
    assert transition.effects == (AcceptOffer("v=0", "B"),)


def test_offer_without_local_media_is_rejected() -> None:
    """No local audio: no answer is produced and state is unchanged."""
    transition = reduce(IDLE, OfferReceived("v=0", "B", at=1.0))

    assert transition.ignored is not None
    assert transition.effects == ()
    assert transition.state == IDLE


def test_offer_from_stranger_is_ignored() -> None:
    state = negotiating(partner="B")

    transition = reduce(state, OfferReceived("v=0", "C", at=1.0))

    assert transition.ignored is not None
    assert transition.state is state


def test_renegotiation_keeps_pending_candidates() -> None:
    """A fresh offer mid-call resets the flag but keeps queued candidates."""
    state = replace(
        negotiating(),
        phase=CallPhase.CONNECTED,
        remote_description_applied=False,
        pending_candidates=(cand(1),),
    )

    transition = reduce(state, OfferReceived("v=0 again", "B", at=20.0))

    assert transition.state.phase is CallPhase.NEGOTIATING
    assert transition.state.pending_candidates == (cand(1),)
    assert transition.state.remote_description_applied is False


def test_candidates_queue_until_description_applied() -> None:
    """Candidates arriving before the offer are applied in order afterwards."""
    state = negotiating()
    for n in (1, 2, 3):
        transition = reduce(state, CandidateReceived(cand(n), "B"))
        assert transition.effects == ()
        state = transition.state
    assert state.pending_candidates == (cand(1), cand(2), cand(3))

    state = reduce(state, OfferReceived("v=0", "B", at=1.0)).state
    transition = reduce(state, RemoteDescriptionApplied())

    assert transition.effects == (
        ApplyCandidate(cand(1)),
        ApplyCandidate(cand(2)),
        ApplyCandidate(cand(3)),
    )
    assert transition.state.pending_candidates == ()
    assert transition.state.remote_description_applied is True


def test_candidate_after_description_applies_immediately() -> None:
    state = reduce(negotiating(), RemoteDescriptionApplied()).state

    transition = reduce(state, CandidateReceived(cand(4), "B"))

    assert transition.effects == (ApplyCandidate(cand(4)),)
    assert transition.state.pending_candidates == ()


def test_candidate_while_searching_is_queued() -> None:
    transition = reduce(searching(), CandidateReceived(cand(1), "B"))

    assert transition.state.pending_candidates == (cand(1),)


def test_candidate_while_idle_is_ignored() -> None:
    assert reduce(IDLE, CandidateReceived(cand(1), "B")).ignored is not None


def test_candidate_from_stranger_is_ignored() -> None:
    assert reduce(negotiating(partner="B"), CandidateReceived(cand(1), "C")).ignored is not None


def test_answer_is_applied() -> None:
    transition = reduce(negotiating(initiator=True), AnswerReceived("v=0 answer", "B"))

    assert transition.effects == (ApplyAnswer("v=0 answer"),)


def test_answer_without_call_is_ignored() -> None:
    assert reduce(searching(), AnswerReceived("v=0", "B")).ignored is not None


def test_connected_moves_to_connected_phase() -> None:
    transition = reduce(negotiating(), ConnectivityChanged(ConnectivityStatus.CONNECTED))

    assert transition.state.phase is CallPhase.CONNECTED
    assert transition.state.connectivity is ConnectivityStatus.CONNECTED


def test_checking_updates_connectivity_only() -> None:
    transition = reduce(negotiating(), ConnectivityChanged(ConnectivityStatus.CHECKING))

    assert transition.state.phase is CallPhase.NEGOTIATING
    assert transition.state.connectivity is ConnectivityStatus.CHECKING


def test_ice_failure_ends_call_and_notifies_partner() -> None:
    transition = reduce(negotiating(), ConnectivityChanged(ConnectivityStatus.FAILED))

    assert transition.state == IDLE
    assert transition.effects == (Teardown(notify_partner=True),)


def test_completed_maps_to_connected() -> None:
    assert ConnectivityStatus.from_ice_state("completed") is ConnectivityStatus.CONNECTED
    assert ConnectivityStatus.from_ice_state("checking") is ConnectivityStatus.CHECKING
    with pytest.raises(ValueError):
        ConnectivityStatus.from_ice_state("bogus")


def test_remote_track_updates_summary() -> None:
    transition = reduce(negotiating(), RemoteTrackAdded("1 audio track(s)"))

    assert transition.state.remote_track_summary == "1 audio track(s)"


def test_mute_toggles_microphone_without_renegotiation() -> None:
    state = reduce(negotiating(), ConnectivityChanged(ConnectivityStatus.CONNECTED)).state

    transition = reduce(state, MuteToggled(True))

    assert transition.state.muted is True
    assert transition.state.phase is CallPhase.CONNECTED
    assert transition.effects == (SetMicrophoneEnabled(False),)

    transition = reduce(transition.state, MuteToggled(False))
    assert transition.effects == (SetMicrophoneEnabled(True),)


def test_mute_without_media_is_ignored() -> None:
    assert reduce(IDLE, MuteToggled(True)).ignored is not None


def test_negotiation_failure_resets_and_notifies() -> None:
    transition = reduce(negotiating(), NegotiationFailed("bad sdp"))

    assert transition.state == IDLE
    assert transition.effects == (Teardown(notify_partner=True),)


def test_partner_left_resets_without_notifying() -> None:
    transition = reduce(negotiating(partner="B"), PartnerLeft("B"))

    assert transition.state == IDLE
    assert transition.state.remote_track_summary == NO_TRACKS
    assert transition.effects == (Teardown(notify_partner=False),)


def test_departure_of_stranger_is_ignored() -> None:
    """peer-left is broadcast; only the partner's departure ends the call."""
    state = negotiating(partner="B")

    transition = reduce(state, PartnerLeft("C"))

    assert transition.ignored is not None
    assert transition.state is state


def test_partner_left_while_searching_is_ignored() -> None:
    assert reduce(searching(), PartnerLeft("B")).ignored is not None


def test_end_call_notifies_partner() -> None:
    transition = reduce(negotiating(), CallEnded())

    assert transition.state == IDLE
    assert transition.effects == (Teardown(notify_partner=True),)


def test_end_call_while_searching_cancels() -> None:
    transition = reduce(searching(), CallEnded())

    assert transition.effects == (
        SendMessage(CancelSearchMessage()),
        Teardown(notify_partner=False),
    )


def test_end_call_while_idle_has_no_effects() -> None:
    transition = reduce(IDLE, CallEnded())

    assert transition.effects == ()
    assert transition.state == IDLE


def test_invalid_phase_transition_raises() -> None:
    from caller.machine import _enter

    with pytest.raises(ValueError, match="Invalid phase transition"):
        _enter(IDLE, CallPhase.CONNECTED)


def test_reset_state_has_no_partner_or_media() -> None:
    state = reduce(negotiating(partner="B"), CallEnded()).state

    assert state.partner_id is None
    assert state.media_ready is False
    assert state.pending_candidates == ()
    assert state.call_started_at is None
    assert state.in_call is False
