"""Negotiation state machine.

Every signaling, media and user event is reduced by a pure function
``reduce(state, event) -> Transition``. The transition holds the next state
and the side effects to perform (messages to send, descriptions and
candidates to apply, teardown). Nothing in this module touches the network
or the media stack, so the whole call lifecycle can be tested without them.

Phase transitions:
- IDLE → SEARCHING (microphone acquired, search requested)
- SEARCHING → NEGOTIATING (matched, or an offer arrived)
- NEGOTIATING → CONNECTED (ICE connectivity established)
- NEGOTIATING/CONNECTED → NEGOTIATING (partner sent a fresh offer)
- * → IDLE (cancel, end, partner left, negotiation failure)

ICE candidates that arrive before a remote description is applied are
queued in arrival order and drained the moment the description lands. Once
drained the queue is never repopulated; later candidates apply immediately.
"""

from dataclasses import dataclass, replace
from enum import Enum

from matchmaker.protocol import (
    CancelSearchMessage,
    ClientMessage,
    IceCandidatePayload,
    LeaveMessage,
    SearchRequestMessage,
)

NO_TRACKS = "No tracks"


class CallPhase(Enum):
    """Coarse call lifecycle phase."""

    IDLE = "idle"
    SEARCHING = "searching"
    NEGOTIATING = "negotiating"
    CONNECTED = "connected"


class ConnectivityStatus(Enum):
    """Aggregate ICE connectivity of the current peer connection."""

    NEW = "new"
    CHECKING = "checking"
    CONNECTED = "connected"
    DISCONNECTED = "disconnected"
    FAILED = "failed"
    CLOSED = "closed"

    @classmethod
    def from_ice_state(cls, state: str) -> "ConnectivityStatus":
        """Map an ICE connection state name onto a connectivity status.

        ``completed`` (all candidate pairs checked) counts as connected.

        Raises:
            ValueError: If the state name is unknown
        """
        if state == "completed":
            return cls.CONNECTED
        return cls(state)


VALID_TRANSITIONS: dict[CallPhase, set[CallPhase]] = {
    CallPhase.IDLE: {CallPhase.SEARCHING},
    CallPhase.SEARCHING: {CallPhase.NEGOTIATING, CallPhase.IDLE},
    CallPhase.NEGOTIATING: {CallPhase.NEGOTIATING, CallPhase.CONNECTED, CallPhase.IDLE},
    CallPhase.CONNECTED: {CallPhase.NEGOTIATING, CallPhase.IDLE},
}


@dataclass(frozen=True)
class NegotiationState:
    """Immutable snapshot of one client's negotiation state."""

    phase: CallPhase = CallPhase.IDLE
    partner_id: str | None = None
    is_initiator: bool = False
    media_ready: bool = False
    remote_description_applied: bool = False
    pending_candidates: tuple[IceCandidatePayload, ...] = ()
    connectivity: ConnectivityStatus = ConnectivityStatus.NEW
    remote_track_summary: str = NO_TRACKS
    call_started_at: float | None = None
    muted: bool = False

    @property
    def in_call(self) -> bool:
        """Whether a partner has been assigned and the call is not over."""
        return self.phase in (CallPhase.NEGOTIATING, CallPhase.CONNECTED)


# ---------------------------------------------------------------------------
# Events
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class SearchStarted:
    """Local audio is ready and the user asked for a partner."""


@dataclass(frozen=True)
class SearchCancelled:
    """The user stopped searching."""


@dataclass(frozen=True)
class Matched:
    """The server paired us with a partner."""

    partner_id: str
    should_initiate: bool
    at: float


@dataclass(frozen=True)
class OfferReceived:
    """A relayed SDP offer arrived."""

    sdp: str
    from_id: str
    at: float


@dataclass(frozen=True)
class AnswerReceived:
    """A relayed SDP answer arrived."""

    sdp: str
    from_id: str | None = None


@dataclass(frozen=True)
class RemoteDescriptionApplied:
    """The peer connection accepted the remote description."""


@dataclass(frozen=True)
class CandidateReceived:
    """A relayed ICE candidate arrived."""

    candidate: IceCandidatePayload
    from_id: str | None = None


@dataclass(frozen=True)
class ConnectivityChanged:
    """The peer connection reported a new ICE connection state."""

    status: ConnectivityStatus


@dataclass(frozen=True)
class RemoteTrackAdded:
    """A remote media track started arriving."""

    summary: str


@dataclass(frozen=True)
class MuteToggled:
    """The user muted or unmuted the microphone."""

    muted: bool


@dataclass(frozen=True)
class NegotiationFailed:
    """Creating or applying a description or candidate failed."""

    reason: str


@dataclass(frozen=True)
class PartnerLeft:
    """Someone announced their departure (``from_id`` None if unknown)."""

    from_id: str | None = None


@dataclass(frozen=True)
class CallEnded:
    """The user hung up."""


Event = (
    SearchStarted
    | SearchCancelled
    | Matched
    | OfferReceived
    | AnswerReceived
    | RemoteDescriptionApplied
    | CandidateReceived
    | ConnectivityChanged
    | RemoteTrackAdded
    | MuteToggled
    | NegotiationFailed
    | PartnerLeft
    | CallEnded
)


# ---------------------------------------------------------------------------
# Effects
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class SendMessage:
    """Send a message to the signaling server."""

    message: ClientMessage


@dataclass(frozen=True)
class StartOffer:
    """Build a peer connection, create an offer and send it to the partner."""

    partner_id: str


@dataclass(frozen=True)
class AcceptOffer:
    """Build a fresh peer connection, apply the offer and answer it."""

    sdp: str
    partner_id: str


@dataclass(frozen=True)
class ApplyAnswer:
    """Apply the partner's answer as remote description."""

    sdp: str


@dataclass(frozen=True)
class ApplyCandidate:
    """Add a remote ICE candidate to the peer connection."""

    candidate: IceCandidatePayload


@dataclass(frozen=True)
class SetMicrophoneEnabled:
    """Toggle local audio transmission without renegotiating."""

    enabled: bool


@dataclass(frozen=True)
class Teardown:
    """Close the peer connection and release local media."""

    notify_partner: bool


Effect = (
    SendMessage
    | StartOffer
    | AcceptOffer
    | ApplyAnswer
    | ApplyCandidate
    | SetMicrophoneEnabled
    | Teardown
)


@dataclass(frozen=True)
class Transition:
    """Result of reducing one event.

    Attributes:
        state: Next state
        effects: Side effects to perform, in order
        ignored: Why the event was ignored (None if it was acted on)
    """

    state: NegotiationState
    effects: tuple[Effect, ...] = ()
    ignored: str | None = None


def _enter(state: NegotiationState, phase: CallPhase, **changes: object) -> NegotiationState:
    if phase is not state.phase and phase not in VALID_TRANSITIONS[state.phase]:
        raise ValueError(f"Invalid phase transition: {state.phase.value} → {phase.value}")
    return replace(state, phase=phase, **changes)  # type: ignore[arg-type]


def _ignore(state: NegotiationState, reason: str) -> Transition:
    return Transition(state=state, ignored=reason)


def _reset(*effects: Effect) -> Transition:
    return Transition(state=NegotiationState(), effects=effects)


def _stop_search() -> Transition:
    return _reset(SendMessage(CancelSearchMessage()), Teardown(notify_partner=False))


def reduce(state: NegotiationState, event: Event) -> Transition:
    """Compute the next state and side effects for one event.

    Args:
        state: Current state
        event: Incoming event

    Returns:
        Transition with the next state and ordered effects
    """
    if isinstance(event, SearchStarted):
        if state.phase is not CallPhase.IDLE:
            return _ignore(state, "search already in progress")
        return Transition(
            state=_enter(NegotiationState(), CallPhase.SEARCHING, media_ready=True),
            effects=(SendMessage(SearchRequestMessage()),),
        )

    if isinstance(event, SearchCancelled):
        if state.phase is not CallPhase.SEARCHING:
            return _ignore(state, "not searching")
        return _stop_search()

    if isinstance(event, Matched):
        if state.phase is CallPhase.IDLE:
            # Paired before our cancel reached the server: release the partner.
            return Transition(state=state, effects=(SendMessage(LeaveMessage()),))
        if state.phase is not CallPhase.SEARCHING:
            return _ignore(state, "match arrived while not searching")
        next_state = _enter(
            state,
            CallPhase.NEGOTIATING,
            partner_id=event.partner_id,
            is_initiator=event.should_initiate,
            call_started_at=event.at,
        )
        effects: tuple[Effect, ...] = (
            (StartOffer(event.partner_id),) if event.should_initiate else ()
        )
        return Transition(state=next_state, effects=effects)

    if isinstance(event, OfferReceived):
        return _on_offer(state, event)

    if isinstance(event, AnswerReceived):
        if not state.in_call:
            return _ignore(state, "answer arrived with no call in progress")
        if event.from_id is not None and event.from_id != state.partner_id:
            return _ignore(state, "answer from someone other than the partner")
        return Transition(state=state, effects=(ApplyAnswer(event.sdp),))

    if isinstance(event, RemoteDescriptionApplied):
        if not state.in_call:
            return _ignore(state, "remote description applied after the call ended")
        drained = tuple(ApplyCandidate(c) for c in state.pending_candidates)
        return Transition(
            state=replace(state, remote_description_applied=True, pending_candidates=()),
            effects=drained,
        )

    if isinstance(event, CandidateReceived):
        return _on_candidate(state, event)

    if isinstance(event, ConnectivityChanged):
        if not state.in_call:
            return _ignore(state, "connectivity change with no call in progress")
        if event.status is ConnectivityStatus.FAILED:
            return _reset(Teardown(notify_partner=True))
        if event.status is ConnectivityStatus.CONNECTED and state.phase is CallPhase.NEGOTIATING:
            return Transition(
                state=_enter(state, CallPhase.CONNECTED, connectivity=event.status)
            )
        return Transition(state=replace(state, connectivity=event.status))

    if isinstance(event, RemoteTrackAdded):
        if not state.in_call:
            return _ignore(state, "remote track with no call in progress")
        return Transition(state=replace(state, remote_track_summary=event.summary))

    if isinstance(event, MuteToggled):
        if not state.media_ready:
            return _ignore(state, "no local audio to mute")
        return Transition(
            state=replace(state, muted=event.muted),
            effects=(SetMicrophoneEnabled(not event.muted),),
        )

    if isinstance(event, NegotiationFailed):
        if state.phase is CallPhase.SEARCHING:
            return _stop_search()
        if not state.in_call:
            return _ignore(state, "negotiation failure with no call in progress")
        return _reset(Teardown(notify_partner=True))

    if isinstance(event, PartnerLeft):
        if not state.in_call:
            return _ignore(state, "departure notice while not in a call")
        if event.from_id is not None and event.from_id != state.partner_id:
            return _ignore(state, "departure of someone other than the partner")
        return _reset(Teardown(notify_partner=False))

    if isinstance(event, CallEnded):
        if state.phase is CallPhase.IDLE:
            return _ignore(state, "already idle")
        if state.phase is CallPhase.SEARCHING:
            return _stop_search()
        return _reset(Teardown(notify_partner=True))

    raise TypeError(f"Unknown event: {event!r}")


def _on_offer(state: NegotiationState, event: OfferReceived) -> Transition:
    if not state.media_ready:
        return _ignore(state, "offer rejected: no local audio track")
    if state.partner_id is not None and event.from_id != state.partner_id:
        return _ignore(state, "offer from someone other than the partner")

    # A fresh peer connection is built for every offer; queued candidates
    # stay queued until its remote description is applied.
    next_state = _enter(
        state,
        CallPhase.NEGOTIATING,
        partner_id=event.from_id,
        remote_description_applied=False,
        connectivity=ConnectivityStatus.NEW,
        remote_track_summary=NO_TRACKS,
        call_started_at=event.at,
    )
    return Transition(state=next_state, effects=(AcceptOffer(event.sdp, event.from_id),))


def _on_candidate(state: NegotiationState, event: CandidateReceived) -> Transition:
    if state.phase is CallPhase.IDLE:
        return _ignore(state, "candidate arrived with no call in progress")
    if (
        event.from_id is not None
        and state.partner_id is not None
        and event.from_id != state.partner_id
    ):
        return _ignore(state, "candidate from someone other than the partner")

    if state.remote_description_applied:
        return Transition(state=state, effects=(ApplyCandidate(event.candidate),))

    return Transition(
        state=replace(state, pending_candidates=state.pending_candidates + (event.candidate,))
    )
