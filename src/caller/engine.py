"""Negotiation engine.

Runs the effects produced by ``caller.machine.reduce`` against the real
collaborators: signaling channel, microphone, peer connection factory and
speaker. One engine per client.

Each call attempt gets its own peer bundle. Asynchronous continuations
(description applied, answer created, ICE state changed) re-check that
their bundle is still the current one before touching state, so late
callbacks from a torn-down attempt are dropped instead of corrupting the
next call.
"""

import asyncio
import logging
import time
from collections import deque
from collections.abc import Callable
from dataclasses import dataclass, field

from aiortc import MediaStreamTrack

from caller.config import VoiceProfile
from caller.errors import MicrophonePermissionError, NegotiationApplyError, NoPartnerContextError
from caller.machine import (
    AcceptOffer,
    AnswerReceived,
    ApplyAnswer,
    ApplyCandidate,
    CallEnded,
    CallPhase,
    CandidateReceived,
    ConnectivityChanged,
    ConnectivityStatus,
    Effect,
    Event,
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
from caller.media import AudioSink, LocalMedia, MicrophoneSource
from caller.peer import PeerConnection, PeerFactory, PeerListener, SessionDescription, TransportStats
from caller.signaling import SignalingSender
from matchmaker.protocol import (
    AnswerMessage,
    ClientMessage,
    IceCandidatePayload,
    LeaveMessage,
    OfferMessage,
)

logger = logging.getLogger(__name__)


@dataclass
class PeerBundle:
    """Peer connection plus the partner it was built for.

    Remote candidates pass through ``candidate_backlog`` and are applied by
    one task at a time, so they reach the peer connection in arrival order
    even when ``add_ice_candidate`` suspends.
    """

    pc: PeerConnection
    partner_id: str
    generation: int
    remote_kinds: list[str] = field(default_factory=list)
    candidate_backlog: deque[IceCandidatePayload] = field(default_factory=deque)
    applying_candidates: bool = False

    def track_summary(self) -> str:
        audio = self.remote_kinds.count("audio")
        return f"{audio} audio track(s)"


class _BundleListener(PeerListener):
    """Forwards peer events to the engine while its bundle is current."""

    def __init__(self, engine: "NegotiationEngine", generation: int) -> None:
        self._engine = engine
        self._generation = generation

    async def on_connectivity_change(self, state: str) -> None:
        bundle = self._engine._current_bundle(self._generation)
        if bundle is None:
            logger.debug("Dropping ICE state change from superseded peer connection")
            return
        try:
            status = ConnectivityStatus.from_ice_state(state)
        except ValueError:
            logger.warning("Unknown ICE connection state", extra={"state": state})
            return
        if status is ConnectivityStatus.FAILED:
            logger.warning("ICE connection failed", extra={"partner_id": bundle.partner_id})
        await self._engine._dispatch(ConnectivityChanged(status))

    async def on_remote_track(self, track: MediaStreamTrack) -> None:
        bundle = self._engine._current_bundle(self._generation)
        if bundle is None:
            logger.debug("Dropping remote track from superseded peer connection")
            return
        bundle.remote_kinds.append(track.kind)
        if track.kind == "audio" and self._engine.speaker is not None:
            await self._engine.speaker.attach(track)
        await self._engine._dispatch(RemoteTrackAdded(bundle.track_summary()))


class NegotiationEngine:
    """Drives one client's call lifecycle.

    Thread-safety: This class is NOT thread-safe. Use from a single event loop.
    """

    def __init__(
        self,
        signaling: SignalingSender,
        microphone: MicrophoneSource,
        peer_factory: PeerFactory,
        speaker: AudioSink | None = None,
        voice_profile: VoiceProfile | None = None,
        track_ready_timeout_s: float = 5.0,
        track_poll_interval_s: float = 0.05,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        """Initialize negotiation engine.

        Args:
            signaling: Channel to the matchmaker
            microphone: Local audio source
            peer_factory: Creates a peer connection bound to a listener
            speaker: Plays the partner's audio (None = no playback)
            voice_profile: Microphone capture settings
            track_ready_timeout_s: How long the initiator waits for local audio
            track_poll_interval_s: Local audio readiness polling interval
            clock: Monotonic time source
        """
        self.signaling = signaling
        self.microphone = microphone
        self.peer_factory = peer_factory
        self.speaker = speaker
        self.voice_profile = voice_profile or VoiceProfile()
        self.track_ready_timeout_s = track_ready_timeout_s
        self.track_poll_interval_s = track_poll_interval_s
        self._clock = clock

        self._state = NegotiationState()
        self._media: LocalMedia | None = None
        self._bundle: PeerBundle | None = None
        self._generation = 0

    # ------------------------------------------------------------------
    # Diagnostics
    # ------------------------------------------------------------------

    @property
    def state(self) -> NegotiationState:
        return self._state

    @property
    def phase(self) -> CallPhase:
        return self._state.phase

    @property
    def connectivity(self) -> ConnectivityStatus:
        return self._state.connectivity

    @property
    def remote_track_summary(self) -> str:
        return self._state.remote_track_summary

    @property
    def partner_id(self) -> str | None:
        return self._state.partner_id

    def call_duration(self) -> float:
        """Seconds since the call started, 0.0 when no call is in progress."""
        if not self._state.in_call or self._state.call_started_at is None:
            return 0.0
        return max(0.0, self._clock() - self._state.call_started_at)

    async def get_transport_stats(self) -> TransportStats:
        """Read transport statistics of the active peer connection.

        Raises:
            NoPartnerContextError: If no peer connection exists
        """
        if self._bundle is None:
            raise NoPartnerContextError("No active peer connection")
        return await self._bundle.pc.get_stats()

    # ------------------------------------------------------------------
    # User actions
    # ------------------------------------------------------------------

    async def begin_search(self) -> None:
        """Acquire the microphone and ask the server for a partner.

        Raises:
            MicrophonePermissionError: If the microphone cannot be opened
        """
        if self._state.phase is not CallPhase.IDLE:
            logger.info("Search already in progress", extra={"phase": self._state.phase.value})
            return

        try:
            media = await self.microphone.acquire(self.voice_profile)
        except MicrophonePermissionError:
            logger.error("Microphone access denied; staying idle")
            raise

        if self._state.phase is not CallPhase.IDLE or self._media is not None:
            # Another search won the race while the microphone was opening.
            media.stop()
            return

        self._media = media
        await self._dispatch(SearchStarted())

    async def cancel_search(self) -> None:
        await self._dispatch(SearchCancelled())

    async def set_muted(self, muted: bool) -> None:
        await self._dispatch(MuteToggled(muted))

    async def end_call(self) -> None:
        """Hang up (or stop searching). Calling it while idle does nothing."""
        await self._dispatch(CallEnded())

    # ------------------------------------------------------------------
    # Server messages
    # ------------------------------------------------------------------

    async def on_matched(self, partner_id: str, should_initiate: bool) -> None:
        await self._dispatch(Matched(partner_id, should_initiate, at=self._clock()))

    async def on_offer(self, sdp: str, from_id: str) -> None:
        await self._dispatch(OfferReceived(sdp, from_id, at=self._clock()))

    async def on_answer(self, sdp: str, from_id: str | None = None) -> None:
        await self._dispatch(AnswerReceived(sdp, from_id))

    async def on_remote_candidate(
        self, candidate: IceCandidatePayload, from_id: str | None = None
    ) -> None:
        await self._dispatch(CandidateReceived(candidate, from_id))

    async def on_partner_left(self, from_id: str | None = None) -> None:
        await self._dispatch(PartnerLeft(from_id))

    # ------------------------------------------------------------------
    # Reducer plumbing
    # ------------------------------------------------------------------

    async def _dispatch(self, event: Event) -> None:
        transition = reduce(self._state, event)
        if transition.ignored is not None:
            logger.debug(
                "Event ignored",
                extra={"event": type(event).__name__, "reason": transition.ignored},
            )
            return

        previous = self._state.phase
        self._state = transition.state
        if previous is not self._state.phase:
            logger.info(
                "Call phase changed",
                extra={
                    "from_phase": previous.value,
                    "to_phase": self._state.phase.value,
                    "partner_id": self._state.partner_id,
                },
            )

        # Candidates join the bundle backlog before any await: arrival order holds.
        candidates = [e.candidate for e in transition.effects if isinstance(e, ApplyCandidate)]
        if candidates:
            self._enqueue_candidates(candidates)

        for effect in transition.effects:
            await self._run(effect)

    async def _run(self, effect: Effect) -> None:
        if isinstance(effect, SendMessage):
            await self._send(effect.message)
        elif isinstance(effect, StartOffer):
            await self._start_offer(effect.partner_id)
        elif isinstance(effect, AcceptOffer):
            await self._accept_offer(effect.sdp, effect.partner_id)
        elif isinstance(effect, ApplyAnswer):
            await self._apply_answer(effect.sdp)
        elif isinstance(effect, ApplyCandidate):
            await self._apply_candidates()
        elif isinstance(effect, SetMicrophoneEnabled):
            if self._media is not None:
                self._media.set_enabled(effect.enabled)
                logger.info("Microphone %s", "enabled" if effect.enabled else "muted")
        elif isinstance(effect, Teardown):
            await self._teardown(effect.notify_partner)
        else:
            raise TypeError(f"Unknown effect: {effect!r}")

    async def _send(self, message: ClientMessage) -> None:
        try:
            await self.signaling.send(message)
        except ConnectionError as e:
            logger.warning(
                "Could not send signaling message",
                extra={"type": message.type, "error": str(e)},
            )

    # ------------------------------------------------------------------
    # Peer bundles
    # ------------------------------------------------------------------

    def _current_bundle(self, generation: int) -> PeerBundle | None:
        if self._bundle is not None and self._bundle.generation == generation:
            return self._bundle
        return None

    def _is_current(self, bundle: PeerBundle) -> bool:
        return self._bundle is bundle

    def _open_bundle(self, partner_id: str) -> PeerBundle:
        self._generation += 1
        pc = self.peer_factory(_BundleListener(self, self._generation))
        if self._media is not None:
            for track in self._media.tracks:
                pc.add_track(track)
        self._bundle = PeerBundle(pc=pc, partner_id=partner_id, generation=self._generation)
        logger.debug(
            "Peer connection created",
            extra={"partner_id": partner_id, "generation": self._generation},
        )
        return self._bundle

    async def _close_bundle(self) -> None:
        bundle, self._bundle = self._bundle, None
        if bundle is None:
            return
        try:
            await bundle.pc.close()
        except Exception as e:
            logger.warning(
                "Error closing peer connection",
                extra={"partner_id": bundle.partner_id, "error": str(e)},
                exc_info=True,
            )

    async def _fail(self, bundle: PeerBundle, action: str, error: Exception) -> None:
        if not self._is_current(bundle):
            logger.debug("Ignoring failure from superseded peer connection", extra={"action": action})
            return
        failure = NegotiationApplyError(f"Failed to {action}: {error}")
        logger.error(
            str(failure),
            extra={"partner_id": bundle.partner_id},
            exc_info=error,
        )
        await self._dispatch(NegotiationFailed(str(failure)))

    async def _wait_for_local_track(self) -> bool:
        deadline = self._clock() + self.track_ready_timeout_s
        while not (self._media is not None and self._media.ready):
            if self._media is None or self._clock() >= deadline:
                return False
            await asyncio.sleep(self.track_poll_interval_s)
        return True

    async def _start_offer(self, partner_id: str) -> None:
        if not await self._wait_for_local_track():
            if self._state.partner_id == partner_id and self._bundle is None:
                logger.error("Local audio track not ready", extra={"partner_id": partner_id})
                await self._dispatch(NegotiationFailed("local audio track not ready"))
            return

        if self._state.partner_id != partner_id or not self._state.in_call or self._bundle is not None:
            logger.debug("Offer superseded before it was created", extra={"partner_id": partner_id})
            return

        bundle = self._open_bundle(partner_id)
        try:
            offer = await bundle.pc.create_offer()
            if not self._is_current(bundle):
                return
            await bundle.pc.set_local_description(offer)
        except Exception as e:
            await self._fail(bundle, "create offer", e)
            return
        if not self._is_current(bundle):
            return

        local = bundle.pc.local_description or offer
        await self._send(OfferMessage(sdp=local.sdp, to=partner_id))
        logger.info("Offer sent", extra={"partner_id": partner_id})

    async def _accept_offer(self, sdp: str, partner_id: str) -> None:
        await self._close_bundle()
        bundle = self._open_bundle(partner_id)

        try:
            await bundle.pc.set_remote_description(SessionDescription(sdp=sdp, type="offer"))
        except Exception as e:
            await self._fail(bundle, "apply remote offer", e)
            return
        if not self._is_current(bundle):
            return

        await self._dispatch(RemoteDescriptionApplied())
        if not self._is_current(bundle):
            return

        try:
            answer = await bundle.pc.create_answer()
            if not self._is_current(bundle):
                return
            await bundle.pc.set_local_description(answer)
        except Exception as e:
            await self._fail(bundle, "create answer", e)
            return
        if not self._is_current(bundle):
            return

        local = bundle.pc.local_description or answer
        await self._send(AnswerMessage(sdp=local.sdp, to=partner_id))
        logger.info("Answer sent", extra={"partner_id": partner_id})

    async def _apply_answer(self, sdp: str) -> None:
        bundle = self._bundle
        if bundle is None:
            logger.warning("Answer arrived with no peer connection; dropping")
            return
        try:
            await bundle.pc.set_remote_description(SessionDescription(sdp=sdp, type="answer"))
        except Exception as e:
            await self._fail(bundle, "apply remote answer", e)
            return
        if self._is_current(bundle):
            await self._dispatch(RemoteDescriptionApplied())

    def _enqueue_candidates(self, candidates: list[IceCandidatePayload]) -> None:
        if self._bundle is None:
            logger.debug(
                "Candidates arrived with no peer connection; dropping",
                extra={"count": len(candidates)},
            )
            return
        self._bundle.candidate_backlog.extend(candidates)

    async def _apply_candidates(self) -> None:
        """Apply backlogged candidates in order; no-op if another task is already doing it."""
        bundle = self._bundle
        if bundle is None or bundle.applying_candidates:
            return
        bundle.applying_candidates = True
        try:
            while bundle.candidate_backlog and self._is_current(bundle):
                candidate = bundle.candidate_backlog.popleft()
                try:
                    await bundle.pc.add_ice_candidate(candidate)
                except Exception as e:
                    await self._fail(bundle, "add ICE candidate", e)
                    return
        finally:
            bundle.applying_candidates = False

    async def _teardown(self, notify_partner: bool) -> None:
        await self._close_bundle()

        if self.speaker is not None:
            await self.speaker.detach()

        media, self._media = self._media, None
        if media is not None:
            media.stop()

        if notify_partner:
            await self._send(LeaveMessage())
        logger.info("Call torn down", extra={"notified_partner": notify_partner})
