"""Peer connection abstraction.

The engine talks to a ``PeerConnection`` and never to aiortc directly, so
negotiation can be exercised against fakes. ``AiortcPeerConnection`` is the
production implementation.

aiortc gathers ICE candidates while ``set_local_description`` runs and embeds
them in the local SDP, so there is no trickle of local candidates. Remote
candidates (browsers do trickle) are still applied one by one.
"""

import logging
from abc import ABC, abstractmethod
from dataclasses import dataclass
from typing import Any, Callable

from aiortc import (
    MediaStreamTrack,
    RTCConfiguration,
    RTCIceServer,
    RTCPeerConnection,
    RTCSessionDescription,
)
from aiortc.sdp import candidate_from_sdp

from caller.config import IceServerConfig
from matchmaker.protocol import IceCandidatePayload

logger = logging.getLogger(__name__)

CANDIDATE_PREFIX = "candidate:"


@dataclass(frozen=True)
class SessionDescription:
    """SDP blob plus its role (``offer`` or ``answer``)."""

    sdp: str
    type: str


@dataclass(frozen=True)
class TransportStats:
    """Read-only transport statistics for the active call."""

    bytes_sent: int = 0
    bytes_received: int = 0
    packets_sent: int = 0
    packets_received: int = 0
    packets_lost: int = 0
    round_trip_time: float | None = None


class PeerListener(ABC):
    """Receives asynchronous notifications from a peer connection."""

    @abstractmethod
    async def on_connectivity_change(self, state: str) -> None:
        """Called with the new ICE connection state name."""

    @abstractmethod
    async def on_remote_track(self, track: MediaStreamTrack) -> None:
        """Called when a remote media track starts arriving."""


class PeerConnection(ABC):
    """One WebRTC peer connection, owned by a single call attempt."""

    @abstractmethod
    def add_track(self, track: MediaStreamTrack) -> None:
        """Attach a local track to be sent to the remote side."""

    @abstractmethod
    async def create_offer(self) -> SessionDescription:
        """Create an SDP offer."""

    @abstractmethod
    async def create_answer(self) -> SessionDescription:
        """Create an SDP answer to the applied remote offer."""

    @abstractmethod
    async def set_local_description(self, description: SessionDescription) -> None:
        """Apply a local description."""

    @abstractmethod
    async def set_remote_description(self, description: SessionDescription) -> None:
        """Apply a remote description.

        Raises:
            Exception: If the description is malformed or out of sequence
        """

    @abstractmethod
    async def add_ice_candidate(self, candidate: IceCandidatePayload) -> None:
        """Add a remote ICE candidate."""

    @abstractmethod
    async def get_stats(self) -> TransportStats:
        """Collect transport statistics."""

    @abstractmethod
    async def close(self) -> None:
        """Close the connection and stop its transceivers."""

    @property
    @abstractmethod
    def local_description(self) -> SessionDescription | None:
        """Applied local description (with gathered candidates)."""

    @property
    @abstractmethod
    def ice_connection_state(self) -> str:
        """Current ICE connection state name."""


PeerFactory = Callable[[PeerListener], PeerConnection]


def parse_candidate(payload: IceCandidatePayload) -> Any:
    """Convert a wire candidate into an aiortc ``RTCIceCandidate``.

    Accepts the attribute with or without the ``candidate:`` prefix.
    """
    sdp = payload.candidate
    if sdp.startswith(CANDIDATE_PREFIX):
        sdp = sdp[len(CANDIDATE_PREFIX):]
    candidate = candidate_from_sdp(sdp)
    candidate.sdpMid = payload.sdp_mid
    candidate.sdpMLineIndex = payload.sdp_mline_index
    return candidate


class AiortcPeerConnection(PeerConnection):
    """``PeerConnection`` backed by aiortc."""

    def __init__(self, listener: PeerListener, ice_servers: list[IceServerConfig]) -> None:
        """Initialize peer connection.

        Args:
            listener: Receives connectivity and remote track notifications
            ice_servers: STUN/TURN servers
        """
        configuration = RTCConfiguration(
            iceServers=[
                RTCIceServer(urls=s.urls, username=s.username, credential=s.credential)
                for s in ice_servers
            ]
        )
        self._pc = RTCPeerConnection(configuration)
        self._listener = listener

        @self._pc.on("iceconnectionstatechange")
        async def on_ice_state() -> None:
            state = self._pc.iceConnectionState
            logger.debug("ICE connection state changed", extra={"state": state})
            await self._listener.on_connectivity_change(state)

        @self._pc.on("track")
        async def on_track(track: MediaStreamTrack) -> None:
            logger.info("Remote track received", extra={"kind": track.kind})
            await self._listener.on_remote_track(track)

    def add_track(self, track: MediaStreamTrack) -> None:
        self._pc.addTrack(track)

    async def create_offer(self) -> SessionDescription:
        offer = await self._pc.createOffer()
        return SessionDescription(sdp=offer.sdp, type=offer.type)

    async def create_answer(self) -> SessionDescription:
        answer = await self._pc.createAnswer()
        return SessionDescription(sdp=answer.sdp, type=answer.type)

    async def set_local_description(self, description: SessionDescription) -> None:
        await self._pc.setLocalDescription(
            RTCSessionDescription(sdp=description.sdp, type=description.type)
        )

    async def set_remote_description(self, description: SessionDescription) -> None:
        await self._pc.setRemoteDescription(
            RTCSessionDescription(sdp=description.sdp, type=description.type)
        )

    async def add_ice_candidate(self, candidate: IceCandidatePayload) -> None:
        await self._pc.addIceCandidate(parse_candidate(candidate))

    async def get_stats(self) -> TransportStats:
        report = await self._pc.getStats()

        bytes_sent = bytes_received = packets_sent = packets_received = packets_lost = 0
        round_trip_time: float | None = None
        for stat in report.values():
            if stat.type == "outbound-rtp":
                bytes_sent += getattr(stat, "bytesSent", 0) or 0
                packets_sent += getattr(stat, "packetsSent", 0) or 0
            elif stat.type == "inbound-rtp":
                bytes_received += getattr(stat, "bytesReceived", 0) or 0
                packets_received += getattr(stat, "packetsReceived", 0) or 0
                packets_lost += getattr(stat, "packetsLost", 0) or 0
            elif stat.type == "remote-inbound-rtp":
                rtt = getattr(stat, "roundTripTime", None)
                if rtt is not None:
                    round_trip_time = rtt

        return TransportStats(
            bytes_sent=bytes_sent,
            bytes_received=bytes_received,
            packets_sent=packets_sent,
            packets_received=packets_received,
            packets_lost=packets_lost,
            round_trip_time=round_trip_time,
        )

    async def close(self) -> None:
        await self._pc.close()

    @property
    def local_description(self) -> SessionDescription | None:
        description = self._pc.localDescription
        if description is None:
            return None
        return SessionDescription(sdp=description.sdp, type=description.type)

    @property
    def ice_connection_state(self) -> str:
        return str(self._pc.iceConnectionState)


def aiortc_peer_factory(ice_servers: list[IceServerConfig]) -> PeerFactory:
    """Build a factory creating aiortc peer connections with fixed ICE servers."""

    def factory(listener: PeerListener) -> PeerConnection:
        return AiortcPeerConnection(listener, ice_servers)

    return factory
