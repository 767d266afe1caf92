"""Signaling relay.

Forwards offer/answer/ICE messages to a recipient named by connection id and
broadcasts departures. Delivery is fire-and-forget: a message for a
recipient that is gone is dropped without telling the sender, and nothing is
retried or buffered. The client-side candidate queue covers the one ordering
gap that matters (candidates racing ahead of a description).
"""

import asyncio
import logging

from matchmaker.metrics import MetricsCollector
from matchmaker.protocol import (
    IceCandidatePayload,
    PeerLeftMessage,
    RelayedAnswerMessage,
    RelayedIceCandidateMessage,
    RelayedOfferMessage,
    RelayKind,
    ServerMessage,
)
from matchmaker.transport.base import PeerChannel

logger = logging.getLogger(__name__)


class SignalingRelay:
    """Registry of live channels plus directed and broadcast delivery."""

    def __init__(self, metrics: MetricsCollector | None = None) -> None:
        """Initialize relay.

        Args:
            metrics: Optional metrics collector for delivery counters
        """
        self._channels: dict[str, PeerChannel] = {}
        self._metrics = metrics

    @property
    def connection_count(self) -> int:
        """Number of registered channels."""
        return len(self._channels)

    def is_registered(self, connection_id: str) -> bool:
        """Check whether a connection id is currently addressable."""
        return connection_id in self._channels

    def register(self, channel: PeerChannel) -> None:
        """Make a channel addressable by its connection id.

        Raises:
            ValueError: If the id is already registered
        """
        if channel.connection_id in self._channels:
            raise ValueError(f"Connection id already registered: {channel.connection_id}")
        self._channels[channel.connection_id] = channel

    def unregister(self, connection_id: str) -> None:
        """Forget a channel. Unknown ids are ignored."""
        self._channels.pop(connection_id, None)

    async def send_to(self, connection_id: str, message: ServerMessage) -> bool:
        """Deliver a message to one connection.

        Returns:
            True if the message was handed to a live channel, False if it was
            dropped because the recipient is gone
        """
        channel = self._channels.get(connection_id)
        if channel is None or not channel.is_connected:
            logger.debug(
                "Recipient not connected, dropping message",
                extra={"to": connection_id, "type": message.type},
            )
            return False

        try:
            await channel.send(message)
        except ConnectionError as e:
            logger.debug(
                "Delivery failed, dropping message",
                extra={"to": connection_id, "type": message.type, "error": str(e)},
            )
            return False
        return True

    async def relay(
        self,
        kind: RelayKind,
        payload: str | IceCandidatePayload,
        from_id: str,
        to_id: str,
    ) -> bool:
        """Forward a negotiation message tagged with its sender.

        Args:
            kind: ``offer``, ``answer`` or ``ice-candidate``
            payload: SDP string, or candidate for ``ice-candidate``
            from_id: Sender connection id
            to_id: Recipient connection id

        Returns:
            Whether the message reached a live channel. Only used for
            metrics; the sender is never informed.
        """
        message: ServerMessage
        if kind == "offer":
            message = RelayedOfferMessage(sdp=str(payload), from_id=from_id)
        elif kind == "answer":
            message = RelayedAnswerMessage(sdp=str(payload), from_id=from_id)
        elif kind == "ice-candidate":
            if not isinstance(payload, IceCandidatePayload):
                raise TypeError("ice-candidate payload must be an IceCandidatePayload")
            message = RelayedIceCandidateMessage(candidate=payload, from_id=from_id)
        else:
            raise ValueError(f"Unsupported relay kind: {kind}")

        delivered = await self.send_to(to_id, message)

        logger.debug(
            "Relayed message",
            extra={"kind": kind, "from": from_id, "to": to_id, "delivered": delivered},
        )
        if self._metrics is not None:
            self._metrics.record_relay(kind, delivered)
        return delivered

    async def announce_leave(self, from_id: str) -> int:
        """Broadcast ``peer-left`` to every connection except the sender.

        There is no pairing registry, so the notice goes to everyone and each
        client checks whether the departing id was its own partner.

        Returns:
            Number of connections the notice was delivered to
        """
        message = PeerLeftMessage(from_id=from_id)
        recipients = [cid for cid in self._channels if cid != from_id]
        results = await asyncio.gather(*(self.send_to(cid, message) for cid in recipients))
        delivered = sum(1 for ok in results if ok)

        logger.info(
            "Announced departure",
            extra={"from": from_id, "recipients": len(recipients), "delivered": delivered},
        )
        return delivered
