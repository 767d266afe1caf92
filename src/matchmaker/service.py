"""Transport-agnostic signaling service.

Routes each inbound client message to the pairing pool or the relay. Every
message is handled to completion on the event loop before the next one for
the same connection is read, so the pool's read-modify-write never
interleaves with another message's pool mutation.
"""

import logging

from matchmaker.metrics import MetricsCollector
from matchmaker.pool import Pairing, PairingPool
from matchmaker.protocol import (
    AnswerMessage,
    CancelSearchMessage,
    ClientMessage,
    HelloMessage,
    IceCandidateMessage,
    IceCandidatePayload,
    LeaveMessage,
    MatchedMessage,
    OfferMessage,
    RelayKind,
    SearchingAckMessage,
    SearchRequestMessage,
)
from matchmaker.relay import SignalingRelay
from matchmaker.transport.base import PeerChannel

logger = logging.getLogger(__name__)


class SignalingService:
    """Glue between connections, the pairing pool and the relay."""

    def __init__(
        self,
        pool: PairingPool,
        relay: SignalingRelay,
        metrics: MetricsCollector | None = None,
    ) -> None:
        """Initialize signaling service.

        Args:
            pool: Pairing pool (one per server process)
            relay: Signaling relay holding the live channels
            metrics: Optional metrics collector
        """
        self.pool = pool
        self.relay = relay
        self.metrics = metrics

    async def connect(self, channel: PeerChannel) -> None:
        """Register a new connection and tell the client its identity."""
        self.relay.register(channel)
        if self.metrics is not None:
            self.metrics.record_connection_open()

        logger.info("Client connected", extra={"connection_id": channel.connection_id})
        await self.relay.send_to(
            channel.connection_id, HelloMessage(connection_id=channel.connection_id)
        )

    async def disconnect(self, connection_id: str) -> None:
        """Forget a connection: free its slot, unregister, tell the others."""
        if not self.relay.is_registered(connection_id):
            return

        if self.pool.on_disconnect(connection_id) and self.metrics is not None:
            self.metrics.record_slot_cleared()
        self.relay.unregister(connection_id)
        if self.metrics is not None:
            self.metrics.record_connection_closed()

        logger.info("Client disconnected", extra={"connection_id": connection_id})
        await self._announce_leave(connection_id)

    async def handle(self, connection_id: str, message: ClientMessage) -> None:
        """Handle one decoded client message.

        Args:
            connection_id: Sender connection id
            message: Decoded client → server message
        """
        if isinstance(message, SearchRequestMessage):
            await self._handle_search(connection_id)

        elif isinstance(message, CancelSearchMessage):
            if self.pool.cancel_search(connection_id) and self.metrics is not None:
                self.metrics.record_slot_cleared()

        elif isinstance(message, OfferMessage):
            await self._relay_checked(connection_id, message.to, "offer", message.sdp)

        elif isinstance(message, AnswerMessage):
            await self._relay_checked(connection_id, message.to, "answer", message.sdp)

        elif isinstance(message, IceCandidateMessage):
            await self._relay_checked(
                connection_id, message.to, "ice-candidate", message.candidate
            )

        elif isinstance(message, LeaveMessage):
            logger.info("Client left call", extra={"connection_id": connection_id})
            await self._announce_leave(connection_id)

        else:
            logger.warning(
                "Unhandled message type",
                extra={"connection_id": connection_id, "type": type(message).__name__},
            )

    async def _handle_search(self, connection_id: str) -> None:
        outcome = self.pool.request_pair(connection_id)
        matched = isinstance(outcome, Pairing)
        if self.metrics is not None:
            self.metrics.record_search(waiting=not matched)

        if isinstance(outcome, Pairing):
            if self.metrics is not None:
                self.metrics.record_match(outcome.waited_s)
            for side in (outcome.peer_a, outcome.peer_b):
                assignment = outcome.assignment_for(side)
                await self.relay.send_to(
                    side,
                    MatchedMessage(
                        partner_id=assignment.partner_id,
                        should_initiate=assignment.should_initiate,
                    ),
                )
        else:
            await self.relay.send_to(connection_id, SearchingAckMessage())

    async def _relay_checked(
        self,
        from_id: str,
        to_id: str,
        kind: RelayKind,
        payload: str | IceCandidatePayload,
    ) -> None:
        if to_id == from_id:
            logger.warning(
                "Ignoring message addressed to its own sender",
                extra={"connection_id": from_id, "kind": kind},
            )
            return
        await self.relay.relay(kind, payload, from_id=from_id, to_id=to_id)

    async def _announce_leave(self, connection_id: str) -> None:
        await self.relay.announce_leave(connection_id)
        if self.metrics is not None:
            self.metrics.record_leave()
