"""Single-slot pairing pool.

At most one participant waits at any time. The next distinct searcher is
paired with the waiter and one of the two is picked uniformly at random to
create the WebRTC offer. There is no preference, filtering, or fairness
logic: the first two distinct searchers present are matched.

The server keeps no pairing table. Each client remembers its partner id,
so server memory stays O(1) in the number of participants.

Thread-safety: all slot mutations happen under a lock, so the single-slot
invariant holds even if the pool is shared between threads.
"""

import logging
import random
import threading
import time
from collections.abc import Callable
from dataclasses import dataclass

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class MatchAssignment:
    """What one side of a pairing is told."""

    partner_id: str
    should_initiate: bool


@dataclass(frozen=True)
class Searching:
    """Outcome: the requester now occupies the waiting slot."""

    connection_id: str


@dataclass(frozen=True)
class Pairing:
    """Outcome: two participants were matched.

    Attributes:
        peer_a: Participant that was waiting in the slot
        peer_b: Participant whose request completed the pairing
        initiator: Which of the two must create the offer
        waited_s: How long ``peer_a`` spent in the slot
    """

    peer_a: str
    peer_b: str
    initiator: str
    waited_s: float = 0.0

    def assignment_for(self, connection_id: str) -> MatchAssignment:
        """Build the ``matched`` payload for one side of the pairing.

        Raises:
            ValueError: If ``connection_id`` is not part of this pairing
        """
        if connection_id == self.peer_a:
            partner = self.peer_b
        elif connection_id == self.peer_b:
            partner = self.peer_a
        else:
            raise ValueError(f"{connection_id} is not part of this pairing")
        return MatchAssignment(
            partner_id=partner, should_initiate=self.initiator == connection_id
        )


PairingOutcome = Searching | Pairing


class PairingPool:
    """Pairs anonymous searchers one-to-one through a single waiting slot.

    Construct one per server process and inject it where needed.
    """

    def __init__(
        self,
        rng: random.Random | None = None,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        """Initialize pairing pool.

        Args:
            rng: Random source for initiator selection (seedable in tests)
            clock: Monotonic clock used to measure time spent waiting
        """
        self._rng = rng or random.Random()
        self._clock = clock
        self._lock = threading.Lock()
        self._waiting: tuple[str, float] | None = None

    @property
    def waiting_id(self) -> str | None:
        """Connection id currently occupying the waiting slot, if any."""
        with self._lock:
            return self._waiting[0] if self._waiting else None

    def request_pair(self, connection_id: str) -> PairingOutcome:
        """Place the requester in the slot or pair it with the current waiter.

        A repeated request from the participant already waiting leaves the
        slot untouched and reports ``Searching`` again.

        Args:
            connection_id: Identity of the searching participant

        Returns:
            ``Searching`` or ``Pairing``
        """
        with self._lock:
            waiting = self._waiting
            if waiting is None or waiting[0] == connection_id:
                if waiting is None:
                    self._waiting = (connection_id, self._clock())
                outcome: PairingOutcome = Searching(connection_id)
            else:
                waiter_id, enqueued_at = waiting
                self._waiting = None
                initiator = self._rng.choice((waiter_id, connection_id))
                outcome = Pairing(
                    peer_a=waiter_id,
                    peer_b=connection_id,
                    initiator=initiator,
                    waited_s=max(0.0, self._clock() - enqueued_at),
                )

        if isinstance(outcome, Pairing):
            logger.info(
                "Participants matched",
                extra={
                    "peer_a": outcome.peer_a,
                    "peer_b": outcome.peer_b,
                    "initiator": outcome.initiator,
                },
            )
        else:
            logger.info("Waiting for partner", extra={"connection_id": connection_id})
        return outcome

    def cancel_search(self, connection_id: str) -> bool:
        """Clear the slot only if it currently holds ``connection_id``.

        A late cancel from a participant that was already matched must not
        evict whoever has taken the slot since.

        Returns:
            True if the slot was cleared
        """
        with self._lock:
            if self._waiting is not None and self._waiting[0] == connection_id:
                self._waiting = None
                cleared = True
            else:
                cleared = False

        logger.debug(
            "Search cancel processed",
            extra={"connection_id": connection_id, "cleared": cleared},
        )
        return cleared

    def on_disconnect(self, connection_id: str) -> bool:
        """Same conditional clear as ``cancel_search``, for transport disconnects."""
        return self.cancel_search(connection_id)
