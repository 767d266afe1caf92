"""Base channel abstraction for client connections.

Defines the interface the relay and signaling service use to talk to one
connected client, independent of the underlying transport.
"""

from abc import ABC, abstractmethod

from matchmaker.protocol import ServerMessage


class PeerChannel(ABC):
    """One live client connection, addressed by an opaque connection id."""

    @property
    @abstractmethod
    def connection_id(self) -> str:
        """Server-assigned identity of this connection (never reused)."""
        pass

    @property
    @abstractmethod
    def is_connected(self) -> bool:
        """Check if the connection is still open."""
        pass

    @abstractmethod
    async def send(self, message: ServerMessage) -> None:
        """Deliver a message to the client.

        Messages sent through one channel arrive in the order they were sent.

        Args:
            message: Server → client message

        Raises:
            ConnectionError: If the connection is closed or broken
        """
        pass

    @abstractmethod
    async def close(self) -> None:
        """Close the connection. Calling it more than once is harmless."""
        pass
