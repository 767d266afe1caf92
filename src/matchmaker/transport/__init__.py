"""Transport layer for signaling client connections."""

from matchmaker.transport.base import PeerChannel

__all__ = ["PeerChannel"]
