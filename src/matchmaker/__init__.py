"""Matchmaker signaling server for anonymous one-to-one audio calls.

This package provides the pairing pool, the signaling relay, the WebSocket
transport, and the health/metrics surface of the signaling server. Media
never passes through it; clients negotiate a direct WebRTC connection.
"""

__version__ = "0.1.0"
