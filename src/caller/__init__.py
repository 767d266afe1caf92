"""Client side of strangercall: negotiation engine, media and CLI.

The negotiation engine turns relayed signaling messages into a live
peer-to-peer audio connection. Its decisions are made by a pure reducer in
``caller.machine``; ``caller.engine`` carries them out against the peer
connection, microphone and signaling collaborators.
"""

__version__ = "0.1.0"
