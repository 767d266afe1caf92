"""Client error taxonomy.

Relay misses are deliberately absent: the relay drops messages for a
departed recipient silently, and the sender only notices the missing reply.
"""


class CallError(Exception):
    """Base class for call negotiation errors."""


class MicrophonePermissionError(CallError, PermissionError):
    """Microphone access was denied or no capture device is available.

    Fatal to starting a search; the engine stays idle.
    """


class NoPartnerContextError(CallError):
    """A message or request referenced a partner or call that no longer exists.

    Ignored and logged by the engine; only raised from explicit
    diagnostics requests such as transport statistics.
    """


class NegotiationApplyError(CallError):
    """A description or candidate could not be applied.

    The current call is aborted and the engine returns to idle. Nothing is
    retried automatically.
    """
