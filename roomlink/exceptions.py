"""Exceptions raised by roomlink.

Negotiation errors are raised at the transport and signaling seams and
handled by the orchestrator, which logs them and keeps serving other peers.
"""


class RoomlinkError(Exception):
    """Base class for all roomlink errors."""


class TransportFailure(RoomlinkError):
    """Offer/answer construction or description application failed."""

    def __init__(self, message: str, peer_id: str = None):
        super().__init__(message)
        self.peer_id = peer_id


class InvalidState(TransportFailure):
    """A description was applied while the connection was in the wrong state."""


class InvalidCandidate(TransportFailure):
    """A remote transport candidate could not be parsed or applied."""


class StaleSignal(RoomlinkError):
    """A signal arrived for a peer or state that does not expect it."""


class DeviceUnavailable(RoomlinkError):
    """Local media devices could not be opened."""


class ChannelFailure(RoomlinkError):
    """The signaling channel could not send or broadcast a message."""
