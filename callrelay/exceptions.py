"""Exception types raised by the signaling server, clients, and negotiators."""
from __future__ import annotations


class SignalingError(Exception):
    """Base exception type for all callrelay errors."""

    pass


class EnvelopeError(SignalingError):
    """Base exception type for envelope encoding and decoding."""

    pass


class EnvelopeDecodeError(EnvelopeError):
    """Exception raised when an envelope cannot be decoded."""

    pass


class UnknownChannelError(EnvelopeDecodeError):
    """Exception raised when an envelope has an unrecognized channel tag."""

    pass


class EnvelopeEncodeError(EnvelopeError):
    """Exception raised when an envelope cannot be encoded."""

    pass


class SignalingClientError(SignalingError):
    """Base exception type for exceptions raised by signaling clients."""

    pass


class SignalingNotConnectedError(SignalingClientError):
    """Exception raised if a client is not connected to a signaling server."""

    pass


class NegotiationError(SignalingError):
    """Base exception type for errors in a negotiation session."""

    pass


class CallInProgressError(NegotiationError):
    """A call was started while another negotiation session is active."""

    pass


class NegotiationPrimitiveError(NegotiationError):
    """The negotiation primitive rejected a description or candidate."""

    pass


class NegotiationTimeoutError(NegotiationError):
    """The remote peer did not answer an offer in time."""

    pass


class PeerBusyError(NegotiationError):
    """The remote peer replied that it is busy with another call."""

    pass
