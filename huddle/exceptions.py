"""Exception types for peer negotiation errors."""
from __future__ import annotations


class NegotiationError(Exception):
    """Error negotiating a session with a peer."""

    pass


class NegotiationStateError(NegotiationError):
    """Operation is not valid in the current negotiation state."""

    pass


class NegotiationTimeoutError(NegotiationError):
    """Timeout waiting on the peer connection to establish."""

    pass


class MediaAcquisitionError(Exception):
    """Local media devices or files could not be opened."""

    pass
