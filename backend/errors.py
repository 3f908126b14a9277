"""Exception hierarchy shared by the signaling, negotiation and transfer layers."""


class BeamshareError(Exception):
    """Base class for all Beamshare errors."""


class SignalingError(BeamshareError):
    """The rendezvous connection could not be established or was lost for good."""


class NegotiationError(BeamshareError):
    """Offer/answer exchange failed or was attempted in the wrong state."""


class TransferError(BeamshareError):
    """A failure scoped to a single transfer."""

    def __init__(self, message: str, transfer_id: str | None = None) -> None:
        super().__init__(message)
        self.transfer_id = transfer_id


class TransportClosedError(TransferError):
    """The peer data channel is not open."""


class InvalidTransitionError(BeamshareError):
    """A transfer status change that would break the lifecycle rules."""
