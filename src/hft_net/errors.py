"""
Request validation errors for the rendezvous API.

Each error carries the short message returned to the caller in the body of
a 400 response. None of them are retried server-side.
"""


class RendezvousRequestError(ValueError):
    """Base exception for rejected rendezvous requests."""

    message = "bad request"

    def __init__(self, message: str = ""):
        if message:
            self.message = message
        super().__init__(self.message)


class MissingPublicAddress(RendezvousRequestError):
    """No usable public address for the caller."""
    message = "missing public ip address"


class MissingTargetAddress(RendezvousRequestError):
    """``hftip`` absent."""
    message = "missing hft ip address"


class InvalidTargetAddress(RendezvousRequestError):
    """``hftip`` or one of ``addresses`` is not an address literal."""
    message = "invalid ip address"


class MissingPort(RendezvousRequestError):
    """``hftport`` or ``port`` absent or empty."""
    message = "missing port"


class InvalidPort(RendezvousRequestError):
    """Port is not 1 to 5 decimal digits."""
    message = "invalid port"


class MissingAddresses(RendezvousRequestError):
    """``addresses`` absent from the request body."""
    message = "missing addresses"


class EmptyAddresses(RendezvousRequestError):
    """``addresses`` is an empty list."""
    message = "zero addresses"
