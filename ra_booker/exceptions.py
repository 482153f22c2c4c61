"""Custom exception classes for the cart poller"""

from typing import Dict, Optional


class RABookerError(Exception):
    """Base exception for poller errors"""

    pass


class CredentialsMissingError(RABookerError):
    """Raised when idToken or a1Data cannot be found"""

    pass


class CartReadError(RABookerError):
    """Raised when the shopping cart could not be read"""

    def __init__(self, message: str, status: Optional[int] = None):
        self.status = status
        super().__init__(message)


class PollingError(RABookerError):
    """Raised on illegal scheduler use (e.g. starting twice)"""

    pass


class InvalidBookingError(RABookerError):
    """Raised when a booking target fails validation

    All problems are collected in ``errors`` (field -> message) so the
    caller can show every one of them at once.
    """

    def __init__(self, errors: Dict[str, str]):
        self.errors = dict(errors)
        summary = "; ".join(f"{field}: {msg}" for field, msg in self.errors.items())
        super().__init__(f"Invalid booking: {summary}")
