"""Reserve America Cart Poller
Races add-to-cart requests when a campsite's booking window opens
"""

__version__ = "0.1.0"

from .api_client import RAApiClient
from .booking import booking_mode, parse_site_url, unlock_datetime, validate_booking
from .classifier import classify_outcome
from .confirmation import ConfirmationChecker
from .credentials import CookieFileCredentialProvider, StaticCredentialProvider
from .exceptions import (
    CartReadError,
    CredentialsMissingError,
    InvalidBookingError,
    PollingError,
    RABookerError,
)
from .models import (
    AttemptOutcome,
    AttemptRequest,
    BookingTarget,
    Credentials,
    DecisionKind,
    PollingSettings,
    PollingState,
    StatusEvent,
)
from .reporter import StatusReporter
from .scheduler import PollingScheduler

__all__ = [
    "__version__",
    "RAApiClient",
    "PollingScheduler",
    "StatusReporter",
    "ConfirmationChecker",
    "CookieFileCredentialProvider",
    "StaticCredentialProvider",
    "classify_outcome",
    "booking_mode",
    "parse_site_url",
    "unlock_datetime",
    "validate_booking",
    "RABookerError",
    "CartReadError",
    "CredentialsMissingError",
    "InvalidBookingError",
    "PollingError",
    "AttemptOutcome",
    "AttemptRequest",
    "BookingTarget",
    "Credentials",
    "DecisionKind",
    "PollingSettings",
    "PollingState",
    "StatusEvent",
]
