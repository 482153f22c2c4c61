"""Booking target helpers: URL parsing, date handling and validation"""

import datetime
import re
from typing import Dict, Optional, Tuple, Union

from dateutil.parser import parse as parse_date
from dateutil.relativedelta import relativedelta

from .config import (
    BOOKING_WINDOW_MONTHS,
    DEFAULT_CONTRACT_CODE,
    MAX_NIGHTS,
    MIN_NIGHTS,
    UNLOCK_HOUR,
)
from .exceptions import InvalidBookingError
from .models import BookingTarget

# /NY/140/245719/campsite-booking
SITE_URL_PATTERN = re.compile(r"/([A-Z]{2})/(\d+)/(\d+)/campsite-booking", re.IGNORECASE)
CONTRACT_CODE_PATTERN = re.compile(r"/([A-Z]{2})/\d+/")

DateLike = Union[str, datetime.date]


def parse_site_url(url: str) -> Tuple[str, str, str]:
    """
    Extract contract code, facility id and site id from a campsite page URL.

    Args:
        url: e.g. https://www.reserveamerica.com/explore/x/NY/140/245719/campsite-booking?...

    Returns:
        Tuple of (contract_code, facility_id, site_id); ids are '' when the
        URL does not point at a campsite page
    """
    match = SITE_URL_PATTERN.search(url or "")
    if match:
        return match.group(1).upper(), match.group(2), match.group(3)

    code = CONTRACT_CODE_PATTERN.search(url or "")
    return (code.group(1) if code else DEFAULT_CONTRACT_CODE), "", ""


def _to_date(value: DateLike) -> datetime.date:
    if isinstance(value, datetime.datetime):
        return value.date()
    if isinstance(value, datetime.date):
        return value
    return parse_date(value).date()


def normalize_arrival_date(value: DateLike) -> str:
    """
    Normalize an arrival date to YYYY-MM-DD.

    Raises:
        ValueError: If the date cannot be parsed
    """
    if not value:
        raise ValueError("Arrival date is required")
    try:
        return _to_date(value).strftime("%Y-%m-%d")
    except (ValueError, OverflowError) as e:
        raise ValueError(f"Invalid date '{value}': {str(e)}")


def validate_booking(
    facility_id: str,
    site_id: str,
    arrival_date: Optional[DateLike],
    nights: Union[int, str, None],
    contract_code: str = DEFAULT_CONTRACT_CODE,
) -> BookingTarget:
    """
    Validate raw booking input and build a BookingTarget.

    Every problem is collected before raising so the operator can fix
    them in one go.

    Raises:
        InvalidBookingError: With a field -> message mapping
    """
    errors: Dict[str, str] = {}

    normalized_date = ""
    if not arrival_date:
        errors["arrival_date"] = "Start date is required"
    else:
        try:
            normalized_date = normalize_arrival_date(arrival_date)
        except ValueError as e:
            errors["arrival_date"] = str(e)

    try:
        nights_value = int(nights) if nights is not None else None
    except (TypeError, ValueError):
        nights_value = None
    if nights_value is None or nights_value < MIN_NIGHTS:
        errors["nights"] = f"Nights must be at least {MIN_NIGHTS}"
    elif nights_value > MAX_NIGHTS:
        errors["nights"] = f"Nights cannot exceed {MAX_NIGHTS}"

    if not facility_id or not site_id:
        errors["context"] = "Facility and site ids are required (pass --site-url or --facility-id/--site-id)"

    if errors:
        raise InvalidBookingError(errors)

    return BookingTarget(
        contract_code=(contract_code or DEFAULT_CONTRACT_CODE).upper(),
        facility_id=str(facility_id),
        site_id=str(site_id),
        arrival_date=normalized_date,
        nights=nights_value,
    )


def stay_range(arrival_date: DateLike, nights: int) -> Tuple[datetime.date, datetime.date]:
    """Return (check-in, check-out) dates"""
    start = _to_date(arrival_date)
    return start, start + datetime.timedelta(days=nights)


def format_stay(arrival_date: DateLike, nights: int) -> str:
    start, end = stay_range(arrival_date, nights)
    nights_text = "1 night" if nights == 1 else f"{nights} nights"
    return f"{start:%b %d, %Y} → {end:%b %d, %Y} ({nights_text})"


def unlock_datetime(arrival_date: DateLike) -> datetime.datetime:
    """When a site for ``arrival_date`` becomes bookable (local time)"""
    unlock_day = _to_date(arrival_date) - relativedelta(months=BOOKING_WINDOW_MONTHS)
    return datetime.datetime.combine(unlock_day, datetime.time(hour=UNLOCK_HOUR))


def booking_mode(arrival_date: DateLike, now: Optional[datetime.datetime] = None) -> str:
    """
    'queue' while the booking window is still closed, 'add' once it opened.

    A 'queue' mode session is expected to hit the too-early fault until
    the unlock instant.
    """
    now = now or datetime.datetime.now()
    return "queue" if now < unlock_datetime(arrival_date) else "add"


def default_arrival_date(today: Optional[datetime.date] = None) -> str:
    """Furthest arrival date that can open today (today + 9 months)"""
    today = today or datetime.date.today()
    return (today + relativedelta(months=BOOKING_WINDOW_MONTHS)).strftime("%Y-%m-%d")
