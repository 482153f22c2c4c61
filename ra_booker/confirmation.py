"""Cart read-back used to settle ambiguous add-item outcomes"""

from typing import Any, Callable, Dict, Optional

from loguru import logger

from .exceptions import CartReadError
from .models import BookingTarget, CartSnapshot, Credentials

SuccessPredicate = Callable[[CartSnapshot, CartSnapshot], bool]

_FACILITY_KEYS = {"facilityid", "facility_id"}
_SITE_KEYS = {"siteid", "site_id"}


def _find_identifier(item: Dict[str, Any], keys: set, depth: int = 3) -> Optional[str]:
    for key, value in item.items():
        if key.lower() in keys and value not in (None, ""):
            return str(value)
    if depth > 0:
        for value in item.values():
            if isinstance(value, dict):
                found = _find_identifier(value, keys, depth - 1)
                if found is not None:
                    return found
    return None


def item_matches_target(item: Dict[str, Any], target: BookingTarget) -> bool:
    """
    True unless the added item names a different facility or site.

    Cart entries that expose no identifiers at all are accepted.
    """
    facility = _find_identifier(item, _FACILITY_KEYS)
    site = _find_identifier(item, _SITE_KEYS)
    if facility is not None and facility != str(target.facility_id):
        return False
    if site is not None and site != str(target.site_id):
        return False
    return True


class ConfirmationChecker:
    """
    Decides whether an add-item really landed by re-reading the cart.

    Used for HTTP 200 responses and for "overlapping reservation" faults;
    the two call sites differ only in what they do with a negative answer.
    """

    def __init__(self, client, credentials: Credentials, target: BookingTarget):
        """
        Initialize confirmation checker.

        Args:
            client: Anything with ``async get_cart(credentials) -> CartSnapshot``
            credentials: Session credentials for the cart read
            target: Site being booked (used to match added items)
        """
        self.client = client
        self.credentials = credentials
        self.target = target

    async def snapshot(self) -> CartSnapshot:
        """Capture the cart before polling; an unreadable cart counts as empty"""
        try:
            snapshot = await self.client.get_cart(self.credentials)
        except CartReadError as e:
            logger.warning(f"Could not snapshot cart, assuming 0 items: {e}")
            return CartSnapshot()
        logger.info(f"Initial cart itemsCount: {snapshot.items_count}")
        return snapshot

    def item_added(self, baseline: CartSnapshot, current: CartSnapshot) -> bool:
        """Default success predicate: count went up, or the target shows up as added"""
        if current.items_count > baseline.items_count:
            return True
        return any(item_matches_target(item, self.target) for item in current.added_items)

    async def confirm(
        self,
        baseline: CartSnapshot,
        predicate: Optional[SuccessPredicate] = None,
    ) -> bool:
        """Read the cart and apply ``predicate(baseline, current)``"""
        predicate = predicate or self.item_added
        try:
            current = await self.client.get_cart(self.credentials)
        except CartReadError as e:
            logger.error(f"Cart confirmation failed: {e}")
            return False

        confirmed = predicate(baseline, current)
        logger.debug(
            f"Cart confirmation: itemsCount {baseline.items_count} → {current.items_count}, "
            f"addedItems={len(current.added_items)}, confirmed={confirmed}"
        )
        return confirmed
