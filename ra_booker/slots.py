"""Bounded in-flight slot accounting for polling attempts"""

from loguru import logger

from .models import PollingSession


class ConcurrencySlotManager:
    """
    Keeps ``in_flight_count`` within ``max_concurrent``.

    All methods are synchronous and run on the event loop thread, so an
    acquire or release can never interleave with another one. The bound
    may shrink during a session but never grows and never drops below 1.
    """

    def __init__(self, session: PollingSession):
        self.session = session

    @property
    def limit(self) -> int:
        return self.session.max_concurrent

    @property
    def in_flight(self) -> int:
        return self.session.in_flight_count

    def available(self) -> int:
        """Number of attempts that may be dispatched right now"""
        return max(0, self.session.max_concurrent - self.session.in_flight_count)

    def acquire(self) -> bool:
        """Claim one slot. Returns False when the pool is full."""
        if self.session.in_flight_count >= self.session.max_concurrent:
            return False
        self.session.in_flight_count += 1
        if self.session.in_flight_count > self.session.peak_in_flight:
            self.session.peak_in_flight = self.session.in_flight_count
        return True

    def release(self) -> None:
        if self.session.in_flight_count <= 0:
            logger.error("Slot released with nothing in flight")
            return
        self.session.in_flight_count -= 1

    def shrink(self) -> bool:
        """Lower the bound by one, never below 1"""
        if self.session.max_concurrent <= 1:
            return False
        self.session.max_concurrent -= 1
        return True
