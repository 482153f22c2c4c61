"""Consecutive failure tracking for operator warnings"""

from loguru import logger

from .models import FailureState, PollingSession


class FailureCounter:
    """
    Counts consecutive non-throttle failures.

    Purely observational: the count only changes the message shown to
    the operator, never the scheduling. Throttle statuses (429 and 0)
    are ignored; any HTTP 200 clears the streak.
    """

    IGNORED_STATUSES = frozenset({0, 429})

    def __init__(self, session: PollingSession):
        self.session = session
        self.threshold = session.settings.failure_warning_threshold

    @property
    def state(self) -> FailureState:
        return self.session.failures

    @property
    def count(self) -> int:
        return self.state.consecutive_failures

    def register_failure(self, http_status: int) -> int:
        if http_status in self.IGNORED_STATUSES:
            return self.state.consecutive_failures
        self.state.consecutive_failures += 1
        if self.state.consecutive_failures == self.threshold:
            logger.warning(
                f"{self.state.consecutive_failures} consecutive failures "
                f"(last HTTP {http_status})"
            )
        return self.state.consecutive_failures

    def record_success(self) -> None:
        self.state.reset()

    def reset(self) -> None:
        self.state.reset()

    @property
    def reached_threshold(self) -> bool:
        return self.state.consecutive_failures >= self.threshold

    def message(self, fallback: str) -> str:
        """Message for the latest failure: a warning once the streak is long"""
        if self.reached_threshold:
            return f"{self.state.consecutive_failures}+ failures: consider checking cookies/site."
        return fallback
