"""Throttle handling with randomized pauses and concurrency ratcheting"""

import asyncio
import random
from typing import Callable, Optional

from loguru import logger

from .models import DecisionKind, PollingSession, ThrottleState
from .slots import ConcurrencySlotManager


class ThrottleController:
    """
    Reacts to HTTP 429 and HTTP 000 signals.

    Each throttled attempt pauses for a random duration inside
    ``[throttle_pause_min, throttle_pause_max]`` while still holding its
    slot. The signal that brings its streak to ``throttle_threshold``
    costs the session one unit of concurrency before that pause starts,
    and the streak restarts.
    Rate-limit and transport streaks are counted independently and both
    clear on the next HTTP 200.
    """

    def __init__(
        self,
        session: PollingSession,
        slots: ConcurrencySlotManager,
        sleep: Callable = asyncio.sleep,
        rng: Optional[random.Random] = None,
    ):
        """
        Initialize throttle controller.

        Args:
            session: Session whose throttle state is tracked
            slots: Slot manager owning the concurrency bound
            sleep: Coroutine used to pause (injectable for tests)
            rng: Random source for pause sampling
        """
        self.session = session
        self.slots = slots
        self.settings = session.settings
        self.sleep = sleep
        self.rng = rng or random.Random()
        self.lock = asyncio.Lock()

        logger.debug(
            f"Throttle controller initialized: pause "
            f"{self.settings.throttle_pause_min:.2f}-{self.settings.throttle_pause_max:.2f}s, "
            f"threshold={self.settings.throttle_threshold}"
        )

    @property
    def state(self) -> ThrottleState:
        return self.session.throttle

    def _streak(self, kind: DecisionKind) -> int:
        if kind is DecisionKind.THROTTLE_RATE:
            return self.state.consecutive_rate_limited
        if kind is DecisionKind.THROTTLE_TRANSPORT:
            return self.state.consecutive_transport_failures
        raise ValueError(f"Not a throttle decision: {kind}")

    def register(self, kind: DecisionKind) -> int:
        """Count one throttle signal, returning the new streak length"""
        if kind is DecisionKind.THROTTLE_RATE:
            self.state.consecutive_rate_limited += 1
        elif kind is DecisionKind.THROTTLE_TRANSPORT:
            self.state.consecutive_transport_failures += 1
        else:
            raise ValueError(f"Not a throttle decision: {kind}")
        return self._streak(kind)

    def sample_pause(self) -> float:
        """Pick a pause uniformly from the configured bounds"""
        return self.rng.uniform(self.settings.throttle_pause_min, self.settings.throttle_pause_max)

    async def pause(self, duration: float) -> None:
        """Suspend the calling attempt only"""
        await self.sleep(duration)

    async def maybe_reduce(self, kind: DecisionKind) -> bool:
        """
        Drop concurrency by one if the streak for ``kind`` hit the threshold.

        Called straight after ``register`` with no await in between, so no
        HTTP 200 can clear the streak before it is checked.

        Returns:
            True if ``max_concurrent`` was lowered
        """
        async with self.lock:
            if self._streak(kind) < self.settings.throttle_threshold:
                return False

            # Streak restarts whether or not there was room to shrink
            if kind is DecisionKind.THROTTLE_RATE:
                self.state.consecutive_rate_limited = 0
            else:
                self.state.consecutive_transport_failures = 0

            old = self.slots.limit
            if not self.slots.shrink():
                logger.warning("Persistent throttling but concurrency already at 1")
                return False

            self.state.reductions += 1
            logger.warning(
                f"Reducing concurrency {old} → {self.slots.limit} "
                f"due to persistent {'rate limiting' if kind is DecisionKind.THROTTLE_RATE else 'network throttling'}"
            )
            return True

    def record_success(self) -> None:
        """HTTP 200 clears both streaks"""
        if self.state.consecutive_rate_limited or self.state.consecutive_transport_failures:
            logger.info("Throttle streaks cleared after HTTP 200")
        self.state.reset()

    def reset(self) -> None:
        self.state.reset()
