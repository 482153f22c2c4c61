"""Polling scheduler: drives ticks, dispatches attempts, owns the session"""

import asyncio
import random
import time
from datetime import datetime
from typing import Callable, Optional, Set

from loguru import logger

from .classifier import OVERLAP_MESSAGE, classify_outcome
from .confirmation import ConfirmationChecker
from .credentials import CredentialProvider
from .exceptions import PollingError
from .failure_counter import FailureCounter
from .models import (
    AttemptOutcome,
    AttemptRequest,
    BookingTarget,
    ConfirmationKind,
    Credentials,
    Decision,
    DecisionKind,
    ErrorKind,
    PollingSession,
    PollingSettings,
    PollingState,
    StatusEvent,
    StopReason,
)
from .reporter import StatusReporter
from .slots import ConcurrencySlotManager
from .throttle import ThrottleController

START_MESSAGE = "Starting polling..."
USER_STOP_MESSAGE = "Polling stopped by user"
SUCCESS_MESSAGE = "Success! Item added to cart."
OVERLAP_SUCCESS_MESSAGE = "Success! Reservation already present in cart."
UNCONFIRMED_MESSAGE = "Got HTTP 200 but cart did not update, continuing..."


def _format_duration(seconds: float) -> str:
    if seconds >= 60 and seconds % 60 == 0:
        return f"{int(seconds // 60)} min"
    return f"{seconds:g}s"


class PollingScheduler:
    """
    Session state machine: idle → polling → success | stopped | error.

    A single tick loop runs every ``cadence`` seconds and fills free slots
    with add-item attempts. Attempts run as independent tasks on the same
    event loop; their outcomes are classified and applied to the session
    as they land. Stop requests and the session time budget are checked
    only at tick boundaries. Attempts still in flight when the session
    ends are allowed to finish, but their outcomes are ignored.
    """

    def __init__(
        self,
        client,
        credential_provider: CredentialProvider,
        settings: Optional[PollingSettings] = None,
        reporter: Optional[StatusReporter] = None,
        sleep: Callable = asyncio.sleep,
        rng: Optional[random.Random] = None,
    ):
        """
        Initialize polling scheduler.

        Args:
            client: Cart client (``add_item`` and ``get_cart``)
            credential_provider: Read once at every session start
            settings: Polling tunables
            reporter: Status/event sink
            sleep: Coroutine used for throttle pauses
            rng: Random source for throttle pauses
        """
        self.client = client
        self.credential_provider = credential_provider
        self.settings = settings or PollingSettings()
        self.reporter = reporter or StatusReporter()
        self._sleep = sleep
        self._rng = rng

        self.session = PollingSession(settings=self.settings)
        self.target: Optional[BookingTarget] = None
        self.credentials: Optional[Credentials] = None
        self.slots = ConcurrencySlotManager(self.session)
        self.throttle = ThrottleController(self.session, self.slots, sleep=sleep, rng=rng)
        self.failures = FailureCounter(self.session)
        self.confirmer: Optional[ConfirmationChecker] = None

        self._loop_task: Optional[asyncio.Task] = None
        self._attempts: Set[asyncio.Task] = set()

    @property
    def state(self) -> PollingState:
        return self.session.state

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    async def start(self, target: BookingTarget) -> PollingSession:
        """Begin a new session (idle/terminal → polling)"""
        if self.session.state is PollingState.POLLING:
            raise PollingError("Already polling")

        # Leftovers of the previous session must not touch the new one
        if self._loop_task and not self._loop_task.done():
            await self._loop_task
        await self._drain()

        credentials = await self.credential_provider.get_credentials()

        session = PollingSession(settings=self.settings)
        self.session = session
        self.target = target
        self.credentials = credentials
        self.slots = ConcurrencySlotManager(session)
        self.throttle = ThrottleController(session, self.slots, sleep=self._sleep, rng=self._rng)
        self.failures = FailureCounter(session)
        self.confirmer = ConfirmationChecker(self.client, credentials, target)
        self.reporter.begin_session()

        session.state = PollingState.POLLING
        session.started_at = datetime.now()
        session.started_monotonic = time.monotonic()

        logger.info("=" * 60)
        logger.info(
            f"🚀 Polling {target.contract_code} facility={target.facility_id} "
            f"site={target.site_id} arrival={target.arrival_date} nights={target.nights}"
        )
        logger.info(
            f"   cadence={self.settings.cadence * 1000:.0f}ms "
            f"max_concurrent={self.settings.max_concurrent} "
            f"max_duration={_format_duration(self.settings.max_duration)}"
        )
        logger.info("=" * 60)

        session.baseline = await self.confirmer.snapshot()

        self._emit(PollingState.POLLING, START_MESSAGE)
        self._loop_task = asyncio.create_task(self._tick_loop())
        return session

    def stop(self) -> None:
        """Ask the session to stop; honoured at the next tick"""
        if self.session.state is not PollingState.POLLING:
            return
        logger.info("Stop requested")
        self.session.stop_requested = True

    async def wait(self) -> PollingSession:
        """Wait for the session to end and in-flight attempts to land"""
        if self._loop_task:
            await self._loop_task
        await self._drain()

        summary = self.session.summary()
        logger.info(
            f"Session finished: {summary['state']} after {summary['request_count']} requests "
            f"(concurrency {summary['initial_max_concurrent']} → {summary['max_concurrent']})"
        )
        return self.session

    async def run(self, target: BookingTarget) -> PollingSession:
        await self.start(target)
        return await self.wait()

    async def _drain(self) -> None:
        if self._attempts:
            logger.debug(f"Waiting for {len(self._attempts)} in-flight attempts to land")
            await asyncio.gather(*list(self._attempts), return_exceptions=True)

    # ------------------------------------------------------------------
    # Ticks and dispatch
    # ------------------------------------------------------------------

    async def _tick_loop(self) -> None:
        while self.tick():
            await asyncio.sleep(self.settings.cadence)

    def tick(self) -> bool:
        """
        Run one scheduler tick.

        Returns:
            False once the session has left the polling state
        """
        session = self.session
        if session.state is not PollingState.POLLING:
            return False

        if session.stop_requested:
            self._transition(PollingState.STOPPED, USER_STOP_MESSAGE, stop_reason=StopReason.USER)
            return False

        if session.elapsed >= session.max_duration:
            logger.warning(f"Max session duration reached after {session.request_count} requests")
            self._transition(
                PollingState.STOPPED,
                f"Polling stopped: max duration ({_format_duration(session.max_duration)}) reached",
                stop_reason=StopReason.TIMEOUT,
            )
            return False

        for _ in range(self.slots.available()):
            self._dispatch()
        return True

    def _dispatch(self) -> None:
        if not self.slots.acquire():
            return
        self.session.request_count += 1
        task = asyncio.create_task(self._run_attempt(self.session.request_count))
        self._attempts.add(task)
        task.add_done_callback(self._attempts.discard)

    async def _run_attempt(self, sequence: int) -> None:
        request = AttemptRequest(target=self.target, credentials=self.credentials)
        self.reporter.log_request(sequence, request)
        try:
            outcome = await self.client.add_item(request)
            self.reporter.log_response(sequence, outcome)
            await self._handle_outcome(sequence, outcome)
        except Exception as e:
            logger.exception(f"Attempt #{sequence} failed: {e}")
            if not self._discarded():
                self._emit(PollingState.POLLING, f"Error: {e}")
        finally:
            self.slots.release()

    # ------------------------------------------------------------------
    # Outcome handling
    # ------------------------------------------------------------------

    def _discarded(self) -> bool:
        return self.session.success_confirmed or self.session.state is not PollingState.POLLING

    async def _handle_outcome(self, sequence: int, outcome: AttemptOutcome) -> None:
        if outcome.http_status == 200:
            self.throttle.record_success()
            self.failures.record_success()

        if self._discarded():
            return

        decision = classify_outcome(outcome)
        kind = decision.kind

        if kind is DecisionKind.NEEDS_CONFIRMATION:
            await self._confirm(sequence, outcome, decision)
        elif kind in (DecisionKind.THROTTLE_RATE, DecisionKind.THROTTLE_TRANSPORT):
            await self._throttle(sequence, outcome, decision)
        elif decision.is_terminal:
            self._fail(outcome, decision)
        else:
            self.failures.register_failure(outcome.http_status)
            self._emit(
                PollingState.POLLING,
                self.failures.message(decision.message),
                http_status=outcome.http_status,
                server_message=decision.server_message,
            )

    async def _confirm(self, sequence: int, outcome: AttemptOutcome, decision: Decision) -> None:
        logger.info(f"[#{sequence}] {decision.message}")
        confirmed = await self.confirmer.confirm(self.session.baseline)

        # Another attempt may have won (or the session ended) meanwhile
        if self._discarded():
            return

        overlap = decision.confirmation is ConfirmationKind.AMBIGUOUS_OVERLAP
        if confirmed:
            self._succeed(
                sequence,
                outcome,
                OVERLAP_SUCCESS_MESSAGE if overlap else SUCCESS_MESSAGE,
                decision.server_message,
            )
        elif overlap:
            self._fail(
                outcome,
                Decision(
                    kind=DecisionKind.TERMINAL_ERROR,
                    message=OVERLAP_MESSAGE,
                    error_kind=ErrorKind.CONFLICT,
                    server_message=decision.server_message,
                ),
            )
        else:
            logger.warning(f"[#{sequence}] Got 200 but cart did not update - continuing polling")
            self._emit(PollingState.POLLING, UNCONFIRMED_MESSAGE, http_status=outcome.http_status)

    async def _throttle(self, sequence: int, outcome: AttemptOutcome, decision: Decision) -> None:
        rate_limited = decision.kind is DecisionKind.THROTTLE_RATE
        streak = self.throttle.register(decision.kind)
        pause = self.throttle.sample_pause()

        logger.debug(
            f"[#{sequence}] HTTP {outcome.http_status:03d} - pausing {pause * 1000:.0f}ms "
            f"({streak}/{self.settings.throttle_threshold})"
        )
        label = "Rate limited" if rate_limited else "Network throttle"
        self._emit(
            PollingState.POLLING,
            f"{label}: pausing {round(pause)}s...",
            http_status=outcome.http_status,
        )

        # A reduction earned here survives a 200 that lands during the pause
        if await self.throttle.maybe_reduce(decision.kind):
            reason = "persistent rate limiting" if rate_limited else "persistent throttling"
            self._emit(
                PollingState.POLLING,
                f"Reduced concurrency to {self.slots.limit} due to {reason}.",
            )

        await self.throttle.pause(pause)

    def _succeed(
        self,
        sequence: int,
        outcome: AttemptOutcome,
        message: str,
        server_message: Optional[str],
    ) -> None:
        self.session.success_confirmed = True
        logger.success(f"✅ [#{sequence}] SUCCESS CONFIRMED via cart after {self.session.request_count} requests")
        self._transition(
            PollingState.SUCCESS,
            message,
            http_status=outcome.http_status,
            server_message=server_message,
        )
        self.reporter.navigate_to_result()

    def _fail(self, outcome: AttemptOutcome, decision: Decision) -> None:
        logger.error(
            f"❌ {decision.message} (HTTP {outcome.http_status})"
            + (f" — {decision.server_message}" if decision.server_message else "")
        )
        self._transition(
            PollingState.ERROR,
            decision.message,
            http_status=outcome.http_status,
            server_message=decision.server_message,
            error_kind=decision.error_kind,
        )

    def _transition(
        self,
        state: PollingState,
        message: str,
        http_status: Optional[int] = None,
        server_message: Optional[str] = None,
        stop_reason: Optional[StopReason] = None,
        error_kind: Optional[ErrorKind] = None,
    ) -> bool:
        """Move polling → terminal state. Only the first call wins."""
        session = self.session
        if session.state is not PollingState.POLLING:
            return False

        session.state = state
        session.stop_requested = True
        session.ended_at = datetime.now()
        session.ended_monotonic = time.monotonic()
        session.stop_reason = stop_reason
        session.error_kind = error_kind
        self.throttle.reset()
        self.failures.reset()

        self._emit(
            state,
            message,
            http_status=http_status,
            server_message=server_message,
            stop_reason=stop_reason,
            error_kind=error_kind,
        )
        return True

    def _emit(
        self,
        state: PollingState,
        message: str,
        http_status: Optional[int] = None,
        server_message: Optional[str] = None,
        stop_reason: Optional[StopReason] = None,
        error_kind: Optional[ErrorKind] = None,
    ) -> bool:
        session = self.session
        session.last_message = message
        session.server_message = server_message
        if http_status is not None:
            session.last_http_status = http_status

        event = StatusEvent(
            state=state,
            request_count=session.request_count,
            elapsed=session.elapsed,
            last_message=message,
            last_http_status=http_status,
            server_message=server_message,
            stop_reason=stop_reason,
            error_kind=error_kind,
            max_duration=session.max_duration,
        )
        return self.reporter.emit(event)
