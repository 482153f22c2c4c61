import asyncio

import pytest

from ra_booker.classifier import TOO_EARLY_MESSAGE
from ra_booker.credentials import StaticCredentialProvider
from ra_booker.exceptions import CredentialsMissingError, PollingError
from ra_booker.models import (
    AttemptOutcome,
    BookingTarget,
    CartSnapshot,
    ErrorKind,
    PollingSettings,
    PollingState,
    StopReason,
)
from ra_booker.reporter import StatusReporter
from ra_booker.scheduler import (
    OVERLAP_SUCCESS_MESSAGE,
    SUCCESS_MESSAGE,
    UNCONFIRMED_MESSAGE,
    PollingScheduler,
)

TARGET = BookingTarget("NY", "140", "245719", "2026-05-17", 1)
PROVIDER = StaticCredentialProvider("jwt", "{}")

OVERLAP_BODY = {"faults": [{"msgKey": "R12-V-100007.error", "defaultMessage": "Maximum number of overlapping"}]}


class FakeCartClient:
    """
    Scripted stand-in for RAApiClient.

    ``script(n)`` returns the outcome of the n-th add-item call (1-based);
    ``latency(n)`` how long that call takes. A 200 with ``fills_cart`` set
    bumps the cart count before returning.
    """

    def __init__(self, script, latency=None, fills_cart=True):
        self.script = script
        self.latency = latency or (lambda n: 0)
        self.fills_cart = fills_cart
        self.items_count = 0
        self.calls = 0
        self.cart_reads = 0
        self.gate = None

    async def add_item(self, request):
        self.calls += 1
        n = self.calls
        if self.gate is not None:
            await self.gate.wait()
        await asyncio.sleep(self.latency(n))
        outcome = self.script(n)
        if isinstance(outcome, Exception):
            raise outcome
        if outcome.http_status == 200 and self.fills_cart:
            self.items_count += 1
        return outcome

    async def get_cart(self, credentials):
        self.cart_reads += 1
        return CartSnapshot(items_count=self.items_count)


def _settings(**overrides):
    values = dict(
        cadence=0.01,
        max_concurrent=3,
        max_duration=5.0,
        throttle_pause_min=0.01,
        throttle_pause_max=0.02,
        throttle_threshold=10,
    )
    values.update(overrides)
    return PollingSettings(**values)


def _scheduler(client, **overrides):
    reporter = StatusReporter()
    scheduler = PollingScheduler(client, PROVIDER, settings=_settings(**overrides), reporter=reporter)
    return scheduler, reporter


async def _until(predicate, timeout=3.0):
    async def poll():
        while not predicate():
            await asyncio.sleep(0.005)

    await asyncio.wait_for(poll(), timeout)


def _states(reporter):
    return [e.state for e in reporter.events]


class RecordingScheduler(PollingScheduler):
    """Notes (in_flight, max_concurrent) right after every dispatch"""

    def __init__(self, *args, **kwargs):
        super().__init__(*args, **kwargs)
        self.observed = []

    def _dispatch(self):
        super()._dispatch()
        self.observed.append((self.session.in_flight_count, self.session.max_concurrent))


# ---------------------------------------------------------------------------
# Scenarios
# ---------------------------------------------------------------------------

@pytest.mark.asyncio
async def test_rate_limited_then_success_reduces_concurrency_once():
    client = FakeCartClient(
        script=lambda n: AttemptOutcome(http_status=429) if n <= 10 else AttemptOutcome(http_status=200, body={}),
    )
    # The first 200 lands while the tenth 429 is still pausing
    scheduler, reporter = _scheduler(
        client, max_concurrent=3, throttle_pause_min=0.2, throttle_pause_max=0.3
    )

    session = await scheduler.run(TARGET)

    assert session.state is PollingState.SUCCESS
    assert session.request_count >= 11
    assert session.throttle.reductions == 1
    assert session.max_concurrent == 2
    assert any(e.last_message.startswith("Reduced concurrency to 2") for e in reporter.events)

    states = _states(reporter)
    assert states[-1] is PollingState.SUCCESS
    assert states.count(PollingState.SUCCESS) == 1
    assert reporter.events[-1].last_message == SUCCESS_MESSAGE


@pytest.mark.asyncio
async def test_auth_error_on_first_attempt_is_immediate():
    client = FakeCartClient(script=lambda n: AttemptOutcome(http_status=401))
    scheduler, reporter = _scheduler(client, max_concurrent=1)

    session = await scheduler.run(TARGET)

    assert session.state is PollingState.ERROR
    assert session.error_kind is ErrorKind.AUTH
    assert session.request_count == 1
    assert client.calls == 1


@pytest.mark.asyncio
async def test_too_early_fault_points_to_scheduled_start():
    body = {"faults": [{"msgKey": "R1-V-100017.error", "defaultMessage": "Arrival must be within 9 Months"}]}
    client = FakeCartClient(script=lambda n: AttemptOutcome(http_status=417, body=body))
    scheduler, reporter = _scheduler(client, max_concurrent=1)

    session = await scheduler.run(TARGET)

    assert session.state is PollingState.ERROR
    assert session.error_kind is ErrorKind.TOO_EARLY
    assert session.request_count == 1
    last = reporter.events[-1]
    assert last.last_message == TOO_EARLY_MESSAGE
    assert "Queue Cart" in last.last_message
    assert last.server_message == "Arrival must be within 9 Months"


@pytest.mark.asyncio
async def test_unconfirmed_200_keeps_polling():
    client = FakeCartClient(script=lambda n: AttemptOutcome(http_status=200, body={}), fills_cart=False)
    scheduler, reporter = _scheduler(client, max_concurrent=2)

    await scheduler.start(TARGET)
    await _until(lambda: scheduler.session.request_count >= 5)
    assert scheduler.state is PollingState.POLLING
    assert any(e.last_message == UNCONFIRMED_MESSAGE for e in reporter.events)

    scheduler.stop()
    session = await scheduler.wait()

    assert session.state is PollingState.STOPPED
    assert session.stop_reason is StopReason.USER
    assert PollingState.SUCCESS not in _states(reporter)
    assert PollingState.ERROR not in _states(reporter)


@pytest.mark.asyncio
async def test_stop_with_attempts_in_flight_discards_their_outcomes():
    client = FakeCartClient(script=lambda n: AttemptOutcome(http_status=200, body={}))
    client.gate = asyncio.Event()
    scheduler, reporter = _scheduler(client, max_concurrent=2)

    await scheduler.start(TARGET)
    await _until(lambda: scheduler.session.in_flight_count == 2)
    scheduler.stop()
    await _until(lambda: scheduler.state is PollingState.STOPPED)
    emitted = len(reporter.events)

    client.gate.set()
    session = await scheduler.wait()

    assert session.state is PollingState.STOPPED
    assert session.request_count == 2
    assert not session.success_confirmed
    assert len(reporter.events) == emitted
    assert reporter.events[-1].last_message == "Polling stopped by user"
    assert session.in_flight_count == 0


# ---------------------------------------------------------------------------
# Invariants and other transitions
# ---------------------------------------------------------------------------

@pytest.mark.asyncio
async def test_in_flight_never_exceeds_bound_and_bound_only_shrinks():
    client = FakeCartClient(
        script=lambda n: AttemptOutcome(http_status=0, error="reset") if n % 2 else AttemptOutcome(http_status=429),
    )
    reporter = StatusReporter()
    scheduler = RecordingScheduler(
        client, PROVIDER, settings=_settings(max_concurrent=4, throttle_threshold=2, max_duration=0.4), reporter=reporter
    )

    session = await scheduler.run(TARGET)

    assert session.state is PollingState.STOPPED
    assert session.stop_reason is StopReason.TIMEOUT
    assert reporter.events[-1].last_message == "Polling stopped: max duration (0.4s) reached"

    assert scheduler.observed
    limits = [limit for _, limit in scheduler.observed]
    assert all(in_flight <= limit for in_flight, limit in scheduler.observed)
    assert all(a >= b for a, b in zip(limits, limits[1:]))
    assert min(limits) >= 1
    assert session.max_concurrent < 4


@pytest.mark.asyncio
async def test_overlap_fault_confirmed_by_cart_is_success():
    client = FakeCartClient(script=lambda n: AttemptOutcome(http_status=417, body=OVERLAP_BODY))
    client.items_count = 0
    scheduler, reporter = _scheduler(client, max_concurrent=1)

    async def cart_grew(credentials):
        client.cart_reads += 1
        return CartSnapshot(items_count=0 if client.cart_reads == 1 else 1)

    client.get_cart = cart_grew
    session = await scheduler.run(TARGET)

    assert session.state is PollingState.SUCCESS
    assert reporter.events[-1].last_message == OVERLAP_SUCCESS_MESSAGE


@pytest.mark.asyncio
async def test_overlap_fault_without_cart_change_is_conflict():
    client = FakeCartClient(script=lambda n: AttemptOutcome(http_status=417, body=OVERLAP_BODY))
    scheduler, reporter = _scheduler(client, max_concurrent=1)

    session = await scheduler.run(TARGET)

    assert session.state is PollingState.ERROR
    assert session.error_kind is ErrorKind.CONFLICT
    assert reporter.events[-1].last_message.startswith("Overlapping reservation")


@pytest.mark.asyncio
async def test_repeated_failures_warn_but_keep_polling():
    client = FakeCartClient(script=lambda n: AttemptOutcome(http_status=500))
    scheduler, reporter = _scheduler(client, max_concurrent=1, failure_warning_threshold=3, max_duration=5.0)

    await scheduler.start(TARGET)
    await _until(lambda: scheduler.session.failures.consecutive_failures >= 3)
    assert scheduler.state is PollingState.POLLING
    scheduler.stop()
    await scheduler.wait()

    messages = [e.last_message for e in reporter.events]
    assert "HTTP 500" in messages
    assert any(m.endswith("+ failures: consider checking cookies/site.") for m in messages)


@pytest.mark.asyncio
async def test_unexpected_attempt_error_is_reported_not_fatal():
    client = FakeCartClient(script=lambda n: RuntimeError("boom"))
    scheduler, reporter = _scheduler(client, max_concurrent=1)

    await scheduler.start(TARGET)
    await _until(lambda: any(e.last_message == "Error: boom" for e in reporter.events))
    assert scheduler.state is PollingState.POLLING
    scheduler.stop()
    session = await scheduler.wait()
    assert session.state is PollingState.STOPPED


@pytest.mark.asyncio
async def test_start_while_polling_is_rejected():
    client = FakeCartClient(script=lambda n: AttemptOutcome(http_status=500))
    scheduler, _ = _scheduler(client, max_concurrent=1)

    await scheduler.start(TARGET)
    with pytest.raises(PollingError):
        await scheduler.start(TARGET)
    scheduler.stop()
    await scheduler.wait()


@pytest.mark.asyncio
async def test_missing_credentials_leave_scheduler_idle():
    client = FakeCartClient(script=lambda n: AttemptOutcome(http_status=200))
    scheduler = PollingScheduler(client, StaticCredentialProvider("", ""), settings=_settings())

    with pytest.raises(CredentialsMissingError):
        await scheduler.start(TARGET)
    assert scheduler.state is PollingState.IDLE
    assert client.calls == 0


@pytest.mark.asyncio
async def test_new_session_starts_clean():
    client = FakeCartClient(script=lambda n: AttemptOutcome(http_status=401))
    scheduler, reporter = _scheduler(client, max_concurrent=1)
    first = await scheduler.run(TARGET)
    assert first.state is PollingState.ERROR

    client.script = lambda n: AttemptOutcome(http_status=200, body={})
    second = await scheduler.run(TARGET)

    assert second is not first
    assert second.state is PollingState.SUCCESS
    assert second.request_count == 1
    assert second.baseline.items_count == 0
    assert _states(reporter) == [PollingState.POLLING, PollingState.SUCCESS]
