import random

import pytest

from ra_booker.failure_counter import FailureCounter
from ra_booker.models import DecisionKind, PollingSession, PollingSettings
from ra_booker.slots import ConcurrencySlotManager
from ra_booker.throttle import ThrottleController


def _controller(max_concurrent=3, threshold=10, pause=(1.0, 2.0)):
    settings = PollingSettings(
        max_concurrent=max_concurrent,
        throttle_threshold=threshold,
        throttle_pause_min=pause[0],
        throttle_pause_max=pause[1],
    )
    session = PollingSession(settings=settings)
    slots = ConcurrencySlotManager(session)
    sleeps = []

    async def fake_sleep(seconds):
        sleeps.append(seconds)

    controller = ThrottleController(session, slots, sleep=fake_sleep, rng=random.Random(7))
    return session, slots, controller, sleeps


# ---------------------------------------------------------------------------
# Slots
# ---------------------------------------------------------------------------

def test_slots_never_exceed_limit():
    session = PollingSession(settings=PollingSettings(max_concurrent=2))
    slots = ConcurrencySlotManager(session)
    assert slots.available() == 2
    assert slots.acquire()
    assert slots.acquire()
    assert not slots.acquire()
    assert slots.available() == 0
    assert session.peak_in_flight == 2

    slots.release()
    assert slots.in_flight == 1
    assert slots.available() == 1


def test_slot_release_underflow_is_ignored():
    session = PollingSession(settings=PollingSettings(max_concurrent=1))
    slots = ConcurrencySlotManager(session)
    slots.release()
    assert slots.in_flight == 0


def test_shrink_stops_at_one():
    session = PollingSession(settings=PollingSettings(max_concurrent=2))
    slots = ConcurrencySlotManager(session)
    assert slots.shrink()
    assert slots.limit == 1
    assert not slots.shrink()
    assert slots.limit == 1


def test_available_is_zero_when_limit_shrinks_below_in_flight():
    session = PollingSession(settings=PollingSettings(max_concurrent=3))
    slots = ConcurrencySlotManager(session)
    for _ in range(3):
        slots.acquire()
    slots.shrink()
    assert slots.available() == 0
    assert not slots.acquire()


# ---------------------------------------------------------------------------
# Throttle
# ---------------------------------------------------------------------------

def test_pause_sampled_within_bounds():
    _, _, controller, _ = _controller(pause=(1.0, 2.0))
    for _ in range(200):
        assert 1.0 <= controller.sample_pause() <= 2.0


@pytest.mark.asyncio
async def test_pause_uses_injected_sleep():
    _, _, controller, sleeps = _controller()
    await controller.pause(1.5)
    assert sleeps == [1.5]


def test_streaks_are_independent():
    session, _, controller, _ = _controller()
    assert controller.register(DecisionKind.THROTTLE_RATE) == 1
    assert controller.register(DecisionKind.THROTTLE_RATE) == 2
    assert controller.register(DecisionKind.THROTTLE_TRANSPORT) == 1
    assert session.throttle.consecutive_rate_limited == 2
    assert session.throttle.consecutive_transport_failures == 1


def test_register_rejects_non_throttle_kind():
    _, _, controller, _ = _controller()
    with pytest.raises(ValueError):
        controller.register(DecisionKind.RETRY)


@pytest.mark.asyncio
async def test_reduction_at_threshold_resets_streak():
    session, slots, controller, _ = _controller(max_concurrent=3, threshold=10)
    for _ in range(9):
        controller.register(DecisionKind.THROTTLE_RATE)
        assert not await controller.maybe_reduce(DecisionKind.THROTTLE_RATE)
    assert slots.limit == 3

    controller.register(DecisionKind.THROTTLE_RATE)
    assert await controller.maybe_reduce(DecisionKind.THROTTLE_RATE)
    assert slots.limit == 2
    assert session.throttle.consecutive_rate_limited == 0
    assert session.throttle.reductions == 1


@pytest.mark.asyncio
async def test_reduction_never_below_one():
    session, slots, controller, _ = _controller(max_concurrent=1, threshold=2)
    for _ in range(2):
        controller.register(DecisionKind.THROTTLE_TRANSPORT)
    assert not await controller.maybe_reduce(DecisionKind.THROTTLE_TRANSPORT)
    assert slots.limit == 1
    # Streak still restarts
    assert session.throttle.consecutive_transport_failures == 0


def test_success_clears_both_streaks_but_keeps_reduced_limit():
    session, slots, controller, _ = _controller()
    slots.shrink()
    controller.register(DecisionKind.THROTTLE_RATE)
    controller.register(DecisionKind.THROTTLE_TRANSPORT)
    controller.record_success()
    assert session.throttle.consecutive_rate_limited == 0
    assert session.throttle.consecutive_transport_failures == 0
    assert slots.limit == 2


@pytest.mark.asyncio
async def test_reduction_made_before_pause_survives_a_success():
    session, slots, controller, _ = _controller(max_concurrent=3, threshold=2)

    async def success_during_pause(seconds):
        controller.record_success()

    controller.sleep = success_during_pause
    controller.register(DecisionKind.THROTTLE_RATE)
    controller.register(DecisionKind.THROTTLE_RATE)
    assert await controller.maybe_reduce(DecisionKind.THROTTLE_RATE)
    await controller.pause(controller.sample_pause())

    assert slots.limit == 2
    assert session.throttle.reductions == 1
    assert session.throttle.consecutive_rate_limited == 0


# ---------------------------------------------------------------------------
# Failure counter
# ---------------------------------------------------------------------------

def test_failure_counter_ignores_throttle_statuses():
    session = PollingSession(settings=PollingSettings(failure_warning_threshold=3))
    failures = FailureCounter(session)
    assert failures.register_failure(0) == 0
    assert failures.register_failure(429) == 0
    assert failures.register_failure(500) == 1


def test_failure_counter_warning_message():
    session = PollingSession(settings=PollingSettings(failure_warning_threshold=3))
    failures = FailureCounter(session)
    for _ in range(2):
        failures.register_failure(500)
    assert failures.message("HTTP 500") == "HTTP 500"

    failures.register_failure(500)
    assert failures.reached_threshold
    assert failures.message("HTTP 500") == "3+ failures: consider checking cookies/site."

    failures.record_success()
    assert failures.count == 0
    assert failures.message("HTTP 500") == "HTTP 500"
