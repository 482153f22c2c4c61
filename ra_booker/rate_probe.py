"""Throttle probe: measure how HTTP 000 / 429 respond to concurrency"""

import asyncio
import time
from collections import Counter
from dataclasses import dataclass, field
from typing import Dict, List, Optional, Set

from loguru import logger

from .models import AttemptRequest

HISTOGRAM_KEYS = (0, 200, 417, 429, 400, 401, 403, 404, 500, 503)
MAX_ERROR_BODIES = 5
ERROR_BODY_CHARS = 600


@dataclass
class RateProbeReport:
    """What a probe run observed"""

    sent: int = 0
    done: int = 0
    histogram: Counter = field(default_factory=Counter)
    first_error_bodies: List[Dict] = field(default_factory=list)
    duration: float = 0.0
    final_concurrency: int = 0

    def to_dict(self) -> Dict:
        return {
            "sent": self.sent,
            "done": self.done,
            "duration": round(self.duration, 3),
            "final_concurrency": self.final_concurrency,
            "histogram": {str(k): v for k, v in sorted(self.histogram.items())},
            "first_error_bodies": self.first_error_bodies,
        }


def format_histogram(histogram: Counter) -> str:
    known = " ".join(f"{k:03d}:{histogram.get(k, 0)}" for k in HISTOGRAM_KEYS)
    other = sum(v for k, v in histogram.items() if k not in HISTOGRAM_KEYS)
    return f"{known} other={other}"


async def run_rate_probe(
    client,
    request: AttemptRequest,
    concurrency: int = 20,
    duration: float = 15.0,
    cadence: float = 0.0,
    ramp_to: Optional[int] = None,
    ramp_every: float = 0.0,
    ramp_step: int = 0,
) -> RateProbeReport:
    """
    Fire add-item requests for ``duration`` seconds and tally status codes.

    Nothing is classified or confirmed: this is a measurement tool for
    tuning cadence and concurrency, not a booking session. Note that a
    200 here really does put the site in the cart.

    Args:
        client: Anything with ``async add_item(request) -> AttemptOutcome``
        request: Payload sent on every attempt
        concurrency: Starting cap on in-flight requests
        duration: Seconds to keep dispatching
        cadence: Seconds between top-ups; 0 fills every free slot each millisecond,
            >0 sends one request per tick
        ramp_to: Upper concurrency limit when ramping
        ramp_every: Seconds between ramp steps (0 disables ramping)
        ramp_step: Concurrency added per ramp step

    Returns:
        RateProbeReport
    """
    report = RateProbeReport(final_concurrency=concurrency)
    tasks: Set[asyncio.Task] = set()
    in_flight = 0
    limit = concurrency
    ramp_to = ramp_to or concurrency
    ramping = ramp_every > 0 and ramp_step > 0 and ramp_to > concurrency

    async def send_once() -> None:
        nonlocal in_flight
        try:
            outcome = await client.add_item(request)
            report.histogram[outcome.http_status] += 1
            if outcome.http_status >= 400 and len(report.first_error_bodies) < MAX_ERROR_BODIES:
                report.first_error_bodies.append(
                    {"status": outcome.http_status, "body": outcome.text[:ERROR_BODY_CHARS]}
                )
        except Exception as e:
            logger.debug(f"Probe request failed: {e}")
            report.histogram[0] += 1
        finally:
            in_flight -= 1
            report.done += 1

    def dispatch() -> None:
        nonlocal in_flight
        in_flight += 1
        report.sent += 1
        task = asyncio.create_task(send_once())
        tasks.add(task)
        task.add_done_callback(tasks.discard)

    logger.info(
        f"🔬 Rate probe: concurrency={concurrency} duration={duration:g}s "
        f"cadence={cadence * 1000:.0f}ms"
        + (f" ramp→{ramp_to} (+{ramp_step} every {ramp_every:g}s)" if ramping else "")
    )

    start = time.monotonic()
    next_log = start + 1.0
    next_ramp = start + ramp_every if ramping else None
    tick = cadence if cadence > 0 else 0.001

    while True:
        now = time.monotonic()
        if now - start >= duration:
            break

        if next_ramp is not None and now >= next_ramp:
            limit = min(ramp_to, limit + ramp_step)
            logger.info(f"Ramping concurrency -> {limit}")
            next_ramp = None if limit >= ramp_to else next_ramp + ramp_every

        free = max(0, limit - in_flight)
        for _ in range(min(free, 1) if cadence > 0 else free):
            dispatch()

        if now >= next_log:
            logger.info(
                f"[t={now - start:.1f}s] inFlight={in_flight} sent={report.sent} "
                f"done={report.done} | {format_histogram(report.histogram)}"
            )
            next_log += 1.0

        await asyncio.sleep(tick)

    if tasks:
        logger.debug(f"Draining {len(tasks)} in-flight probe requests")
        await asyncio.gather(*list(tasks), return_exceptions=True)

    report.duration = time.monotonic() - start
    report.final_concurrency = limit

    logger.info("=" * 60)
    logger.info(f"Probe summary: sent={report.sent} done={report.done} in {report.duration:.1f}s")
    logger.info(f"   {format_histogram(report.histogram)}")
    for i, sample in enumerate(report.first_error_bodies, 1):
        logger.info(f"--- #{i} [{sample['status']}] ---")
        logger.info(sample["body"])
    logger.info("=" * 60)
    return report
