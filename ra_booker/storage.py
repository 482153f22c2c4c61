"""Session report output with async I/O"""

from datetime import datetime
from pathlib import Path
from typing import Any, Dict, Iterable, Optional

import aiofiles
import orjson
from loguru import logger

from .models import BookingTarget, LogEntry, PollingSession, StatusEvent


def report_filename(target: Optional[BookingTarget], timestamp: str) -> str:
    if target is None:
        return f"session_{timestamp}.json"
    return f"session_{target.facility_id}_{target.site_id}_{target.arrival_date}_{timestamp}.json"


def build_session_report(
    session: PollingSession,
    target: Optional[BookingTarget],
    events: Iterable[StatusEvent],
    log_entries: Iterable[LogEntry],
) -> Dict[str, Any]:
    """Assemble the JSON-ready report for one session"""
    return {
        "target": (
            {
                "contract_code": target.contract_code,
                "facility_id": target.facility_id,
                "site_id": target.site_id,
                "arrival_date": target.arrival_date,
                "nights": target.nights,
            }
            if target
            else None
        ),
        "settings": {
            "cadence": session.settings.cadence,
            "max_concurrent": session.settings.max_concurrent,
            "max_duration": session.settings.max_duration,
            "throttle_pause_min": session.settings.throttle_pause_min,
            "throttle_pause_max": session.settings.throttle_pause_max,
            "throttle_threshold": session.settings.throttle_threshold,
        },
        "summary": session.summary(),
        "elapsed_seconds": round(session.elapsed, 3),
        "events": [event.to_dict() for event in events],
        "activity_log": [entry.to_dict() for entry in log_entries],
    }


async def save_session_report(
    session: PollingSession,
    target: Optional[BookingTarget],
    events: Iterable[StatusEvent],
    log_entries: Iterable[LogEntry],
    output_dir: Path,
    timestamp: Optional[str] = None,
) -> Path:
    """
    Write the session report without blocking the event loop.

    Args:
        session: Finished (or running) polling session
        target: Site that was polled for
        events: Status events that reached the observer
        log_entries: Activity log entries
        output_dir: Directory for the report (created if missing)
        timestamp: Filename timestamp, defaults to now

    Returns:
        Path to the written file
    """
    output_dir.mkdir(parents=True, exist_ok=True)
    timestamp = timestamp or datetime.now().strftime("%Y%m%d_%H%M%S")
    report_file = output_dir / report_filename(target, timestamp)

    json_bytes = orjson.dumps(
        build_session_report(session, target, events, log_entries),
        option=orjson.OPT_INDENT_2,
    )

    async with aiofiles.open(report_file, "wb") as f:
        await f.write(json_bytes)

    logger.info(f"💾 Saved session report: {report_file} ({len(json_bytes) / 1024:.1f}KB)")
    return report_file
