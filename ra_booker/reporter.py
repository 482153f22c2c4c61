"""Status event deduplication and the operator activity log"""

import itertools
from collections import deque
from typing import Callable, Deque, List, Optional, Tuple

from loguru import logger

from .config import LOG_LIMIT
from .models import AttemptOutcome, AttemptRequest, LogEntry, PollingState, StatusEvent

StatusCallback = Callable[[StatusEvent], None]
LogCallback = Callable[[LogEntry], None]
NavigateCallback = Callable[[], None]


class StatusReporter:
    """
    Hands status events to the observer, one per distinct signature.

    The signature is ``(state, last_http_status, last_message)``. Once a
    SUCCESS event has gone out, anything else is dropped until the next
    ``begin_session()`` so the operator never sees a win overwritten by
    a late error from an attempt that was still in flight.

    Also keeps the bounded activity log (requests, responses and status
    changes) the operator can browse.
    """

    def __init__(
        self,
        on_status: Optional[StatusCallback] = None,
        on_log: Optional[LogCallback] = None,
        on_navigate: Optional[NavigateCallback] = None,
        log_limit: int = LOG_LIMIT,
    ):
        """
        Initialize status reporter.

        Args:
            on_status: Called with each emitted StatusEvent
            on_log: Called with each new activity log entry
            on_navigate: Called once per session when a win is confirmed
            log_limit: Maximum activity log entries kept (oldest dropped)
        """
        self.on_status = on_status
        self.on_log = on_log
        self.on_navigate = on_navigate
        self.entries: Deque[LogEntry] = deque(maxlen=log_limit)
        self.events: List[StatusEvent] = []
        self._ids = itertools.count(1)
        self._last_signature: Optional[Tuple] = None
        self._success_emitted = False
        self._navigated = False

    def begin_session(self) -> None:
        """Forget the previous session's signature and success latch"""
        self.events = []
        self._last_signature = None
        self._success_emitted = False
        self._navigated = False

    @property
    def success_emitted(self) -> bool:
        return self._success_emitted

    def emit(self, event: StatusEvent) -> bool:
        """
        Emit ``event`` unless it is a duplicate or follows a success.

        Returns:
            True if the event reached the observer
        """
        if self._success_emitted and event.state is not PollingState.SUCCESS:
            logger.debug(f"Dropping {event.state.value} update after success: {event.last_message}")
            return False

        signature = event.signature
        if signature == self._last_signature:
            return False
        self._last_signature = signature

        if event.state is PollingState.SUCCESS:
            self._success_emitted = True

        self.events.append(event)
        self.record(
            source="polling",
            kind="status",
            state=event.state.value,
            http_status=event.last_http_status,
            message=event.display_message,
        )

        if self.on_status:
            try:
                self.on_status(event)
            except Exception as e:
                logger.error(f"Status observer failed: {e}")
        return True

    def record(
        self,
        source: str,
        message: str,
        kind: str = "",
        state: str = "",
        http_status: Optional[int] = None,
        sequence: Optional[int] = None,
    ) -> LogEntry:
        """Append one activity log entry"""
        entry = LogEntry(
            id=next(self._ids),
            source=source,
            message=message,
            kind=kind,
            state=state,
            http_status=http_status,
            sequence=sequence,
        )
        self.entries.append(entry)
        if self.on_log:
            try:
                self.on_log(entry)
            except Exception as e:
                logger.error(f"Log observer failed: {e}")
        return entry

    def log_request(self, sequence: int, request: AttemptRequest) -> LogEntry:
        target = request.target
        return self.record(
            source="polling",
            kind="request",
            sequence=sequence,
            message=(
                f"Request #{sequence} additem {target.arrival_date} · nights={target.nights} "
                f"· facility={target.facility_id} · site={target.site_id}"
            ),
        )

    def log_response(self, sequence: int, outcome: AttemptOutcome, source: str = "polling") -> LogEntry:
        if outcome.is_transport_failure:
            return self.record(
                source=source,
                kind="response",
                sequence=sequence,
                http_status=0,
                message=f"Response #{sequence} ERROR — {outcome.error or 'transport failure'}",
            )
        base = outcome.server_message or f"HTTP {outcome.http_status}"
        return self.record(
            source=source,
            kind="response",
            sequence=sequence,
            http_status=outcome.http_status,
            message=f"Response #{sequence} HTTP {outcome.http_status} — {base}",
        )

    def navigate_to_result(self) -> bool:
        """Fire the one-shot "show the cart" signal"""
        if self._navigated:
            return False
        self._navigated = True
        logger.info("🛒 Navigating to cart")
        if self.on_navigate:
            try:
                self.on_navigate()
            except Exception as e:
                logger.error(f"Navigation observer failed: {e}")
        return True

    def clear_log(self) -> None:
        self.entries.clear()
