"""Data models and enums for the cart poller"""

import time
from dataclasses import asdict, dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any, Dict, List, Optional, Tuple

from .config import (
    DEFAULT_CADENCE,
    DEFAULT_MAX_CONCURRENT,
    DEFAULT_MAX_DURATION,
    DEFAULT_QUANTITY,
    DEFAULT_REQUEST_TIMEOUT,
    FAILURE_WARNING_THRESHOLD,
    THROTTLE_PAUSE_MAX,
    THROTTLE_PAUSE_MIN,
    THROTTLE_THRESHOLD,
)


class PollingState(Enum):
    """Polling session states"""

    IDLE = "idle"
    POLLING = "polling"
    SUCCESS = "success"  # Terminal
    STOPPED = "stopped"  # Terminal
    ERROR = "error"  # Terminal

    @property
    def is_terminal(self) -> bool:
        return self in (PollingState.SUCCESS, PollingState.STOPPED, PollingState.ERROR)


class StopReason(Enum):
    """Why a session ended up in STOPPED"""

    USER = "user"
    TIMEOUT = "timeout"


class DecisionKind(Enum):
    """What to do with one attempt outcome"""

    RETRY = "retry"  # Count the failure, keep polling
    THROTTLE_TRANSPORT = "throttle-transport"  # HTTP 000: pause, maybe shrink
    THROTTLE_RATE = "throttle-rate"  # HTTP 429: pause, maybe shrink
    NEEDS_CONFIRMATION = "needs-confirmation"  # Verify against the cart
    TERMINAL_ERROR = "terminal-error"


class ErrorKind(Enum):
    """Terminal failure categories"""

    AUTH = "auth"
    TOO_EARLY = "too-early"
    CONFLICT = "conflict"
    VALIDATION = "validation"


class ConfirmationKind(Enum):
    """Which ambiguous outcome is waiting on a cart read"""

    CANDIDATE_SUCCESS = "candidate-success"  # HTTP 200
    AMBIGUOUS_OVERLAP = "ambiguous-overlap"  # HTTP 417 overlapping reservation


@dataclass
class PollingSettings:
    """Tunables for one polling session (all durations in seconds)"""

    cadence: float = DEFAULT_CADENCE
    max_concurrent: int = DEFAULT_MAX_CONCURRENT
    max_duration: float = DEFAULT_MAX_DURATION
    throttle_pause_min: float = THROTTLE_PAUSE_MIN
    throttle_pause_max: float = THROTTLE_PAUSE_MAX
    throttle_threshold: int = THROTTLE_THRESHOLD
    failure_warning_threshold: int = FAILURE_WARNING_THRESHOLD
    request_timeout: float = DEFAULT_REQUEST_TIMEOUT

    def __post_init__(self):
        if self.cadence <= 0:
            raise ValueError(f"cadence must be positive, got {self.cadence}")
        if self.max_concurrent < 1:
            raise ValueError(f"max_concurrent must be >= 1, got {self.max_concurrent}")
        if self.max_duration <= 0:
            raise ValueError(f"max_duration must be positive, got {self.max_duration}")
        if not 0 <= self.throttle_pause_min <= self.throttle_pause_max:
            raise ValueError(
                f"throttle pause bounds invalid: "
                f"[{self.throttle_pause_min}, {self.throttle_pause_max}]"
            )
        if self.throttle_threshold < 1:
            raise ValueError(f"throttle_threshold must be >= 1, got {self.throttle_threshold}")
        if self.failure_warning_threshold < 1:
            raise ValueError(
                f"failure_warning_threshold must be >= 1, got {self.failure_warning_threshold}"
            )
        if self.request_timeout <= 0:
            raise ValueError(f"request_timeout must be positive, got {self.request_timeout}")


@dataclass(frozen=True)
class Credentials:
    """Session material handed over by the browser layer"""

    id_token: str
    a1_data: str


@dataclass(frozen=True)
class BookingTarget:
    """The site and stay being raced for"""

    contract_code: str
    facility_id: str
    site_id: str
    arrival_date: str  # YYYY-MM-DD
    nights: int


@dataclass(frozen=True)
class AttemptRequest:
    """Immutable payload for one add-item attempt"""

    target: BookingTarget
    credentials: Credentials
    quantity: int = DEFAULT_QUANTITY

    def to_payload(self) -> Dict[str, Any]:
        """Build the add-item body (key order is part of the wire format)"""
        return {
            "contractCode": self.target.contract_code,
            "facilityID": self.target.facility_id,
            "siteID": self.target.site_id,
            "arrivalDate": self.target.arrival_date,
            "units": self.target.nights,
            "quantity": self.quantity,
            "primaryItemID": None,
            "primaryResNum": None,
        }


@dataclass(frozen=True)
class Fault:
    """One entry of the ``faults`` array on a 417 response"""

    msg_key: str = ""
    default_message: str = ""
    message_template: str = ""

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "Fault":
        return cls(
            msg_key=str(data.get("msgKey") or ""),
            default_message=str(data.get("defaultMessage") or ""),
            message_template=str(data.get("messageTemplate") or ""),
        )


@dataclass
class AttemptOutcome:
    """Result of one attempt. ``http_status == 0`` means transport failure."""

    http_status: int
    body: Dict[str, Any] = field(default_factory=dict)
    text: str = ""
    error: Optional[str] = None
    response_time: float = 0.0

    @property
    def is_transport_failure(self) -> bool:
        return self.http_status == 0

    @property
    def faults(self) -> List[Fault]:
        raw = self.body.get("faults") if isinstance(self.body, dict) else None
        if not isinstance(raw, list):
            return []
        return [Fault.from_dict(f) for f in raw if isinstance(f, dict)]

    @property
    def fault(self) -> Optional[Fault]:
        faults = self.faults
        return faults[0] if faults else None

    @property
    def body_message(self) -> str:
        if isinstance(self.body, dict) and self.body.get("message"):
            return str(self.body["message"])
        return ""

    @property
    def server_message(self) -> str:
        """Best human-readable message the server sent, or ''"""
        fault = self.fault
        if fault:
            return fault.default_message or fault.message_template or self.body_message
        if self.body_message:
            return self.body_message
        return self.text[:200] if self.text else ""


@dataclass(frozen=True)
class Decision:
    """Classification of an attempt outcome"""

    kind: DecisionKind
    message: str
    error_kind: Optional[ErrorKind] = None
    confirmation: Optional[ConfirmationKind] = None
    server_message: Optional[str] = None

    @property
    def is_terminal(self) -> bool:
        return self.kind is DecisionKind.TERMINAL_ERROR


@dataclass(frozen=True)
class CartSnapshot:
    """Current holdings as reported by the shopping cart endpoint"""

    items_count: int = 0
    added_items: Tuple[Dict[str, Any], ...] = ()

    @classmethod
    def from_body(cls, body: Dict[str, Any]) -> "CartSnapshot":
        try:
            count = int(body.get("itemsCount") or 0)
        except (TypeError, ValueError):
            count = 0
        changes = body.get("lastChanges") or {}
        added = changes.get("addedItems") if isinstance(changes, dict) else None
        items = tuple(i for i in (added or []) if isinstance(i, dict))
        return cls(items_count=count, added_items=items)


@dataclass
class ThrottleState:
    """Consecutive throttle signals for the running session"""

    consecutive_transport_failures: int = 0
    consecutive_rate_limited: int = 0
    reductions: int = 0

    def reset(self) -> None:
        self.consecutive_transport_failures = 0
        self.consecutive_rate_limited = 0


@dataclass
class FailureState:
    """Consecutive non-throttle failures (observational only)"""

    consecutive_failures: int = 0

    def reset(self) -> None:
        self.consecutive_failures = 0


@dataclass
class StatusEvent:
    """Operator-facing snapshot of a session"""

    state: PollingState
    request_count: int
    elapsed: float
    last_message: str
    last_http_status: Optional[int] = None
    server_message: Optional[str] = None
    stop_reason: Optional[StopReason] = None
    error_kind: Optional[ErrorKind] = None
    max_duration: Optional[float] = None
    timestamp: datetime = field(default_factory=datetime.now)

    @property
    def signature(self) -> Tuple[str, Optional[int], str]:
        return (self.state.value, self.last_http_status, self.last_message)

    @property
    def display_message(self) -> str:
        return self.server_message or self.last_message or self.state.value

    def to_dict(self) -> Dict[str, Any]:
        data = asdict(self)
        data["state"] = self.state.value
        data["stop_reason"] = self.stop_reason.value if self.stop_reason else None
        data["error_kind"] = self.error_kind.value if self.error_kind else None
        data["timestamp"] = self.timestamp.isoformat()
        return data


@dataclass
class LogEntry:
    """One line of the activity log shown to the operator"""

    id: int
    source: str
    message: str
    kind: str = ""
    state: str = ""
    http_status: Optional[int] = None
    sequence: Optional[int] = None
    ts: datetime = field(default_factory=datetime.now)

    def to_dict(self) -> Dict[str, Any]:
        data = asdict(self)
        data["ts"] = self.ts.isoformat()
        return data


@dataclass
class PollingSession:
    """Everything one acquisition campaign mutates, in one place"""

    settings: PollingSettings = field(default_factory=PollingSettings)
    state: PollingState = PollingState.IDLE
    started_at: Optional[datetime] = None
    started_monotonic: float = 0.0
    ended_at: Optional[datetime] = None
    ended_monotonic: float = 0.0
    request_count: int = 0
    in_flight_count: int = 0
    peak_in_flight: int = 0
    max_concurrent: int = 0
    stop_requested: bool = False
    success_confirmed: bool = False  # Latch: never reverts within a session
    baseline: CartSnapshot = field(default_factory=CartSnapshot)
    throttle: ThrottleState = field(default_factory=ThrottleState)
    failures: FailureState = field(default_factory=FailureState)
    last_http_status: Optional[int] = None
    last_message: str = ""
    server_message: Optional[str] = None
    stop_reason: Optional[StopReason] = None
    error_kind: Optional[ErrorKind] = None

    def __post_init__(self):
        if not self.max_concurrent:
            self.max_concurrent = self.settings.max_concurrent

    @property
    def cadence(self) -> float:
        return self.settings.cadence

    @property
    def max_duration(self) -> float:
        return self.settings.max_duration

    @property
    def elapsed(self) -> float:
        if not self.started_monotonic:
            return 0.0
        end = self.ended_monotonic or time.monotonic()
        return end - self.started_monotonic

    def summary(self) -> Dict[str, Any]:
        return {
            "state": self.state.value,
            "started_at": self.started_at.isoformat() if self.started_at else None,
            "ended_at": self.ended_at.isoformat() if self.ended_at else None,
            "request_count": self.request_count,
            "max_concurrent": self.max_concurrent,
            "initial_max_concurrent": self.settings.max_concurrent,
            "concurrency_reductions": self.throttle.reductions,
            "peak_in_flight": self.peak_in_flight,
            "baseline_items_count": self.baseline.items_count,
            "last_http_status": self.last_http_status,
            "last_message": self.last_message,
            "server_message": self.server_message,
            "stop_reason": self.stop_reason.value if self.stop_reason else None,
            "error_kind": self.error_kind.value if self.error_kind else None,
        }
