"""Classification of add-item responses into polling decisions

The add-item endpoint is inconsistent about how it reports problems, so
classification looks at the fault code (``msgKey``) first and falls back
to matching the free-text message. Both the codes and the patterns below
are part of the contract with the server and are covered by tests.
"""

import re
from dataclasses import dataclass, replace
from typing import FrozenSet, Optional, Pattern, Tuple

from .models import (
    AttemptOutcome,
    ConfirmationKind,
    Decision,
    DecisionKind,
    ErrorKind,
    Fault,
)

# Operator-facing messages
AUTH_MESSAGE = "Auth error: invalid or expired session"
TOO_EARLY_MESSAGE = (
    "Too early: the reservation window is not open yet. "
    'Use the scheduled start ("Queue Cart") flow instead.'
)
INVENTORY_CLAIMED_MESSAGE = "Already reserved: One or more of the Dates not available."
OVERLAP_MESSAGE = "Overlapping reservation: You already have a reservation for these dates."
VALIDATION_MESSAGE = "Validation error from Reserve America."
UNAVAILABLE_MESSAGE = "Already reserved: Inventory not available."
CANDIDATE_SUCCESS_MESSAGE = "Got HTTP 200, confirming via cart..."
OVERLAP_CHECK_MESSAGE = "Overlapping reservation fault, verifying via cart..."
TRANSPORT_MESSAGE = "Network throttle (HTTP 000)"
RATE_LIMIT_MESSAGE = "Rate limited (HTTP 429)"

# Free-text fallback on the top-level ``message`` of non-417 responses
UNAVAILABLE_PATTERN = re.compile(r"unavailable|sold out|not available", re.IGNORECASE)


@dataclass(frozen=True)
class FaultRule:
    """Maps a 417 fault to a decision by msgKey or by defaultMessage pattern"""

    name: str
    msg_keys: FrozenSet[str]
    patterns: Tuple[Pattern, ...]
    decision: Decision

    def matches(self, fault: Fault) -> bool:
        if fault.msg_key in self.msg_keys:
            return True
        return any(p.search(fault.default_message) for p in self.patterns)


# Evaluated in order; the first matching rule wins.
FAULT_RULES: Tuple[FaultRule, ...] = (
    FaultRule(
        name="too_early",
        msg_keys=frozenset({"R1-V-100017.error", "R6-V-100013.error"}),
        patterns=(
            re.compile(r"within 9 Month", re.IGNORECASE),
            re.compile(r"cannot be reserved at this time", re.IGNORECASE),
            re.compile(r"try again later at", re.IGNORECASE),
        ),
        decision=Decision(
            kind=DecisionKind.TERMINAL_ERROR,
            message=TOO_EARLY_MESSAGE,
            error_kind=ErrorKind.TOO_EARLY,
        ),
    ),
    FaultRule(
        name="inventory_claimed",
        msg_keys=frozenset({"inventory.exception"}),
        patterns=(),
        decision=Decision(
            kind=DecisionKind.TERMINAL_ERROR,
            message=INVENTORY_CLAIMED_MESSAGE,
            error_kind=ErrorKind.CONFLICT,
        ),
    ),
    FaultRule(
        name="overlapping_reservation",
        msg_keys=frozenset({"R12-V-100007.error"}),
        patterns=(re.compile(r"Maximum number of overlapping", re.IGNORECASE),),
        decision=Decision(
            kind=DecisionKind.NEEDS_CONFIRMATION,
            message=OVERLAP_CHECK_MESSAGE,
            confirmation=ConfirmationKind.AMBIGUOUS_OVERLAP,
        ),
    ),
)

# Unmatched 417 faults
FALLBACK_FAULT_DECISION = Decision(
    kind=DecisionKind.TERMINAL_ERROR,
    message=VALIDATION_MESSAGE,
    error_kind=ErrorKind.VALIDATION,
)


def match_fault(fault: Fault) -> Optional[FaultRule]:
    """Return the first rule matching ``fault``, or None"""
    for rule in FAULT_RULES:
        if rule.matches(fault):
            return rule
    return None


def _signals_failure(outcome: AttemptOutcome) -> bool:
    return isinstance(outcome.body, dict) and outcome.body.get("success") is False


def classify_outcome(outcome: AttemptOutcome) -> Decision:
    """Classify one attempt outcome. Pure: no I/O, no state."""
    status = outcome.http_status

    if outcome.is_transport_failure:
        return Decision(
            kind=DecisionKind.THROTTLE_TRANSPORT,
            message=TRANSPORT_MESSAGE,
            server_message=outcome.error,
        )

    if status == 429:
        return Decision(kind=DecisionKind.THROTTLE_RATE, message=RATE_LIMIT_MESSAGE)

    if status == 200 and not _signals_failure(outcome):
        return Decision(
            kind=DecisionKind.NEEDS_CONFIRMATION,
            message=CANDIDATE_SUCCESS_MESSAGE,
            confirmation=ConfirmationKind.CANDIDATE_SUCCESS,
        )

    if status in (401, 403):
        return Decision(
            kind=DecisionKind.TERMINAL_ERROR,
            message=AUTH_MESSAGE,
            error_kind=ErrorKind.AUTH,
            server_message=outcome.server_message or None,
        )

    fault = outcome.fault
    if status == 417 and fault is not None:
        server_message = (
            fault.default_message
            or fault.message_template
            or outcome.body_message
            or f"Unknown error from Reserve America (HTTP {status})"
        )
        rule = match_fault(fault)
        decision = rule.decision if rule else FALLBACK_FAULT_DECISION
        return replace(decision, server_message=server_message)

    body_message = outcome.body_message
    if status == 409 or UNAVAILABLE_PATTERN.search(body_message):
        return Decision(
            kind=DecisionKind.TERMINAL_ERROR,
            message=UNAVAILABLE_MESSAGE,
            error_kind=ErrorKind.CONFLICT,
            server_message=body_message or f"Inventory not available (HTTP {status})",
        )

    return Decision(
        kind=DecisionKind.RETRY,
        message=body_message or f"HTTP {status}",
        server_message=body_message or None,
    )
