"""
Extraction session state machine.

    uploaded → extracting → extracted → mapping → validated → approved
                  └──────────── any non-approved ─────────────→ rejected

Sessions only move forward. Re-running a stage is allowed where that stage
recomputes its derived output (mapping, validation); every other repeat is
an InvalidTransition.
"""
from typing import Dict, FrozenSet

from rebarflow.services.errors import InvalidTransition

UPLOADED = "uploaded"
EXTRACTING = "extracting"
EXTRACTED = "extracted"
MAPPING = "mapping"
VALIDATED = "validated"
APPROVED = "approved"
REJECTED = "rejected"

FORWARD_ORDER = (UPLOADED, EXTRACTING, EXTRACTED, MAPPING, VALIDATED, APPROVED)
ALL_STATES = FORWARD_ORDER + (REJECTED,)
TERMINAL_STATES = frozenset({APPROVED, REJECTED})

# target → states it may be entered from
ALLOWED_SOURCES: Dict[str, FrozenSet[str]] = {
    EXTRACTING: frozenset({UPLOADED}),
    EXTRACTED: frozenset({UPLOADED, EXTRACTING}),
    MAPPING: frozenset({EXTRACTED, MAPPING}),
    VALIDATED: frozenset({MAPPING, VALIDATED}),
    APPROVED: frozenset({VALIDATED}),
    REJECTED: frozenset({UPLOADED, EXTRACTING, EXTRACTED, MAPPING, VALIDATED}),
}

# Row status mirrors the session stage it was last touched by
ROW_STATUS_FOR = {
    EXTRACTED: "raw",
    MAPPING: "mapped",
    VALIDATED: "validated",
    APPROVED: "approved",
    REJECTED: "rejected",
}


def can_transition(current: str, target: str) -> bool:
    return current in ALLOWED_SOURCES.get(target, frozenset())


def assert_transition(current: str, target: str) -> None:
    """Raise InvalidTransition unless `current → target` is a legal move."""
    if target not in ALLOWED_SOURCES:
        raise InvalidTransition(current, target, f"'{target}' is not a reachable session state")
    if not can_transition(current, target):
        if current == APPROVED:
            raise InvalidTransition(current, target, "Session is already approved")
        if current == REJECTED:
            raise InvalidTransition(current, target, "Session was rejected")
        raise InvalidTransition(current, target)


def stage_index(status: str) -> int:
    """Position in the forward order; rejected sorts after everything."""
    if status == REJECTED:
        return len(FORWARD_ORDER)
    return FORWARD_ORDER.index(status)
