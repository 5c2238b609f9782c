# File: src/fleetpark/domain/state_machine.py
"""
Reservation state machine

Static graph of allowed status transitions. Lookups are pure; the graph is
an immutable mapping so nothing can widen it at runtime.

    PENDING -> CONFIRMED | CANCELLED
    CONFIRMED -> IN_PROGRESS | CANCELLED
    IN_PROGRESS -> COMPLETED | CANCELLED
    COMPLETED, CANCELLED -> (terminal)
"""

from types import MappingProxyType
from typing import FrozenSet, Mapping

from .exceptions import InvalidTransitionError
from .models import ReservationStatus


INITIAL_STATUS = ReservationStatus.PENDING

TRANSITIONS: Mapping[ReservationStatus, FrozenSet[ReservationStatus]] = MappingProxyType({
    ReservationStatus.PENDING: frozenset({
        ReservationStatus.CONFIRMED,
        ReservationStatus.CANCELLED,
    }),
    ReservationStatus.CONFIRMED: frozenset({
        ReservationStatus.IN_PROGRESS,
        ReservationStatus.CANCELLED,
    }),
    ReservationStatus.IN_PROGRESS: frozenset({
        ReservationStatus.COMPLETED,
        ReservationStatus.CANCELLED,
    }),
    ReservationStatus.COMPLETED: frozenset(),
    ReservationStatus.CANCELLED: frozenset(),
})

TERMINAL_STATUSES: FrozenSet[ReservationStatus] = frozenset(
    status for status, targets in TRANSITIONS.items() if not targets
)

# Statuses that hold a window and block overlapping bookings
ACTIVE_STATUSES: FrozenSet[ReservationStatus] = frozenset(TRANSITIONS) - TERMINAL_STATUSES


def can_transition(from_status: ReservationStatus, to_status: ReservationStatus) -> bool:
    """Returns True if the edge exists in the transition table"""
    return ReservationStatus(to_status) in TRANSITIONS[ReservationStatus(from_status)]


def validate_transition(from_status: ReservationStatus, to_status: ReservationStatus) -> None:
    """Raises InvalidTransitionError if the edge does not exist"""
    if not can_transition(from_status, to_status):
        raise InvalidTransitionError(from_status, to_status)


def allowed_targets(from_status: ReservationStatus) -> FrozenSet[ReservationStatus]:
    return TRANSITIONS[ReservationStatus(from_status)]


def is_terminal(status: ReservationStatus) -> bool:
    return ReservationStatus(status) in TERMINAL_STATUSES
