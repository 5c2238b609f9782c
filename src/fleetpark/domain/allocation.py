# File: src/fleetpark/domain/allocation.py
"""
Availability Allocator

Decides whether a requested window may be booked given the reservations
that already exist. All checks are pure functions over the reservations
passed in; serializing the check with the insertion is the caller's job
(see ReservationLifecycleService and the lock providers).

Only active reservations (PENDING, CONFIRMED, IN_PROGRESS) block. Windows
are half-open, so a booking ending at 12:00 never collides with one
starting at 12:00.
"""

from datetime import datetime
from typing import Iterable, List, Optional, Tuple

from .exceptions import ConflictError, InvalidWindowError
from .models import ParkingLot, Reservation
from .state_machine import ACTIVE_STATUSES


def windows_overlap(
    start_a: datetime,
    end_a: datetime,
    start_b: datetime,
    end_b: datetime
) -> bool:
    return start_a < end_b and start_b < end_a


def validate_window(start_time: datetime, end_time: datetime, now: datetime) -> None:
    """Raises InvalidWindowError unless now < start_time < end_time"""
    if start_time <= now:
        raise InvalidWindowError(
            "Start time must be in the future",
            {"start_time": start_time.isoformat(), "now": now.isoformat()},
        )
    if end_time <= start_time:
        raise InvalidWindowError(
            "End time must be after start time",
            {"start_time": start_time.isoformat(), "end_time": end_time.isoformat()},
        )


def find_overlapping(
    reservations: Iterable[Reservation],
    start_time: datetime,
    end_time: datetime,
    exclude_id: Optional[str] = None
) -> List[Reservation]:
    """Active reservations whose window overlaps [start_time, end_time)"""
    return [
        reservation for reservation in reservations
        if reservation.status in ACTIVE_STATUSES
        and reservation.id != exclude_id
        and windows_overlap(reservation.start_time, reservation.end_time, start_time, end_time)
    ]


def peak_concurrency(
    reservations: Iterable[Reservation],
    start_time: datetime,
    end_time: datetime
) -> int:
    """
    Maximum number of the given reservations active at the same instant
    inside [start_time, end_time), computed with a sweep line
    """
    points: List[Tuple[datetime, int]] = []
    for reservation in reservations:
        points.append((max(reservation.start_time, start_time), 1))
        points.append((min(reservation.end_time, end_time), -1))

    # Ends sort before starts at the same instant (half-open windows)
    points.sort(key=lambda point: (point[0], point[1]))

    current = peak = 0
    for _, delta in points:
        current += delta
        peak = max(peak, current)
    return peak


def check_availability(
    parking_lot: ParkingLot,
    start_time: datetime,
    end_time: datetime,
    existing: Iterable[Reservation],
    now: datetime,
    space_id: Optional[str] = None,
    vehicle_id: Optional[str] = None,
    driver_id: Optional[str] = None,
    exclude_id: Optional[str] = None
) -> None:
    """
    Returns normally when the window can be booked, raises otherwise

    Checks, in order:
    1. window validity (InvalidWindowError)
    2. the requested space is free for the window
    3. the lot has a free space for the whole window
    4. the vehicle and the driver are not booked elsewhere for the window

    ``existing`` may hold reservations from other lots; the space and lot
    checks only look at this lot, the vehicle and driver checks look at all.
    ``exclude_id`` skips the reservation being rescheduled.
    """
    validate_window(start_time, end_time, now)

    overlapping = find_overlapping(existing, start_time, end_time, exclude_id=exclude_id)
    in_lot = [r for r in overlapping if r.parking_lot_id == parking_lot.id]

    if space_id is not None:
        taken = [r for r in in_lot if r.parking_space_id == space_id]
        if taken:
            raise ConflictError(
                "Parking space is already reserved for an overlapping window",
                {"parking_space_id": space_id, "conflicting_reservation_id": taken[0].id},
            )

    peak = peak_concurrency(in_lot, start_time, end_time)
    if peak >= parking_lot.total_spaces:
        raise ConflictError(
            "No parking space available in this lot for the requested window",
            {"parking_lot_id": parking_lot.id, "total_spaces": parking_lot.total_spaces},
        )

    if vehicle_id is not None:
        busy = [r for r in overlapping if r.vehicle_id == vehicle_id]
        if busy:
            raise ConflictError(
                "Vehicle already has a reservation for an overlapping window",
                {"vehicle_id": vehicle_id, "conflicting_reservation_id": busy[0].id},
            )

    if driver_id is not None:
        busy = [r for r in overlapping if r.driver_id == driver_id]
        if busy:
            raise ConflictError(
                "Driver already has a reservation for an overlapping window",
                {"driver_id": driver_id, "conflicting_reservation_id": busy[0].id},
            )


def available_spaces(
    parking_lot: ParkingLot,
    reservations: Iterable[Reservation],
    at: datetime
) -> int:
    """Free spaces in the lot at an instant, derived from active reservations"""
    occupied = sum(
        1 for reservation in reservations
        if reservation.parking_lot_id == parking_lot.id
        and reservation.status in ACTIVE_STATUSES
        and reservation.start_time <= at < reservation.end_time
    )
    return max(parking_lot.total_spaces - occupied, 0)
