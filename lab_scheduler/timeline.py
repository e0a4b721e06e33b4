# timeline.py
"""
Pure timeline rules for a single computer.

Nothing here touches storage: the services load reservations, hand them to
these functions together with the current time, and persist whatever comes
back. Intervals are half-open, ``[start_time, end_time)``.
"""
from dataclasses import replace
from datetime import datetime
from typing import Iterable, Optional

from lab_scheduler.data_models import (
    ACTIVE,
    COMPLETED,
    PENDING,
    Computer,
    ComputerStatus,
    Reservation,
)
from lab_scheduler.errors import InvalidRange, PastBooking


def intervals_overlap(start_a: datetime, end_a: datetime, start_b: datetime, end_b: datetime) -> bool:
    """Strict overlap test; touching intervals do not overlap."""
    return start_a < end_b and end_a > start_b


def validate_window(start: datetime, end: datetime, now: datetime) -> None:
    if not start < end:
        raise InvalidRange(start_time=start, end_time=end)
    if start < now:
        raise PastBooking(start_time=start, now=now)


def initial_status(start: datetime, now: datetime) -> str:
    return PENDING if start > now else ACTIVE


def find_conflict(existing: Iterable[Reservation], start: datetime, end: datetime) -> Optional[Reservation]:
    """Return the earliest open reservation intersecting [start, end), if any."""
    for reservation in sorted(existing, key=lambda r: r.start_time):
        if not reservation.is_open:
            continue
        if intervals_overlap(reservation.start_time, reservation.end_time, start, end):
            return reservation
    return None


def reconcile_status(reservation: Reservation, now: datetime) -> str:
    """Status the reservation should have at ``now``. Terminal states stick."""
    if reservation.status not in (PENDING, ACTIVE):
        return reservation.status
    if reservation.end_time <= now:
        return COMPLETED
    if reservation.status == PENDING and reservation.start_time <= now:
        return ACTIVE
    return reservation.status


def reconcile(reservation: Reservation, now: datetime) -> Reservation:
    status = reconcile_status(reservation, now)
    if status == reservation.status:
        return reservation
    return replace(reservation, status=status, updated_at=now)


def compute_status(computer: Computer, reservations: Iterable[Reservation], now: datetime) -> ComputerStatus:
    """
    Occupancy of ``computer`` at ``now``.

    ``reservations`` should already be reconciled. A computer under
    maintenance is always occupied; ``next_available_at`` is the end of the
    reservation holding it now, else the start of the next open one.
    """
    open_reservations = sorted(
        (r for r in reservations if r.is_open and r.computer_id == computer.id),
        key=lambda r: r.start_time,
    )

    current = None
    upcoming = None
    for reservation in open_reservations:
        if reservation.start_time <= now < reservation.end_time:
            current = reservation
        elif reservation.start_time > now and upcoming is None:
            upcoming = reservation

    if current is not None:
        next_available_at = current.end_time
    elif upcoming is not None:
        next_available_at = upcoming.start_time
    else:
        next_available_at = None

    return ComputerStatus(
        computer=computer,
        is_occupied=computer.under_maintenance or current is not None,
        current_reservation=current,
        next_available_at=next_available_at,
    )
