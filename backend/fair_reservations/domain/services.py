from dataclasses import dataclass

from .errors import BadRequestError, CapacityError, DuplicateReservationError, StudentLimitError


@dataclass(frozen=True)
class SlotSnapshot:
    capacity: int
    reserved: int
    institution_has_active_reservation: bool


def available_seats(capacity: int, reserved: int) -> int:
    """Seats left in a slot, clamped at zero."""
    return max(capacity - reserved, 0)


def validate_reservation(snapshot: SlotSnapshot, *, student_count: int, max_students: int) -> int:
    """
    Pure validation of a booking against a locked slot snapshot.
    Capacity is checked before duplicates, so a full slot reports the capacity
    error even when the institution already holds a booking there.
    Returns remaining seats after booking if OK. Raises domain errors otherwise.
    """
    if student_count > max_students:
        raise StudentLimitError(max_students)
    if student_count <= 0:
        raise BadRequestError("student count must be positive")

    remaining = available_seats(snapshot.capacity, snapshot.reserved)
    if snapshot.reserved + student_count > snapshot.capacity:
        raise CapacityError(remaining)
    if snapshot.institution_has_active_reservation:
        raise DuplicateReservationError("institution already has an active reservation for this slot")
    return remaining - student_count
