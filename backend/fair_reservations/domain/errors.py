"""Domain errors raised by the reservation protocol.

Routers translate these into HTTP responses; nothing below the router layer
knows about status codes.
"""

from __future__ import annotations


class ReservationError(Exception):
    """Base class for every rejection raised by the reservation core."""


class NotFoundError(ReservationError):
    """A referenced event, slot or reservation does not exist."""


class BadRequestError(ReservationError):
    """The request cannot be admitted as submitted; the client must correct it."""


class SlotMismatchError(BadRequestError):
    """The slot does not belong to the event named in the request."""


class StudentLimitError(BadRequestError):
    def __init__(self, maximum: int) -> None:
        super().__init__(f"student count exceeds the per-reservation maximum of {maximum}")
        self.maximum = maximum


class CapacityError(BadRequestError):
    def __init__(self, remaining_seats: int) -> None:
        super().__init__(f"insufficient seats: only {remaining_seats} seats remain for this slot")
        self.remaining_seats = remaining_seats


class DuplicateReservationError(ReservationError):
    """The institution already holds an active reservation for the slot."""


class TransientStorageConflictError(ReservationError):
    """Serialization failures persisted after every retry; the client should resubmit."""
