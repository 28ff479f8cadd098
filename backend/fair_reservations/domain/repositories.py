from __future__ import annotations

from datetime import datetime
from typing import Iterable, Protocol

from ..models import Event, Institution, Reservation, ReservationStatus, TimeSlot


class EventRepository(Protocol):
    async def get(self, event_id: int) -> Event | None: ...

    async def list_with_slots(self) -> Iterable[Event]: ...


class SlotRepository(Protocol):
    async def get(self, slot_id: int) -> TimeSlot | None: ...

    async def get_for_update(self, slot_id: int) -> TimeSlot | None: ...

    async def reserved_by_slot(self) -> dict[int, int]: ...


class InstitutionRepository(Protocol):
    async def get(self, code: str) -> Institution | None: ...

    async def create(self, code: str, name: str) -> Institution: ...


class InstitutionRegistry(Protocol):
    async def lookup_display_name(self, code: str) -> str | None: ...


class ReservationRepository(Protocol):
    async def sum_active_students(self, slot_id: int, exclude_reservation_id: int | None = None) -> int: ...

    async def find_active(
        self,
        institution_code: str,
        slot_id: int,
        exclude_reservation_id: int | None = None,
    ) -> Reservation | None: ...

    async def create(
        self,
        *,
        institution_code: str,
        school_name: str,
        coordinator_name: str,
        coordinator_last_name: str | None,
        email: str,
        phone: str,
        student_count: int,
        event_id: int,
        slot_id: int,
        status: ReservationStatus,
        confirmation_token: str,
    ) -> Reservation: ...

    async def get(self, reservation_id: int) -> Reservation | None: ...

    async def get_for_update(self, reservation_id: int) -> Reservation | None: ...

    async def get_by_token(self, token: str) -> Reservation | None: ...

    async def get_by_consumed_token(self, digest: str) -> Reservation | None: ...

    async def mark_confirmed(self, reservation_id: int, token: str, confirmed_at: datetime) -> bool: ...

    async def save(self, reservation: Reservation) -> Reservation: ...
