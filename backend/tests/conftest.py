from __future__ import annotations

import itertools
from dataclasses import dataclass
from datetime import date, datetime
from typing import Optional

import pytest
from fair_reservations.domain.notifications import ConfirmationEmail
from fair_reservations.models import ACTIVE_STATUSES, Event, Institution, Reservation, ReservationStatus, TimeSlot
from fair_reservations.utils.time import utc_now_naive
from fair_reservations.utils.tokens import token_digest


class InMemoryStore:
    """Tables shared by the fake repositories below."""

    def __init__(self) -> None:
        self.events: dict[int, Event] = {}
        self.slots: dict[int, TimeSlot] = {}
        self.institutions: dict[str, Institution] = {}
        self.reservations: dict[int, Reservation] = {}
        self.calls: list[str] = []
        self._ids = itertools.count(1)

    def add_event(self, event_date: date = date(2026, 3, 16)) -> Event:
        event = Event(id=next(self._ids), name="Global Money Week 2026", event_date=event_date, created_at=utc_now_naive())
        self.events[event.id] = event
        return event

    def add_slot(
        self,
        event: Event,
        *,
        capacity: int = 200,
        time_start: str = "09h00",
        time_end: str = "11h00",
    ) -> TimeSlot:
        slot = TimeSlot(id=next(self._ids), event_id=event.id, time_start=time_start, time_end=time_end, capacity=capacity)
        event.slots.append(slot)
        self.slots[slot.id] = slot
        return slot

    def active_total(self, slot_id: int) -> int:
        return sum(
            r.student_count for r in self.reservations.values() if r.slot_id == slot_id and r.status in ACTIVE_STATUSES
        )


class FakeEventRepo:
    def __init__(self, store: InMemoryStore) -> None:
        self.store = store

    async def get(self, event_id: int) -> Optional[Event]:
        self.store.calls.append("event.get")
        return self.store.events.get(event_id)

    async def list_with_slots(self) -> list[Event]:
        return sorted(self.store.events.values(), key=lambda e: e.event_date)


class FakeSlotRepo:
    def __init__(self, store: InMemoryStore) -> None:
        self.store = store

    async def get(self, slot_id: int) -> Optional[TimeSlot]:
        self.store.calls.append("slot.get")
        return self.store.slots.get(slot_id)

    async def get_for_update(self, slot_id: int) -> Optional[TimeSlot]:
        self.store.calls.append("slot.lock")
        return self.store.slots.get(slot_id)

    async def reserved_by_slot(self) -> dict[int, int]:
        return {slot_id: self.store.active_total(slot_id) for slot_id in self.store.slots}


class FakeInstitutionRepo:
    def __init__(self, store: InMemoryStore) -> None:
        self.store = store

    async def get(self, code: str) -> Optional[Institution]:
        return self.store.institutions.get(code)

    async def create(self, code: str, name: str) -> Institution:
        self.store.calls.append("institution.create")
        institution = Institution(id=next(self.store._ids), code=code, name=name, created_at=utc_now_naive())
        self.store.institutions[code] = institution
        return institution

    async def lookup_display_name(self, code: str) -> Optional[str]:
        institution = self.store.institutions.get(code)
        return institution.name if institution is not None else None


class FakeReservationRepo:
    def __init__(self, store: InMemoryStore) -> None:
        self.store = store
        self.lose_confirmation_race = False

    async def sum_active_students(self, slot_id: int, exclude_reservation_id: Optional[int] = None) -> int:
        self.store.calls.append("reservation.sum")
        return sum(
            r.student_count
            for r in self.store.reservations.values()
            if r.slot_id == slot_id and r.status in ACTIVE_STATUSES and r.id != exclude_reservation_id
        )

    async def find_active(
        self,
        institution_code: str,
        slot_id: int,
        exclude_reservation_id: Optional[int] = None,
    ) -> Optional[Reservation]:
        self.store.calls.append("reservation.find_active")
        for r in self.store.reservations.values():
            if (
                r.institution_code == institution_code
                and r.slot_id == slot_id
                and r.status in ACTIVE_STATUSES
                and r.id != exclude_reservation_id
            ):
                return r
        return None

    async def create(self, **fields: object) -> Reservation:
        self.store.calls.append("reservation.create")
        now = utc_now_naive()
        reservation = Reservation(id=next(self.store._ids), created_at=now, updated_at=now, **fields)
        self.store.reservations[reservation.id] = reservation
        return reservation

    async def get(self, reservation_id: int) -> Optional[Reservation]:
        return self.store.reservations.get(reservation_id)

    async def get_for_update(self, reservation_id: int) -> Optional[Reservation]:
        return self.store.reservations.get(reservation_id)

    async def get_by_token(self, token: str) -> Optional[Reservation]:
        return next((r for r in self.store.reservations.values() if r.confirmation_token == token), None)

    async def get_by_consumed_token(self, digest: str) -> Optional[Reservation]:
        return next((r for r in self.store.reservations.values() if r.consumed_token_digest == digest), None)

    async def mark_confirmed(self, reservation_id: int, token: str, confirmed_at: datetime) -> bool:
        reservation = self.store.reservations[reservation_id]
        if self.lose_confirmation_race:
            # Another click committed first.
            reservation.status = ReservationStatus.CONFIRMED
            reservation.confirmation_token = None
            reservation.consumed_token_digest = token_digest(token)
            return False
        if reservation.status != ReservationStatus.PENDING or reservation.confirmation_token != token:
            return False
        reservation.status = ReservationStatus.CONFIRMED
        reservation.confirmed_at = confirmed_at
        reservation.confirmation_token = None
        reservation.consumed_token_digest = token_digest(token)
        reservation.updated_at = confirmed_at
        return True

    async def save(self, reservation: Reservation) -> Reservation:
        self.store.reservations[reservation.id] = reservation
        return reservation


@dataclass
class Repos:
    events: FakeEventRepo
    slots: FakeSlotRepo
    institutions: FakeInstitutionRepo
    reservations: FakeReservationRepo


class RecordingNotifier:
    def __init__(self, result: bool = True) -> None:
        self.result = result
        self.sent: list[ConfirmationEmail] = []

    async def send_confirmation(self, message: ConfirmationEmail) -> bool:
        self.sent.append(message)
        return self.result


class ExplodingNotifier:
    async def send_confirmation(self, message: ConfirmationEmail) -> bool:
        raise RuntimeError("provider rejected recipient")


@pytest.fixture
def store() -> InMemoryStore:
    return InMemoryStore()


@pytest.fixture
def repos(store: InMemoryStore) -> Repos:
    return Repos(
        events=FakeEventRepo(store),
        slots=FakeSlotRepo(store),
        institutions=FakeInstitutionRepo(store),
        reservations=FakeReservationRepo(store),
    )


@pytest.fixture
def notifier() -> RecordingNotifier:
    return RecordingNotifier()


@pytest.fixture
def exploding_notifier() -> ExplodingNotifier:
    return ExplodingNotifier()
