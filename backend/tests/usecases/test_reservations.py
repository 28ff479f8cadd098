import random
import re
from dataclasses import replace

import pytest
from fair_reservations.domain.errors import (
    BadRequestError,
    CapacityError,
    DuplicateReservationError,
    NotFoundError,
    SlotMismatchError,
    StudentLimitError,
)
from fair_reservations.models import ACTIVE_STATUSES, ReservationStatus
from fair_reservations.usecases import reservations as reservation_usecase
from fair_reservations.usecases import slots as slot_usecase
from fair_reservations.usecases.reservations import ReservationRequest

MAX_STUDENTS = 200


def _request(slot, **overrides) -> ReservationRequest:
    base = ReservationRequest(
        institution_code="A1234",
        school_name="Unidad Educativa Central",
        coordinator_name="Ana",
        coordinator_last_name="Pérez",
        email="ana@example.com",
        phone="0991234567",
        student_count=10,
        event_id=slot.event_id,
        slot_id=slot.id,
    )
    return replace(base, **overrides)


async def _create(repos, request: ReservationRequest, max_students: int = MAX_STUDENTS):
    return await reservation_usecase.create_reservation(
        repos.events,
        repos.slots,
        repos.institutions,
        repos.reservations,
        request=request,
        max_students=max_students,
    )


async def _available(repos, slot) -> int:
    _, available = await slot_usecase.get_available_seats(repos.slots, repos.reservations, slot_id=slot.id)
    return available


@pytest.mark.asyncio
async def test_fill_slot_then_reject_overflow_and_duplicate(store, repos) -> None:
    event = store.add_event()
    slot = store.add_slot(event, capacity=200)

    first = await _create(repos, _request(slot, institution_code="A1234", student_count=150))
    assert first.reservation.status == ReservationStatus.PENDING
    assert await _available(repos, slot) == 50

    with pytest.raises(CapacityError) as excinfo:
        await _create(repos, _request(slot, institution_code="B5678", student_count=60))
    assert excinfo.value.remaining_seats == 50
    assert "50 seats remain" in str(excinfo.value)
    assert len(store.reservations) == 1

    await _create(repos, _request(slot, institution_code="B5678", student_count=50))
    assert await _available(repos, slot) == 0

    with pytest.raises(CapacityError) as excinfo:
        await _create(repos, _request(slot, institution_code="C9999", student_count=1))
    assert excinfo.value.remaining_seats == 0
    assert len(store.reservations) == 2


@pytest.mark.asyncio
async def test_duplicate_institution_is_conflict_while_seats_remain(store, repos) -> None:
    event = store.add_event()
    slot = store.add_slot(event, capacity=200)
    await _create(repos, _request(slot, institution_code="A1234", student_count=20))

    with pytest.raises(DuplicateReservationError):
        await _create(repos, _request(slot, institution_code="A1234", student_count=5))
    assert len(store.reservations) == 1


@pytest.mark.asyncio
async def test_cancelled_reservation_frees_seats_and_allows_rebooking(store, repos) -> None:
    event = store.add_event()
    slot = store.add_slot(event, capacity=100)
    admitted = await _create(repos, _request(slot, student_count=100))
    admitted.reservation.status = ReservationStatus.CANCELLED

    assert await _available(repos, slot) == 100
    again = await _create(repos, _request(slot, student_count=40))
    assert again.reservation.id != admitted.reservation.id


@pytest.mark.asyncio
async def test_exact_remaining_count_succeeds_and_one_more_fails(store, repos) -> None:
    event = store.add_event()
    slot = store.add_slot(event, capacity=30)
    await _create(repos, _request(slot, institution_code="A1", student_count=12))

    with pytest.raises(CapacityError) as excinfo:
        await _create(repos, _request(slot, institution_code="B2", student_count=19))
    assert excinfo.value.remaining_seats == 18

    await _create(repos, _request(slot, institution_code="B2", student_count=18))
    assert await _available(repos, slot) == 0


@pytest.mark.asyncio
async def test_slot_from_other_event_fails_before_capacity_check(store, repos) -> None:
    monday = store.add_event()
    tuesday = store.add_event()
    slot = store.add_slot(monday, capacity=1)

    with pytest.raises(SlotMismatchError):
        await _create(repos, _request(slot, event_id=tuesday.id, student_count=500))
    assert "reservation.sum" not in store.calls


@pytest.mark.asyncio
async def test_unknown_slot_or_event_is_not_found(store, repos) -> None:
    event = store.add_event()
    slot = store.add_slot(event)

    with pytest.raises(NotFoundError):
        await _create(repos, _request(slot, slot_id=9999))
    with pytest.raises(NotFoundError):
        await _create(repos, _request(slot, event_id=9999))


@pytest.mark.asyncio
async def test_student_limit_is_configurable(store, repos) -> None:
    event = store.add_event()
    slot = store.add_slot(event, capacity=500)

    with pytest.raises(StudentLimitError):
        await _create(repos, _request(slot, student_count=201))
    admitted = await _create(repos, _request(slot, student_count=300), max_students=300)
    assert admitted.reservation.student_count == 300


@pytest.mark.asyncio
async def test_zero_students_is_bad_request(store, repos) -> None:
    event = store.add_event()
    slot = store.add_slot(event)

    with pytest.raises(BadRequestError):
        await _create(repos, _request(slot, student_count=0))


@pytest.mark.asyncio
async def test_slot_is_locked_before_totals_are_read(store, repos) -> None:
    event = store.add_event()
    slot = store.add_slot(event)
    await _create(repos, _request(slot))

    assert store.calls[0] == "slot.lock"
    assert "slot.get" not in store.calls
    assert store.calls.index("slot.lock") < store.calls.index("reservation.sum")
    assert store.calls.index("reservation.sum") < store.calls.index("reservation.create")


@pytest.mark.asyncio
async def test_first_booking_registers_institution_and_keeps_first_name(store, repos) -> None:
    event = store.add_event()
    slot_a = store.add_slot(event)
    slot_b = store.add_slot(event, time_start="11h00", time_end="13h00")

    await _create(repos, _request(slot_a, institution_code="NEW01", school_name="Colegio Uno"))
    await _create(repos, _request(slot_b, institution_code="NEW01", school_name="Colegio Renombrado"))

    assert store.institutions["NEW01"].name == "Colegio Uno"
    assert store.calls.count("institution.create") == 1


@pytest.mark.asyncio
async def test_new_reservation_gets_normalized_email_and_secure_token(store, repos) -> None:
    event = store.add_event()
    slot = store.add_slot(event)

    admitted = await _create(repos, _request(slot, email="  Ana.Perez@Example.COM "))
    reservation = admitted.reservation
    assert reservation.email == "ana.perez@example.com"
    assert re.fullmatch(r"[0-9a-f]{64}", reservation.confirmation_token)
    assert reservation.confirmed_at is None
    assert admitted.event is event
    assert admitted.slot is slot


@pytest.mark.asyncio
async def test_random_booking_sequence_never_overbooks(store, repos) -> None:
    rng = random.Random(20260316)
    event = store.add_event()
    slots = [
        store.add_slot(event, capacity=120, time_start=start)
        for start in ("09h00", "11h00", "13h00")
    ]
    codes = [f"S{n:04d}" for n in range(15)]

    for _ in range(200):
        slot = rng.choice(slots)
        try:
            admitted = await _create(
                repos,
                _request(slot, institution_code=rng.choice(codes), student_count=rng.randint(1, 60)),
            )
        except (CapacityError, DuplicateReservationError):
            continue
        if rng.random() < 0.2:
            admitted.reservation.status = ReservationStatus.CANCELLED

    for slot in slots:
        active = [r for r in store.reservations.values() if r.slot_id == slot.id and r.status in ACTIVE_STATUSES]
        assert sum(r.student_count for r in active) <= slot.capacity
        pairs = [r.institution_code for r in active]
        assert len(pairs) == len(set(pairs))
        assert await _available(repos, slot) >= 0


@pytest.mark.asyncio
async def test_send_confirmation_email_builds_message(store, repos, notifier) -> None:
    event = store.add_event()
    slot = store.add_slot(event)
    admitted = await _create(repos, _request(slot, student_count=25))

    sent = await reservation_usecase.send_confirmation_email(
        notifier, admitted, backend_public_url="https://api.example.org/"
    )

    assert sent is True
    message = notifier.sent[0]
    assert message.email == "ana@example.com"
    assert message.day_label == "Lunes 16 marzo"
    assert message.slot_label == "09h00 - 11h00"
    assert message.student_count == 25
    assert message.reservation_id == admitted.reservation.id
    assert message.confirm_link == (
        "https://api.example.org/api/reservations/confirm?token=" + admitted.reservation.confirmation_token
    )


@pytest.mark.asyncio
async def test_send_confirmation_email_swallows_notifier_failure(store, repos, exploding_notifier) -> None:
    event = store.add_event()
    slot = store.add_slot(event)
    admitted = await _create(repos, _request(slot))

    sent = await reservation_usecase.send_confirmation_email(
        exploding_notifier, admitted, backend_public_url="https://api.example.org"
    )

    assert sent is False
    assert admitted.reservation.status == ReservationStatus.PENDING
    assert admitted.reservation.id in store.reservations


def test_build_confirm_link_without_base_is_empty() -> None:
    assert reservation_usecase.build_confirm_link("", "abc") == ""
    assert reservation_usecase.build_confirm_link("http://x", "a b") == "http://x/api/reservations/confirm?token=a%20b"
