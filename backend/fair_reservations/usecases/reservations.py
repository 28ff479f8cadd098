from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import timedelta
from enum import StrEnum
from typing import Any, Mapping
from urllib.parse import quote

from ..domain.errors import NotFoundError, SlotMismatchError
from ..domain.notifications import ConfirmationEmail, ConfirmationNotifier
from ..domain.repositories import (
    EventRepository,
    InstitutionRepository,
    ReservationRepository,
    SlotRepository,
)
from ..domain.services import SlotSnapshot, validate_reservation
from ..models import ACTIVE_STATUSES, Event, Institution, Reservation, ReservationStatus, TimeSlot
from ..utils.time import format_day_label, utc_now_naive
from ..utils.tokens import generate_confirmation_token, token_digest

logger = logging.getLogger(__name__)

CONFIRM_PATH = "/api/reservations/confirm"


@dataclass(frozen=True)
class ReservationRequest:
    institution_code: str
    school_name: str
    coordinator_name: str
    coordinator_last_name: str | None
    email: str
    phone: str
    student_count: int
    event_id: int
    slot_id: int


@dataclass(frozen=True)
class AdmittedReservation:
    reservation: Reservation
    event: Event
    slot: TimeSlot


class ConfirmationOutcome(StrEnum):
    SUCCESS = "success"
    ERROR = "error"


class ConfirmationReason(StrEnum):
    CONFIRMED = "confirmed"
    ALREADY_CONFIRMED = "already_confirmed"
    INVALID = "invalid"
    UNKNOWN = "unknown"
    CANCELLED = "cancelled"
    EXPIRED = "expired"


@dataclass(frozen=True)
class ConfirmationResult:
    outcome: ConfirmationOutcome
    reason: ConfirmationReason
    reservation: Reservation | None = None


def normalize_email(email: str) -> str:
    return email.strip().lower()


async def _ensure_institution(institution_repo: InstitutionRepository, code: str, name: str) -> Institution:
    institution = await institution_repo.get(code)
    if institution is None:
        institution = await institution_repo.create(code, name)
        logger.info("institution %s registered on first reservation", code)
    return institution


async def _resolve_slot(
    event_repo: EventRepository,
    slot_repo: SlotRepository,
    *,
    event_id: int | None,
    slot_id: int,
) -> tuple[Event, TimeSlot]:
    """Lock the slot as the first read, then check it belongs to the event.

    Without an ``event_id`` the slot's own event is adopted.
    """
    slot = await slot_repo.get_for_update(slot_id)
    if slot is None:
        raise NotFoundError("slot not found")
    event = await event_repo.get(slot.event_id if event_id is None else event_id)
    if event is None:
        raise NotFoundError("event not found")
    if slot.event_id != event.id:
        raise SlotMismatchError("slot does not belong to the given event")
    return event, slot


async def create_reservation(
    event_repo: EventRepository,
    slot_repo: SlotRepository,
    institution_repo: InstitutionRepository,
    res_repo: ReservationRepository,
    *,
    request: ReservationRequest,
    max_students: int,
) -> AdmittedReservation:
    """Admit a new pending reservation. Must run inside a serializable transaction."""
    event, slot = await _resolve_slot(event_repo, slot_repo, event_id=request.event_id, slot_id=request.slot_id)

    # Authoritative re-read under the slot lock.
    reserved = await res_repo.sum_active_students(slot.id)
    existing = await res_repo.find_active(request.institution_code, slot.id)
    snapshot = SlotSnapshot(
        capacity=slot.capacity,
        reserved=reserved,
        institution_has_active_reservation=existing is not None,
    )
    validate_reservation(snapshot, student_count=request.student_count, max_students=max_students)

    await _ensure_institution(institution_repo, request.institution_code, request.school_name)

    reservation = await res_repo.create(
        institution_code=request.institution_code,
        school_name=request.school_name,
        coordinator_name=request.coordinator_name,
        coordinator_last_name=request.coordinator_last_name,
        email=normalize_email(request.email),
        phone=request.phone,
        student_count=request.student_count,
        event_id=event.id,
        slot_id=slot.id,
        status=ReservationStatus.PENDING,
        confirmation_token=generate_confirmation_token(),
    )
    return AdmittedReservation(reservation=reservation, event=event, slot=slot)


def build_confirm_link(backend_public_url: str, token: str) -> str:
    if not backend_public_url:
        return ""
    return f"{backend_public_url.rstrip('/')}{CONFIRM_PATH}?token={quote(token, safe='')}"


async def send_confirmation_email(
    notifier: ConfirmationNotifier,
    admitted: AdmittedReservation,
    *,
    backend_public_url: str,
) -> bool:
    """Best-effort email after commit. Never raises; False means the email was not sent."""
    reservation = admitted.reservation
    if not reservation.confirmation_token:
        return False
    message = ConfirmationEmail(
        email=reservation.email,
        school_name=reservation.school_name,
        coordinator_name=reservation.coordinator_name,
        day_label=format_day_label(admitted.event.event_date),
        slot_label=admitted.slot.label,
        student_count=reservation.student_count,
        reservation_id=reservation.id,
        confirm_link=build_confirm_link(backend_public_url, reservation.confirmation_token),
    )
    try:
        return await notifier.send_confirmation(message)
    except Exception:
        logger.exception("confirmation email dispatch failed for reservation %s", reservation.id)
        return False


async def confirm_reservation(
    res_repo: ReservationRepository,
    *,
    token: str | None,
    ttl: timedelta,
) -> ConfirmationResult:
    """Resolve a mailed confirmation token. Never raises for token problems."""
    if token is None or not token.strip():
        logger.warning("confirmation rejected: empty token")
        return ConfirmationResult(ConfirmationOutcome.ERROR, ConfirmationReason.INVALID)

    token = token.strip()
    reservation = await res_repo.get_by_token(token)
    if reservation is None:
        # The live token is burnt on confirmation; a repeat click matches its digest.
        reservation = await res_repo.get_by_consumed_token(token_digest(token))
    if reservation is None:
        logger.warning("confirmation rejected: token not found")
        return ConfirmationResult(ConfirmationOutcome.ERROR, ConfirmationReason.UNKNOWN)

    if reservation.status == ReservationStatus.CONFIRMED:
        logger.info("reservation %s already confirmed", reservation.id)
        return ConfirmationResult(ConfirmationOutcome.SUCCESS, ConfirmationReason.ALREADY_CONFIRMED, reservation)

    if reservation.status == ReservationStatus.CANCELLED:
        logger.warning("confirmation rejected: reservation %s is cancelled", reservation.id)
        return ConfirmationResult(ConfirmationOutcome.ERROR, ConfirmationReason.CANCELLED, reservation)

    now = utc_now_naive()
    if now - reservation.created_at > ttl:
        logger.warning("confirmation rejected: token expired for reservation %s", reservation.id)
        return ConfirmationResult(ConfirmationOutcome.ERROR, ConfirmationReason.EXPIRED, reservation)

    if not await res_repo.mark_confirmed(reservation.id, token, now):
        # Lost a race with another click on the same link.
        current = await res_repo.get(reservation.id)
        if current is not None and current.status == ReservationStatus.CONFIRMED:
            return ConfirmationResult(ConfirmationOutcome.SUCCESS, ConfirmationReason.ALREADY_CONFIRMED, current)
        return ConfirmationResult(ConfirmationOutcome.ERROR, ConfirmationReason.UNKNOWN)

    confirmed = await res_repo.get(reservation.id)
    logger.info("reservation %s confirmed", reservation.id)
    return ConfirmationResult(ConfirmationOutcome.SUCCESS, ConfirmationReason.CONFIRMED, confirmed or reservation)


async def update_reservation(
    event_repo: EventRepository,
    slot_repo: SlotRepository,
    institution_repo: InstitutionRepository,
    res_repo: ReservationRepository,
    *,
    reservation_id: int,
    changes: Mapping[str, Any],
    max_students: int,
) -> tuple[Reservation, ReservationStatus]:
    """Administrative edit. Re-validates capacity and duplicates excluding the reservation itself.

    Returns the updated reservation and its status before the edit.
    """
    reservation = await res_repo.get_for_update(reservation_id)
    if reservation is None:
        raise NotFoundError("reservation not found")
    status_from = reservation.status

    event, slot = await _resolve_slot(
        event_repo,
        slot_repo,
        event_id=changes.get("event_id"),
        slot_id=changes.get("slot_id") or reservation.slot_id,
    )

    target_code = changes.get("institution_code") or reservation.institution_code
    target_students = changes.get("student_count") or reservation.student_count
    target_status = changes.get("status") or reservation.status

    if target_status in ACTIVE_STATUSES:
        reserved = await res_repo.sum_active_students(slot.id, exclude_reservation_id=reservation.id)
        duplicate = await res_repo.find_active(target_code, slot.id, exclude_reservation_id=reservation.id)
        snapshot = SlotSnapshot(
            capacity=slot.capacity,
            reserved=reserved,
            institution_has_active_reservation=duplicate is not None,
        )
        validate_reservation(snapshot, student_count=target_students, max_students=max_students)

    if target_code != reservation.institution_code:
        await _ensure_institution(
            institution_repo, target_code, changes.get("school_name") or reservation.school_name
        )

    for field in ("school_name", "coordinator_name", "phone"):
        if changes.get(field):
            setattr(reservation, field, changes[field])
    if "coordinator_last_name" in changes:
        reservation.coordinator_last_name = changes["coordinator_last_name"]
    if changes.get("email"):
        reservation.email = normalize_email(changes["email"])

    now = utc_now_naive()
    reservation.institution_code = target_code
    reservation.student_count = target_students
    reservation.event_id = event.id
    reservation.slot_id = slot.id
    if target_status != status_from:
        reservation.status = target_status
        if target_status == ReservationStatus.CONFIRMED:
            reservation.confirmed_at = now
            if reservation.confirmation_token:
                reservation.consumed_token_digest = token_digest(reservation.confirmation_token)
        else:
            reservation.confirmed_at = None
        if target_status != ReservationStatus.PENDING:
            reservation.confirmation_token = None
    reservation.updated_at = now

    updated = await res_repo.save(reservation)
    return updated, status_from


async def get_reservation(res_repo: ReservationRepository, *, reservation_id: int) -> Reservation:
    reservation = await res_repo.get(reservation_id)
    if reservation is None:
        raise NotFoundError("reservation not found")
    return reservation
