import logging
from datetime import timedelta
from typing import Any, Optional

from fastapi import APIRouter, Depends, HTTPException, Path, Query, status
from fastapi.responses import RedirectResponse
from sqlalchemy.ext.asyncio import AsyncSession

from ..config import Settings, get_settings
from ..deps import get_notifier, get_session, require_admin
from ..domain.errors import (
    BadRequestError,
    CapacityError,
    DuplicateReservationError,
    NotFoundError,
    ReservationError,
    TransientStorageConflictError,
)
from ..domain.notifications import ConfirmationNotifier
from ..infrastructure.repositories import (
    SqlAlchemyEventRepository,
    SqlAlchemyInstitutionRepository,
    SqlAlchemyReservationRepository,
    SqlAlchemySlotRepository,
)
from ..infrastructure.transaction import run_serializable
from ..models import ReservationStatus
from ..schemas import ReservationCreate, ReservationRead, ReservationUpdate
from ..usecases import reservations as reservation_usecase
from ..utils.audit_log import emit_audit_log

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/api/reservations", tags=["reservations"])


def _to_http_error(exc: ReservationError) -> HTTPException:
    if isinstance(exc, NotFoundError):
        return HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=str(exc))
    if isinstance(exc, CapacityError):
        return HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail={"message": str(exc), "remaining_seats": exc.remaining_seats},
        )
    if isinstance(exc, BadRequestError):
        return HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail=str(exc))
    if isinstance(exc, DuplicateReservationError):
        return HTTPException(
            status_code=status.HTTP_409_CONFLICT,
            detail="an active reservation already exists for this institution in this slot",
        )
    if isinstance(exc, TransientStorageConflictError):
        return HTTPException(status_code=status.HTTP_409_CONFLICT, detail="slot is busy, please resubmit")
    return HTTPException(status_code=status.HTTP_500_INTERNAL_SERVER_ERROR, detail="reservation failed")


def _audit(**kwargs: Any) -> None:
    # The state change is already committed; a broken audit sink must not undo the response.
    try:
        emit_audit_log(**kwargs)
    except RuntimeError:
        logger.exception("audit log emission failed for reservation %s", kwargs.get("reservation_id"))


def _redirect_target(settings: Settings, outcome: reservation_usecase.ConfirmationOutcome) -> str:
    base = settings.frontend_url or "/"
    flag = "true" if outcome == reservation_usecase.ConfirmationOutcome.SUCCESS else "error"
    return f"{base}?confirmed={flag}"


@router.post("", response_model=ReservationRead, status_code=status.HTTP_201_CREATED)
async def create_reservation(
    payload: ReservationCreate,
    session: AsyncSession = Depends(get_session),
    notifier: ConfirmationNotifier = Depends(get_notifier),
    settings: Settings = Depends(get_settings),
) -> ReservationRead:
    event_repo = SqlAlchemyEventRepository(session)
    slot_repo = SqlAlchemySlotRepository(session)
    institution_repo = SqlAlchemyInstitutionRepository(session)
    res_repo = SqlAlchemyReservationRepository(session)
    request = reservation_usecase.ReservationRequest(
        institution_code=payload.institution_code,
        school_name=payload.school_name,
        coordinator_name=payload.coordinator_name,
        coordinator_last_name=payload.coordinator_last_name,
        email=str(payload.email),
        phone=payload.phone,
        student_count=payload.student_count,
        event_id=payload.event_id,
        slot_id=payload.slot_id,
    )

    async def admit() -> reservation_usecase.AdmittedReservation:
        return await reservation_usecase.create_reservation(
            event_repo,
            slot_repo,
            institution_repo,
            res_repo,
            request=request,
            max_students=settings.max_students_per_reservation,
        )

    try:
        admitted = await run_serializable(session, admit, attempts=settings.serialization_retry_attempts)
    except ReservationError as exc:
        logger.info("reservation rejected for slot %s: %s", payload.slot_id, type(exc).__name__)
        raise _to_http_error(exc) from exc

    reservation = admitted.reservation
    _audit(
        action="reservation.created",
        initiator="public",
        reservation_id=reservation.id,
        slot_id=reservation.slot_id,
        event_id=reservation.event_id,
        institution_code=reservation.institution_code,
        student_count=reservation.student_count,
        status_from=None,
        status_to=reservation.status,
    )

    email_sent = await reservation_usecase.send_confirmation_email(
        notifier,
        admitted,
        backend_public_url=settings.backend_public_url,
    )
    return ReservationRead.from_db(reservation=reservation, email_sent=email_sent)


@router.get("/confirm", response_class=RedirectResponse, status_code=status.HTTP_302_FOUND)
async def confirm_reservation(
    token: Optional[str] = Query(default=None),
    session: AsyncSession = Depends(get_session),
    settings: Settings = Depends(get_settings),
) -> RedirectResponse:
    res_repo = SqlAlchemyReservationRepository(session)
    async with session.begin():
        result = await reservation_usecase.confirm_reservation(
            res_repo,
            token=token,
            ttl=timedelta(hours=settings.confirmation_token_ttl_hours),
        )

    if result.reason == reservation_usecase.ConfirmationReason.CONFIRMED and result.reservation is not None:
        _audit(
            action="reservation.confirmed",
            initiator="public",
            reservation_id=result.reservation.id,
            slot_id=result.reservation.slot_id,
            event_id=result.reservation.event_id,
            institution_code=result.reservation.institution_code,
            student_count=result.reservation.student_count,
            status_from=ReservationStatus.PENDING,
            status_to=ReservationStatus.CONFIRMED,
        )
    return RedirectResponse(_redirect_target(settings, result.outcome), status_code=status.HTTP_302_FOUND)


@router.get("/{reservation_id}", response_model=ReservationRead, dependencies=[Depends(require_admin)])
async def get_reservation(
    reservation_id: int = Path(..., ge=1),
    session: AsyncSession = Depends(get_session),
) -> ReservationRead:
    res_repo = SqlAlchemyReservationRepository(session)
    try:
        reservation = await reservation_usecase.get_reservation(res_repo, reservation_id=reservation_id)
    except NotFoundError as exc:
        raise _to_http_error(exc) from exc
    return ReservationRead.from_db(reservation=reservation)


@router.patch("/{reservation_id}", response_model=ReservationRead, dependencies=[Depends(require_admin)])
async def update_reservation(
    payload: ReservationUpdate,
    reservation_id: int = Path(..., ge=1),
    session: AsyncSession = Depends(get_session),
    settings: Settings = Depends(get_settings),
) -> ReservationRead:
    event_repo = SqlAlchemyEventRepository(session)
    slot_repo = SqlAlchemySlotRepository(session)
    institution_repo = SqlAlchemyInstitutionRepository(session)
    res_repo = SqlAlchemyReservationRepository(session)
    changes = payload.model_dump(exclude_unset=True)
    if "email" in changes and changes["email"] is not None:
        changes["email"] = str(changes["email"])

    async def apply() -> tuple[Any, ReservationStatus]:
        return await reservation_usecase.update_reservation(
            event_repo,
            slot_repo,
            institution_repo,
            res_repo,
            reservation_id=reservation_id,
            changes=changes,
            max_students=settings.max_students_per_reservation,
        )

    try:
        updated, status_from = await run_serializable(
            session, apply, attempts=settings.serialization_retry_attempts
        )
    except ReservationError as exc:
        raise _to_http_error(exc) from exc

    cancelled = updated.status == ReservationStatus.CANCELLED and status_from != ReservationStatus.CANCELLED
    _audit(
        action="reservation.cancelled" if cancelled else "reservation.updated",
        initiator="admin",
        reservation_id=updated.id,
        slot_id=updated.slot_id,
        event_id=updated.event_id,
        institution_code=updated.institution_code,
        student_count=updated.student_count,
        status_from=status_from,
        status_to=updated.status,
        extra={"fields": sorted(changes)},
    )
    return ReservationRead.from_db(reservation=updated)
