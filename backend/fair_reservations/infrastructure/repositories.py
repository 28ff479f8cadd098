from __future__ import annotations

import logging
from datetime import datetime
from typing import List, Optional

from sqlalchemy import func, select, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy.orm import selectinload

from ..domain.repositories import (
    EventRepository,
    InstitutionRegistry,
    InstitutionRepository,
    ReservationRepository,
    SlotRepository,
)
from ..models import ACTIVE_STATUSES, Event, Institution, Reservation, ReservationStatus, TimeSlot
from ..utils.time import utc_now_naive
from ..utils.tokens import token_digest

logger = logging.getLogger(__name__)


class SqlAlchemyEventRepository(EventRepository):
    def __init__(self, session: AsyncSession) -> None:
        self.session = session

    async def get(self, event_id: int) -> Event | None:
        return await self.session.get(Event, event_id)

    async def list_with_slots(self) -> List[Event]:
        stmt = select(Event).options(selectinload(Event.slots)).order_by(Event.event_date)
        return list((await self.session.scalars(stmt)).all())


class SqlAlchemySlotRepository(SlotRepository):
    def __init__(self, session: AsyncSession) -> None:
        self.session = session

    async def get(self, slot_id: int) -> TimeSlot | None:
        return await self.session.get(TimeSlot, slot_id)

    async def get_for_update(self, slot_id: int) -> TimeSlot | None:
        # populate_existing: the identity map may hold a copy read before the lock.
        stmt = (
            select(TimeSlot)
            .where(TimeSlot.id == slot_id)
            .with_for_update()
            .execution_options(populate_existing=True)
        )
        result = await self.session.scalar(stmt)
        return result if isinstance(result, TimeSlot) else None

    async def reserved_by_slot(self) -> dict[int, int]:
        stmt = (
            select(Reservation.slot_id, func.coalesce(func.sum(Reservation.student_count), 0))
            .where(Reservation.status.in_(ACTIVE_STATUSES))
            .group_by(Reservation.slot_id)
        )
        rows = await self.session.execute(stmt)
        return {int(slot_id): int(reserved) for slot_id, reserved in rows.all()}


class SqlAlchemyInstitutionRepository(InstitutionRepository, InstitutionRegistry):
    def __init__(self, session: AsyncSession) -> None:
        self.session = session

    async def get(self, code: str) -> Institution | None:
        return await self.session.scalar(select(Institution).where(Institution.code == code))

    async def create(self, code: str, name: str) -> Institution:
        institution = Institution(code=code, name=name, created_at=utc_now_naive())
        try:
            async with self.session.begin_nested():
                self.session.add(institution)
        except IntegrityError:
            # A concurrent first booking for the same code won; keep its name.
            existing = await self.get(code)
            if existing is None:
                raise
            logger.info("institution %s created concurrently, reusing stored row", code)
            return existing
        return institution

    async def lookup_display_name(self, code: str) -> str | None:
        institution = await self.get(code)
        return institution.name if institution is not None else None


class SqlAlchemyReservationRepository(ReservationRepository):
    def __init__(self, session: AsyncSession) -> None:
        self.session = session

    async def sum_active_students(self, slot_id: int, exclude_reservation_id: int | None = None) -> int:
        stmt = select(func.coalesce(func.sum(Reservation.student_count), 0)).where(
            Reservation.slot_id == slot_id,
            Reservation.status.in_(ACTIVE_STATUSES),
        )
        if exclude_reservation_id is not None:
            stmt = stmt.where(Reservation.id != exclude_reservation_id)
        return int(await self.session.scalar(stmt) or 0)

    async def find_active(
        self,
        institution_code: str,
        slot_id: int,
        exclude_reservation_id: int | None = None,
    ) -> Reservation | None:
        stmt = select(Reservation).where(
            Reservation.institution_code == institution_code,
            Reservation.slot_id == slot_id,
            Reservation.status.in_(ACTIVE_STATUSES),
        )
        if exclude_reservation_id is not None:
            stmt = stmt.where(Reservation.id != exclude_reservation_id)
        return await self.session.scalar(stmt.limit(1))

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
    ) -> Reservation:
        now = utc_now_naive()
        reservation = Reservation(
            institution_code=institution_code,
            school_name=school_name,
            coordinator_name=coordinator_name,
            coordinator_last_name=coordinator_last_name,
            email=email,
            phone=phone,
            student_count=student_count,
            event_id=event_id,
            slot_id=slot_id,
            status=status,
            confirmation_token=confirmation_token,
            created_at=now,
            updated_at=now,
        )
        self.session.add(reservation)
        await self.session.flush()
        return reservation

    async def get(self, reservation_id: int) -> Optional[Reservation]:
        return await self.session.get(Reservation, reservation_id)

    async def get_for_update(self, reservation_id: int) -> Optional[Reservation]:
        stmt = (
            select(Reservation)
            .where(Reservation.id == reservation_id)
            .with_for_update()
            .execution_options(populate_existing=True)
        )
        return await self.session.scalar(stmt)

    async def get_by_token(self, token: str) -> Optional[Reservation]:
        return await self.session.scalar(select(Reservation).where(Reservation.confirmation_token == token))

    async def get_by_consumed_token(self, digest: str) -> Optional[Reservation]:
        return await self.session.scalar(
            select(Reservation).where(Reservation.consumed_token_digest == digest).limit(1)
        )

    async def mark_confirmed(self, reservation_id: int, token: str, confirmed_at: datetime) -> bool:
        """Confirm and burn the token in one statement; False if another request got there first."""
        stmt = (
            update(Reservation)
            .where(
                Reservation.id == reservation_id,
                Reservation.status == ReservationStatus.PENDING,
                Reservation.confirmation_token == token,
            )
            .values(
                status=ReservationStatus.CONFIRMED,
                confirmed_at=confirmed_at,
                confirmation_token=None,
                consumed_token_digest=token_digest(token),
                updated_at=confirmed_at,
            )
            .execution_options(synchronize_session="fetch")
        )
        result = await self.session.execute(stmt)
        return result.rowcount == 1

    async def save(self, reservation: Reservation) -> Reservation:
        self.session.add(reservation)
        await self.session.flush()
        return reservation
