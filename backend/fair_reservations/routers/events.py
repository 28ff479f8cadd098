from typing import List

from fastapi import APIRouter, Depends, HTTPException, Path, status
from sqlalchemy.ext.asyncio import AsyncSession

from ..deps import get_session
from ..domain.errors import NotFoundError
from ..infrastructure.repositories import (
    SqlAlchemyEventRepository,
    SqlAlchemyReservationRepository,
    SqlAlchemySlotRepository,
)
from ..schemas import EventDay, SlotAvailability
from ..usecases import slots as slot_usecase

router = APIRouter(prefix="/api", tags=["events"])


@router.get("/events/days", response_model=List[EventDay])
async def list_days(
    session: AsyncSession = Depends(get_session),
) -> list[EventDay]:
    event_repo = SqlAlchemyEventRepository(session)
    slot_repo = SqlAlchemySlotRepository(session)
    rows = await slot_usecase.list_days_with_availability(event_repo, slot_repo)
    return [
        EventDay.from_db(
            event=entry["event"],
            day=entry["day"],
            slots=[SlotAvailability.from_db(slot=item["slot"], available=item["available"]) for item in entry["slots"]],
        )
        for entry in rows
    ]


@router.get("/slots/{slot_id}/availability", response_model=SlotAvailability)
async def get_slot_availability(
    slot_id: int = Path(..., ge=1),
    session: AsyncSession = Depends(get_session),
) -> SlotAvailability:
    slot_repo = SqlAlchemySlotRepository(session)
    res_repo = SqlAlchemyReservationRepository(session)
    try:
        slot, available = await slot_usecase.get_available_seats(slot_repo, res_repo, slot_id=slot_id)
    except NotFoundError:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="slot not found")
    return SlotAvailability.from_db(slot=slot, available=available)
