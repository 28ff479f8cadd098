from typing import Any, Dict, List

from ..domain.errors import NotFoundError
from ..domain.repositories import EventRepository, ReservationRepository, SlotRepository
from ..domain.services import available_seats
from ..models import TimeSlot
from ..utils.time import format_day_label


async def get_available_seats(
    slot_repo: SlotRepository,
    res_repo: ReservationRepository,
    *,
    slot_id: int,
) -> tuple[TimeSlot, int]:
    """Advisory read: the write path re-derives this under a lock."""
    slot = await slot_repo.get(slot_id)
    if slot is None:
        raise NotFoundError("slot not found")
    reserved = await res_repo.sum_active_students(slot.id)
    return slot, available_seats(slot.capacity, reserved)


async def list_days_with_availability(
    event_repo: EventRepository,
    slot_repo: SlotRepository,
) -> List[Dict[str, Any]]:
    events = await event_repo.list_with_slots()
    reserved_by_slot = await slot_repo.reserved_by_slot()
    days: List[Dict[str, Any]] = []
    for event in events:
        slots = sorted(event.slots, key=lambda s: s.time_start)
        days.append(
            {
                "event": event,
                "day": format_day_label(event.event_date),
                "slots": [
                    {"slot": slot, "available": available_seats(slot.capacity, reserved_by_slot.get(slot.id, 0))}
                    for slot in slots
                ],
            }
        )
    return days
