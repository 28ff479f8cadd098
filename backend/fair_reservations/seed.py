"""Create tables and seed the fair days.

Usage:
    python -m fair_reservations.seed
"""

import asyncio
import logging
from datetime import date

from sqlalchemy import select

from .database import async_session, engine
from .models import Base, Event, TimeSlot
from .utils.time import utc_now_naive

logger = logging.getLogger(__name__)

EVENT_NAME = "Global Money Week 2026"
EVENT_DATES = (date(2026, 3, 16), date(2026, 3, 17), date(2026, 3, 18))
SLOT_TIMES = (("09h00", "11h00"), ("11h00", "13h00"), ("13h00", "15h00"))
SLOT_CAPACITY = 200


async def seed() -> int:
    """Insert missing event days with their slots. Returns the number of days created."""
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)

    created = 0
    async with async_session() as session, session.begin():
        for event_date in EVENT_DATES:
            existing = await session.scalar(select(Event).where(Event.event_date == event_date))
            if existing is not None:
                logger.info("event %s already exists, skipping", event_date.isoformat())
                continue
            event = Event(name=EVENT_NAME, event_date=event_date, created_at=utc_now_naive())
            event.slots = [
                TimeSlot(time_start=start, time_end=end, capacity=SLOT_CAPACITY) for start, end in SLOT_TIMES
            ]
            session.add(event)
            created += 1
            logger.info("event %s created with %d slots", event_date.isoformat(), len(SLOT_TIMES))
    return created


def main() -> None:
    logging.basicConfig(level=logging.INFO, format="[%(asctime)s] %(levelname)s [%(name)s] %(message)s")
    asyncio.run(seed())


if __name__ == "__main__":
    main()
