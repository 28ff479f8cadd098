from __future__ import annotations

from dataclasses import dataclass
from typing import Protocol


@dataclass(frozen=True)
class ConfirmationEmail:
    email: str
    school_name: str
    coordinator_name: str
    day_label: str
    slot_label: str
    student_count: int
    reservation_id: int
    confirm_link: str


class ConfirmationNotifier(Protocol):
    async def send_confirmation(self, message: ConfirmationEmail) -> bool:
        """Deliver the confirmation email. Returns False when it was not sent."""
        ...
