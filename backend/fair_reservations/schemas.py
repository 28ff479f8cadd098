from datetime import date, datetime
from typing import Optional

from pydantic import BaseModel, EmailStr, Field, field_validator

from .models import Event, Reservation, ReservationStatus, TimeSlot

INSTITUTION_CODE_PATTERN = r"^[A-Za-z0-9]{1,10}$"
PHONE_PATTERN = r"^\d{10}$"


class _ReservationFields(BaseModel):
    @field_validator(
        "institution_code",
        "school_name",
        "coordinator_name",
        "coordinator_last_name",
        "phone",
        mode="before",
        check_fields=False,
    )
    @classmethod
    def _strip(cls, value: object) -> object:
        return value.strip() if isinstance(value, str) else value


class ReservationCreate(_ReservationFields):
    institution_code: str = Field(pattern=INSTITUTION_CODE_PATTERN)
    school_name: str = Field(min_length=1, max_length=255)
    coordinator_name: str = Field(min_length=1, max_length=100)
    coordinator_last_name: Optional[str] = Field(default=None, max_length=100)
    email: EmailStr
    phone: str = Field(pattern=PHONE_PATTERN)
    student_count: int = Field(ge=1)
    event_id: int = Field(ge=1)
    slot_id: int = Field(ge=1)


class ReservationUpdate(_ReservationFields):
    institution_code: Optional[str] = Field(default=None, pattern=INSTITUTION_CODE_PATTERN)
    school_name: Optional[str] = Field(default=None, min_length=1, max_length=255)
    coordinator_name: Optional[str] = Field(default=None, min_length=1, max_length=100)
    coordinator_last_name: Optional[str] = Field(default=None, max_length=100)
    email: Optional[EmailStr] = None
    phone: Optional[str] = Field(default=None, pattern=PHONE_PATTERN)
    student_count: Optional[int] = Field(default=None, ge=1)
    event_id: Optional[int] = Field(default=None, ge=1)
    slot_id: Optional[int] = Field(default=None, ge=1)
    status: Optional[ReservationStatus] = None


class ReservationRead(BaseModel):
    reservation_id: int
    institution_code: str
    school_name: str
    coordinator_name: str
    coordinator_last_name: Optional[str]
    email: str
    phone: str
    student_count: int
    event_id: int
    slot_id: int
    status: ReservationStatus
    created_at: datetime
    updated_at: datetime
    confirmed_at: Optional[datetime]
    email_sent: Optional[bool] = None

    @classmethod
    def from_db(cls, *, reservation: Reservation, email_sent: Optional[bool] = None) -> "ReservationRead":
        return cls(
            reservation_id=reservation.id,
            institution_code=reservation.institution_code,
            school_name=reservation.school_name,
            coordinator_name=reservation.coordinator_name,
            coordinator_last_name=reservation.coordinator_last_name,
            email=reservation.email,
            phone=reservation.phone,
            student_count=reservation.student_count,
            event_id=reservation.event_id,
            slot_id=reservation.slot_id,
            status=reservation.status,
            created_at=reservation.created_at,
            updated_at=reservation.updated_at,
            confirmed_at=reservation.confirmed_at,
            email_sent=email_sent,
        )


class SlotAvailability(BaseModel):
    slot_id: int
    event_id: int
    time: str
    capacity: int
    available: int = Field(ge=0)

    @classmethod
    def from_db(cls, *, slot: TimeSlot, available: int) -> "SlotAvailability":
        return cls(
            slot_id=slot.id,
            event_id=slot.event_id,
            time=slot.label,
            capacity=slot.capacity,
            available=available,
        )


class EventDay(BaseModel):
    event_id: int
    event_date: date
    day: str
    slots: list[SlotAvailability]

    @classmethod
    def from_db(cls, *, event: Event, day: str, slots: list[SlotAvailability]) -> "EventDay":
        return cls(event_id=event.id, event_date=event.event_date, day=day, slots=slots)


class InstitutionLookup(BaseModel):
    code: str
    name: str
    found: bool = True
