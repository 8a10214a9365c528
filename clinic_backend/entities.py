"""
Entities persisted in the record store, plus the actor and the derived reminder.

Every persisted entity is a pydantic model serialized with ``to_record()`` and
rebuilt with ``from_record()``; the store only ever sees JSON documents.
"""
from __future__ import annotations

from dataclasses import dataclass
from datetime import date, datetime, timezone
from typing import Any, Optional

from pydantic import BaseModel, ConfigDict, Field, field_validator

from .models import STAFF_ROLES, AppointmentStatus, HealthRecordType, Priority, ReminderType, Role, new_uuid, utcnow


def ensure_utc(value: datetime) -> datetime:
    """Naive datetimes are taken as UTC; aware ones are converted."""
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


@dataclass(frozen=True)
class Actor:
    """Caller already resolved by the identity layer."""
    id: str
    role: Role

    @property
    def is_staff(self) -> bool:
        return self.role in STAFF_ROLES


class StoredEntity(BaseModel):
    model_config = ConfigDict(extra="ignore")

    def to_record(self) -> dict[str, Any]:
        return self.model_dump(mode="json")

    @classmethod
    def from_record(cls, value: dict[str, Any]):
        return cls.model_validate(value)


# =========================
# Users
# =========================
class User(StoredEntity):
    id: str = Field(default_factory=new_uuid)
    email: str
    name: str
    role: Role = Role.OWNER
    phone: Optional[str] = None
    created_at: datetime = Field(default_factory=utcnow)


# =========================
# Pets
# =========================
class PetFields(BaseModel):
    name: str = Field(..., min_length=1)
    species: str = Field(..., min_length=1)
    breed: str = ""
    date_of_birth: Optional[date] = None
    weight: Optional[float] = None
    microchip_id: Optional[str] = None
    next_vaccination_date: Optional[date] = None
    medical_notes: Optional[str] = None


class PetUpdate(BaseModel):
    name: Optional[str] = None
    species: Optional[str] = None
    breed: Optional[str] = None
    date_of_birth: Optional[date] = None
    weight: Optional[float] = None
    microchip_id: Optional[str] = None
    next_vaccination_date: Optional[date] = None
    medical_notes: Optional[str] = None


class Pet(StoredEntity, PetFields):
    id: str = Field(default_factory=new_uuid)
    owner_id: str
    created_at: datetime = Field(default_factory=utcnow)
    updated_at: datetime = Field(default_factory=utcnow)


# =========================
# Appointments
# =========================
class Appointment(StoredEntity):
    id: str = Field(default_factory=new_uuid)
    user_id: str
    pet_id: str
    pet_name: str = ""
    date_time: datetime
    reason: str
    notes: Optional[str] = None
    status: AppointmentStatus = AppointmentStatus.PENDING
    created_by: Optional[str] = None
    created_at: datetime = Field(default_factory=utcnow)
    updated_at: datetime = Field(default_factory=utcnow)

    @field_validator("date_time")
    @classmethod
    def normalize_date_time(cls, value: datetime) -> datetime:
        return ensure_utc(value)

    @property
    def is_cancelled(self) -> bool:
        return self.status == AppointmentStatus.CANCELLED


class AppointmentUpdate(BaseModel):
    date_time: Optional[datetime] = None
    reason: Optional[str] = None
    notes: Optional[str] = None
    status: Optional[AppointmentStatus] = None
    pet_name: Optional[str] = None

    @field_validator("date_time")
    @classmethod
    def normalize_date_time(cls, value: Optional[datetime]) -> Optional[datetime]:
        return ensure_utc(value) if value is not None else None


class Block(StoredEntity):
    """Clinic-wide blackout day; the id is the ISO date so there is one block per day."""
    id: str = ""
    date: date
    notes: str = ""
    created_at: datetime = Field(default_factory=utcnow)
    created_by: Optional[str] = None

    def model_post_init(self, __context: Any) -> None:
        if not self.id:
            self.id = self.date.isoformat()


# =========================
# Health records
# =========================
class HealthRecordFields(BaseModel):
    record_type: HealthRecordType
    title: str = Field(..., min_length=1)
    description: str = ""
    date: date
    veterinarian: Optional[str] = None
    medications: Optional[str] = None
    follow_up: Optional[str] = None


class HealthRecord(StoredEntity, HealthRecordFields):
    id: str = Field(default_factory=new_uuid)
    pet_id: str
    added_by: str
    created_at: datetime = Field(default_factory=utcnow)


# =========================
# Reminders (derived, never stored)
# =========================
@dataclass(frozen=True)
class Reminder:
    id: str
    type: ReminderType
    pet_id: str
    message: str
    date_time: str
    priority: Priority
    appointment_id: str | None = None
    pet_name: str | None = None
