from __future__ import annotations

import enum
import uuid
from datetime import datetime, timezone

from sqlalchemy import JSON, DateTime, Integer, String
from sqlalchemy.orm import Mapped, mapped_column

from .db import Base


def new_uuid() -> str:
    return str(uuid.uuid4())


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


class Role(str, enum.Enum):
    OWNER = "owner"
    STAFF = "staff"
    ADMIN = "admin"


class AppointmentStatus(str, enum.Enum):
    PENDING = "pending"
    APPROVED = "approved"
    COMPLETED = "completed"
    CANCELLED = "cancelled"


class HealthRecordType(str, enum.Enum):
    CHECKUP = "checkup"
    VACCINATION = "vaccination"
    MEDICATION = "medication"
    SURGERY = "surgery"


class ReminderType(str, enum.Enum):
    APPOINTMENT = "appointment"
    VACCINATION = "vaccination"


class Priority(str, enum.Enum):
    HIGH = "high"
    MEDIUM = "medium"


STAFF_ROLES = frozenset({Role.STAFF, Role.ADMIN})


class Record(Base):
    """
    A single key-value row.
    - key: namespaced id ("pet:<uuid>", "index:user_pets:<uuid>", ...)
    - value: JSON document
    - version: bumped on every write, used for compare-and-set
    """
    __tablename__ = "records"

    key: Mapped[str] = mapped_column(String(255), primary_key=True)
    value: Mapped[dict | list] = mapped_column(JSON, nullable=False)
    version: Mapped[int] = mapped_column(Integer, nullable=False, default=1)
    updated_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=utcnow, nullable=False)

    def __repr__(self) -> str:
        return f"Record({self.key}, v{self.version})"
