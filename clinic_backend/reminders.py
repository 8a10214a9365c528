"""
Reminders are never stored: they are derived on every call from the user's
appointments and pets, then filtered by the user's set of dismissed ids.
"""
from __future__ import annotations

import logging
import math
from datetime import date, datetime, time, timedelta
from typing import Iterable

from . import config
from .entities import Actor, Appointment, Pet, Reminder, ensure_utc
from .models import AppointmentStatus, Priority, ReminderType, utcnow
from .store import (
    appointment_key,
    dismissed_reminders_key,
    pet_key,
    serialized,
    snapshot,
    user_appointments_index,
    user_pets_index,
)

logger = logging.getLogger(__name__)

DAY = timedelta(days=1)

APPOINTMENT_WINDOW = (0, 7)      # days ahead
VACCINATION_WINDOW = (-7, 14)    # up to 7 days overdue, up to 14 days ahead


def days_until(moment: datetime, now: datetime) -> int:
    """Whole days from ``now`` to ``moment``, rounded up (ceil)."""
    return math.ceil((ensure_utc(moment) - ensure_utc(now)) / DAY)


def vaccination_moment(due: date) -> datetime:
    """A due date means the start of that day in the clinic timezone."""
    return datetime.combine(due, time.min, tzinfo=config.CLINIC_TIMEZONE)


def vaccination_reminder_id(pet_id: str, due: date) -> str:
    # a new due date yields a new identity, so an old dismissal does not hide it
    return f"vaccination:{pet_id}:{due.isoformat()}"


def in_vaccination_window(due: date, now: datetime) -> bool:
    low, high = VACCINATION_WINDOW
    return low <= days_until(vaccination_moment(due), now) <= high


def appointment_reminders(appointments: Iterable[Appointment], now: datetime) -> list[Reminder]:
    low, high = APPOINTMENT_WINDOW
    out = []
    for apt in appointments:
        if apt.status != AppointmentStatus.PENDING:
            continue
        n = days_until(apt.date_time, now)
        if not low <= n <= high:
            continue
        out.append(
            Reminder(
                id=apt.id,
                type=ReminderType.APPOINTMENT,
                pet_id=apt.pet_id,
                appointment_id=apt.id,
                pet_name=apt.pet_name or None,
                message=f"Upcoming appointment in {n} days",
                date_time=apt.date_time.isoformat(),
                priority=Priority.HIGH if n <= 1 else Priority.MEDIUM,
            )
        )
    return out


def vaccination_reminders(pets: Iterable[Pet], now: datetime) -> list[Reminder]:
    out = []
    for pet in pets:
        due = pet.next_vaccination_date
        if due is None or not in_vaccination_window(due, now):
            continue
        n = days_until(vaccination_moment(due), now)
        message = (
            f"{pet.name}'s vaccination due in {n} days"
            if n >= 0
            else f"{pet.name}'s vaccination is {abs(n)} days overdue"
        )
        out.append(
            Reminder(
                id=vaccination_reminder_id(pet.id, due),
                type=ReminderType.VACCINATION,
                pet_id=pet.id,
                pet_name=pet.name,
                message=message,
                date_time=due.isoformat(),
                priority=Priority.HIGH if n <= 0 else Priority.MEDIUM,
            )
        )
    return out


def build_reminders(appointments: Iterable[Appointment], pets: Iterable[Pet], now: datetime) -> list[Reminder]:
    return appointment_reminders(appointments, now) + vaccination_reminders(pets, now)


def apply_dismissals(reminders: Iterable[Reminder], dismissed: Iterable[str]) -> list[Reminder]:
    dismissed = set(dismissed)
    return [r for r in reminders if r.id not in dismissed]


def get_reminders(actor: Actor, now: datetime | None = None) -> list[Reminder]:
    now = now or utcnow()
    with snapshot() as store:
        pets = [Pet.from_record(v) for v in store.load_index(user_pets_index(actor.id), pet_key)]
        appointments = [Appointment.from_record(v) for v in store.load_index(user_appointments_index(actor.id), appointment_key)]
        dismissed = store.read_index(dismissed_reminders_key(actor.id))
    return apply_dismissals(build_reminders(appointments, pets, now), dismissed)


def dismiss_reminder(actor: Actor, reminder_id: str) -> list[str]:
    """Hide a reminder id for this user from now on (idempotent)."""
    key = dismissed_reminders_key(actor.id)
    with serialized(key) as store:
        dismissed = store.append_to_index(key, reminder_id)
    logger.info("Reminder dismissed: %s (user %s)", reminder_id, actor.id)
    return dismissed
