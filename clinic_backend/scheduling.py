from __future__ import annotations

import logging
from datetime import date, datetime, time, timedelta
from typing import Iterable, Union

from . import config
from .entities import Actor, Appointment, AppointmentUpdate, Block, ensure_utc
from .errors import Conflict, Forbidden, InvalidRequest, NotFound
from .models import AppointmentStatus, utcnow
from .services import load_pet, require_staff
from .store import (
    SCHEDULE_LOCK,
    RecordStore,
    appointment_key,
    block_key,
    serialized,
    snapshot,
    user_appointments_index,
)

logger = logging.getLogger(__name__)

# =========================
# Calendar rules
# =========================
OPENING_TIME = time(9, 0)
CLOSING_TIME = time(17, 0)
SLOT_MINUTES = 30
# Two non-cancelled appointments may never start less than this apart
BUFFER = timedelta(minutes=30)

_ALL_STATUSES = frozenset(AppointmentStatus)

# Any authorized actor may move an appointment to any status.
# completed -> pending is left open as well: restrict here if the clinic decides otherwise.
STATUS_TRANSITIONS: dict[AppointmentStatus, frozenset[AppointmentStatus]] = {
    AppointmentStatus.PENDING: _ALL_STATUSES,
    AppointmentStatus.APPROVED: _ALL_STATUSES,
    AppointmentStatus.COMPLETED: _ALL_STATUSES,
    AppointmentStatus.CANCELLED: _ALL_STATUSES,
}

UPDATABLE_FIELDS = ("date_time", "reason", "notes", "status", "pet_name")


def calendar_day(moment: datetime) -> date:
    """Day of ``moment`` as seen by the clinic."""
    return ensure_utc(moment).astimezone(config.CLINIC_TIMEZONE).date()


def generate_slots(day: date) -> list[datetime]:
    """Bookable start times of ``day``: 09:00 to 16:30 every 30 minutes (16 slots)."""
    start = datetime.combine(day, OPENING_TIME, tzinfo=config.CLINIC_TIMEZONE)
    end = datetime.combine(day, CLOSING_TIME, tzinfo=config.CLINIC_TIMEZONE)
    step = timedelta(minutes=SLOT_MINUTES)

    slots = []
    current = start
    while current < end:
        slots.append(current)
        current += step
    return slots


def find_conflict(
    candidate: datetime,
    appointments: Iterable[Appointment],
    blocks: Iterable[Block],
    exclude_id: str | None = None,
) -> Union[Block, Appointment, None]:
    """
    Why ``candidate`` cannot be booked, or None if it can.
    A block on the candidate's day takes precedence over appointment overlaps.
    """
    candidate = ensure_utc(candidate)
    day = calendar_day(candidate)

    block = next((b for b in blocks if b.date == day), None)
    if block is not None:
        return block

    return next(
        (
            a
            for a in appointments
            if not a.is_cancelled and a.id != exclude_id and abs(a.date_time - candidate) < BUFFER
        ),
        None,
    )


def _load_calendar(store: RecordStore) -> tuple[list[Appointment], list[Block]]:
    appointments = [Appointment.from_record(v) for v in store.scan_by_prefix("appointment:")]
    blocks = [Block.from_record(v) for v in store.scan_by_prefix("block:")]
    return appointments, blocks


def _raise_if_conflict(store: RecordStore, candidate: datetime, exclude_id: str | None = None) -> None:
    appointments, blocks = _load_calendar(store)
    conflict = find_conflict(candidate, appointments, blocks, exclude_id=exclude_id)
    if isinstance(conflict, Block):
        logger.warning("Booking rejected at %s: clinic blocked on %s", candidate.isoformat(), conflict.date)
        raise Conflict("Time slot unavailable - clinic blocked on this date", {"block": conflict.to_record()})
    if isinstance(conflict, Appointment):
        logger.warning("Booking rejected at %s: conflicts with %s", candidate.isoformat(), conflict.id)
        raise Conflict(
            "Time slot unavailable - conflicts with existing appointment",
            {"appointment": conflict.to_record()},
        )


# =========================
# Availability
# =========================
def is_available(candidate: datetime) -> bool:
    with snapshot() as store:
        appointments, blocks = _load_calendar(store)
    return find_conflict(candidate, appointments, blocks) is None


def list_day_slots(day: date) -> list[dict]:
    """Slot calendar of ``day`` with availability; polled by the booking screen."""
    with snapshot() as store:
        appointments, blocks = _load_calendar(store)
    return [
        {"date_time": slot.isoformat(), "available": find_conflict(slot, appointments, blocks) is None}
        for slot in generate_slots(day)
    ]


# =========================
# Appointments
# =========================
def create_appointment(
    actor: Actor,
    pet_id: str,
    date_time: datetime,
    reason: str,
    notes: str | None = None,
    pet_name: str | None = None,
) -> Appointment:
    """
    Use case: book an appointment.
    - rejects blocked days and anything within 30 minutes of a live appointment (409)
    - staff bookings belong to the pet's owner, owner bookings to the owner
    - conflict check, record and owner index are one serialized unit of work
    """
    if not reason or not reason.strip():
        raise InvalidRequest("Reason is required.")
    date_time = ensure_utc(date_time)

    with snapshot() as store:
        pet = load_pet(store, pet_id)
    if actor.is_staff:
        user_id = pet.owner_id
    elif pet.owner_id == actor.id:
        user_id = actor.id
    else:
        logger.warning("Forbidden: %s booking for pet %s of another owner", actor.id, pet_id)
        raise Forbidden("Forbidden: you can only book appointments for your own pets")

    index = user_appointments_index(user_id)
    with serialized(SCHEDULE_LOCK, index) as store:
        # the pet may have been deleted since the first read
        pet = load_pet(store, pet_id)
        _raise_if_conflict(store, date_time)

        appointment = Appointment(
            user_id=user_id,
            pet_id=pet_id,
            pet_name=pet_name or pet.name,
            date_time=date_time,
            reason=reason.strip(),
            notes=notes,
            status=AppointmentStatus.PENDING,
            created_by=actor.id,
        )
        store.set(appointment_key(appointment.id), appointment.to_record())
        store.append_to_index(index, appointment.id)

    logger.info(
        "Appointment created: %s at %s for user %s (by %s)",
        appointment.id,
        appointment.date_time.isoformat(),
        user_id,
        actor.id,
    )
    return appointment


def _load_appointment(store: RecordStore, appointment_id: str) -> Appointment:
    value = store.get(appointment_key(appointment_id))
    if value is None:
        raise NotFound("Appointment not found", {"appointment_id": appointment_id})
    return Appointment.from_record(value)


def _require_appointment_access(actor: Actor, appointment: Appointment) -> None:
    if appointment.user_id != actor.id and not actor.is_staff:
        logger.warning("Forbidden: %s on appointment %s", actor.id, appointment.id)
        raise Forbidden("Forbidden")


def get_appointment(actor: Actor, appointment_id: str) -> Appointment:
    with snapshot() as store:
        appointment = _load_appointment(store, appointment_id)
    _require_appointment_access(actor, appointment)
    return appointment


def list_appointments(actor: Actor, all_users: bool = False) -> list[Appointment]:
    with snapshot() as store:
        if all_users:
            require_staff(actor)
            values = store.scan_by_prefix("appointment:")
        else:
            values = store.load_index(user_appointments_index(actor.id), appointment_key)
    return sorted((Appointment.from_record(v) for v in values), key=lambda a: a.date_time)


def update_appointment(actor: Actor, appointment_id: str, changes: AppointmentUpdate) -> Appointment:
    """
    Partial update (date_time, reason, notes, status, pet_name).
    Moving the appointment or reviving a cancelled one re-runs the conflict check.
    """
    fields = changes.model_dump(exclude_unset=True, include=set(UPDATABLE_FIELDS))
    fields = {k: v for k, v in fields.items() if v is not None or k == "notes"}

    with serialized(SCHEDULE_LOCK) as store:
        current = _load_appointment(store, appointment_id)
        _require_appointment_access(actor, current)

        new_status = fields.get("status", current.status)
        if new_status not in STATUS_TRANSITIONS[current.status]:
            raise InvalidRequest(
                f"Status change {current.status.value} -> {new_status.value} not allowed",
                {"appointment": current.to_record()},
            )

        updated = current.model_copy(update={**fields, "updated_at": utcnow()})
        updated = Appointment.from_record(updated.to_record())

        moved = updated.date_time != current.date_time
        revived = current.is_cancelled and not updated.is_cancelled
        if not updated.is_cancelled and (moved or revived):
            _raise_if_conflict(store, updated.date_time, exclude_id=appointment_id)

        store.set(appointment_key(appointment_id), updated.to_record())

    if updated.status != current.status:
        logger.info("Appointment %s: %s -> %s (by %s)", appointment_id, current.status.value, updated.status.value, actor.id)
    else:
        logger.info("Appointment updated: %s (by %s)", appointment_id, actor.id)
    return updated


def cancel_appointment(actor: Actor, appointment_id: str) -> Appointment:
    return update_appointment(actor, appointment_id, AppointmentUpdate(status=AppointmentStatus.CANCELLED))


# =========================
# Blocks (clinic-wide blackout days)
# =========================
def create_block(actor: Actor, day: date, notes: str = "") -> Block:
    """One block per day: blocking an already blocked day replaces its notes."""
    require_staff(actor)
    with serialized(SCHEDULE_LOCK) as store:
        block = Block(date=day, notes=notes or "", created_by=actor.id)
        store.set(block_key(day), block.to_record())
    logger.info("Block created: %s (by %s)", block.id, actor.id)
    return block


def list_blocks(actor: Actor) -> list[Block]:
    require_staff(actor)
    with snapshot() as store:
        blocks = [Block.from_record(v) for v in store.scan_by_prefix("block:")]
    return sorted(blocks, key=lambda b: b.date)


def delete_block(actor: Actor, day: date) -> Block:
    require_staff(actor)
    with serialized(SCHEDULE_LOCK) as store:
        value = store.get(block_key(day))
        if value is None:
            raise NotFound("Block not found", {"date": day.isoformat()})
        store.delete(block_key(day))
    logger.info("Block deleted: %s (by %s)", day.isoformat(), actor.id)
    return Block.from_record(value)
