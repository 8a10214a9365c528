from __future__ import annotations

import logging
from typing import Any

from pydantic import ValidationError

from .duplicates import find_duplicate_pet
from .entities import Actor, HealthRecord, HealthRecordFields, Pet, PetFields, PetUpdate, User
from .errors import Conflict, Forbidden, InvalidRequest, NotFound
from .models import AppointmentStatus, Role, utcnow
from .store import (
    SCHEDULE_LOCK,
    USERS_LOCK,
    RecordStore,
    appointment_key,
    health_record_key,
    pet_key,
    pet_records_index,
    serialized,
    snapshot,
    user_key,
    user_pets_index,
)

logger = logging.getLogger(__name__)

OPEN_STATUSES = frozenset({AppointmentStatus.PENDING.value, AppointmentStatus.APPROVED.value})
REQUIRED_PET_FIELDS = ("name", "species")


# =========================
# Helpers
# =========================
def require_staff(actor: Actor) -> None:
    if not actor.is_staff:
        logger.warning("Forbidden: %s (%s) is not staff", actor.id, actor.role.value)
        raise Forbidden("Forbidden: Staff access required")


def require_pet_access(actor: Actor, pet: Pet) -> None:
    """Owner of the pet or staff."""
    if pet.owner_id != actor.id and not actor.is_staff:
        logger.warning("Forbidden: %s is not the owner of pet %s", actor.id, pet.id)
        raise Forbidden("Forbidden: only the owner or staff may access this pet")


def load_pet(store: RecordStore, pet_id: str) -> Pet:
    value = store.get(pet_key(pet_id))
    if value is None:
        raise NotFound("Pet not found", {"pet_id": pet_id})
    return Pet.from_record(value)


def _pet_owner_id(pet_id: str) -> str:
    # owner_id is immutable: safe to read it before taking the owner's locks
    with snapshot() as store:
        return load_pet(store, pet_id).owner_id


# =========================
# Users
# =========================
def _find_user_by_email(store: RecordStore, email: str) -> User | None:
    email = email.strip().lower()
    return next(
        (User.from_record(u) for u in store.scan_by_prefix("user:") if u.get("email") == email),
        None,
    )


def create_user(
    email: str,
    name: str,
    role: Role = Role.OWNER,
    phone: str | None = None,
    user_id: str | None = None,
) -> User:
    """
    Profile of a user of the identity provider.
    user_id: the provider's subject, so that its tokens resolve to this profile.
    """
    email = email.strip().lower()
    if not email or not name.strip():
        raise InvalidRequest("Email and name are required.")

    with serialized(USERS_LOCK) as store:
        existing = _find_user_by_email(store, email)
        if existing is None and user_id and store.get(user_key(user_id)) is not None:
            existing = User.from_record(store.get(user_key(user_id)))
        if existing:
            raise Conflict("User already registered.", {"user": existing.to_record()})

        user = User(email=email, name=name.strip(), role=role, phone=phone)
        if user_id:
            user.id = user_id
        store.set(user_key(user.id), user.to_record())

    logger.info("User created: %s (%s)", user.id, user.role.value)
    return user


def get_user(user_id: str) -> User | None:
    with snapshot() as store:
        value = store.get(user_key(user_id))
        return User.from_record(value) if value else None


def get_user_by_email(email: str) -> User | None:
    with snapshot() as store:
        return _find_user_by_email(store, email)


# =========================
# Pets
# =========================
def create_pet(actor: Actor, fields: PetFields, owner_id: str | None = None) -> Pet:
    """
    Use case: register a pet.
    - staff may register a pet for another owner
    - duplicates of one of the owner's pets are rejected (409, existing pet attached)
    - record + owner's pet index are written in the same unit of work
    """
    owner_id = owner_id or actor.id
    if owner_id != actor.id:
        require_staff(actor)

    index = user_pets_index(owner_id)
    with serialized(index) as store:
        if owner_id != actor.id and store.get(user_key(owner_id)) is None:
            raise NotFound("Owner not found", {"owner_id": owner_id})

        existing = [Pet.from_record(v) for v in store.load_index(index, pet_key)]
        duplicate = find_duplicate_pet(fields, existing)
        if duplicate:
            logger.warning("Duplicate pet for owner %s: matches %s", owner_id, duplicate.id)
            raise Conflict("Duplicate pet exists", {"pet": duplicate.to_record()})

        pet = Pet(owner_id=owner_id, **fields.model_dump())
        store.set(pet_key(pet.id), pet.to_record())
        store.append_to_index(index, pet.id)

    logger.info("Pet created: %s for owner %s", pet.id, owner_id)
    return pet


def get_pet(actor: Actor, pet_id: str) -> Pet:
    with snapshot() as store:
        pet = load_pet(store, pet_id)
    require_pet_access(actor, pet)
    return pet


def list_pets(actor: Actor) -> list[Pet]:
    with snapshot() as store:
        pets = [Pet.from_record(v) for v in store.load_index(user_pets_index(actor.id), pet_key)]
    return sorted(pets, key=lambda p: p.name.lower())


def list_all_pets_flat(actor: Actor) -> list[dict[str, Any]]:
    """
    Every pet, enriched with the owner's contacts so staff can see who to call
    when booking on someone's behalf.
    """
    require_staff(actor)
    with snapshot() as store:
        pets = store.scan_by_prefix("pet:")
        owner_ids = sorted({p["owner_id"] for p in pets})
        owners = dict(zip(owner_ids, store.multi_get(user_key(o) for o in owner_ids)))

    rows = []
    for p in pets:
        owner = owners.get(p["owner_id"]) or {}
        rows.append(
            {
                **p,
                "owner_name": owner.get("name"),
                "owner_email": owner.get("email"),
                "owner_phone": owner.get("phone"),
            }
        )
    return sorted(rows, key=lambda r: (r["name"].lower(), r["id"]))


def update_pet(actor: Actor, pet_id: str, changes: PetUpdate) -> Pet:
    """
    Partial update: only the fields sent are applied.
    - name and species cannot be cleared (null is ignored), a null breed becomes ""
    - values the Pet record would reject are an InvalidRequest listing the fields
    """
    with serialized(pet_key(pet_id)) as store:
        pet = load_pet(store, pet_id)
        require_pet_access(actor, pet)

        changed = changes.model_dump(mode="json", exclude_unset=True)
        changed = {k: v for k, v in changed.items() if v is not None or k not in REQUIRED_PET_FIELDS}
        if "breed" in changed and changed["breed"] is None:
            changed["breed"] = ""
        data = {**pet.to_record(), **changed, "updated_at": utcnow().isoformat()}
        try:
            updated = Pet.from_record(data)
        except ValidationError as exc:
            fields = sorted({".".join(str(part) for part in err["loc"]) for err in exc.errors()})
            logger.warning("Pet update rejected: %s (invalid %s)", pet_id, ", ".join(fields))
            raise InvalidRequest("Invalid pet fields", {"fields": fields}) from exc
        store.set(pet_key(pet_id), updated.to_record())

    logger.info("Pet updated: %s", pet_id)
    return updated


def delete_pet(actor: Actor, pet_id: str) -> Pet:
    """
    Use case: delete a pet.
    - removes the pet from its owner's index
    - deletes its health records and their index
    - cancels its open appointments, so they no longer hold their slots
    """
    owner_id = _pet_owner_id(pet_id)
    records_index = pet_records_index(pet_id)

    with serialized(pet_key(pet_id), user_pets_index(owner_id), records_index, SCHEDULE_LOCK) as store:
        pet = load_pet(store, pet_id)
        require_pet_access(actor, pet)

        for record_id in store.read_index(records_index):
            store.delete(health_record_key(record_id))
        store.delete(records_index)

        cancelled = 0
        for apt in store.scan_by_prefix("appointment:"):
            if apt.get("pet_id") == pet_id and apt.get("status") in OPEN_STATUSES:
                apt.update(status=AppointmentStatus.CANCELLED.value, updated_at=utcnow().isoformat())
                store.set(appointment_key(apt["id"]), apt)
                cancelled += 1

        store.delete(pet_key(pet_id))
        store.remove_from_index(user_pets_index(owner_id), pet_id)

    logger.info("Pet deleted: %s (by %s, %s open appointments cancelled)", pet_id, actor.id, cancelled)
    return pet


# =========================
# Health records
# =========================
def create_health_record(actor: Actor, pet_id: str, fields: HealthRecordFields) -> HealthRecord:
    index = pet_records_index(pet_id)
    with serialized(index) as store:
        pet = load_pet(store, pet_id)
        require_pet_access(actor, pet)

        record = HealthRecord(pet_id=pet_id, added_by=actor.id, **fields.model_dump())
        store.set(health_record_key(record.id), record.to_record())
        store.append_to_index(index, record.id)

    logger.info("Health record created: %s for pet %s", record.id, pet_id)
    return record


def list_health_records(actor: Actor, pet_id: str) -> list[HealthRecord]:
    with snapshot() as store:
        pet = load_pet(store, pet_id)
        require_pet_access(actor, pet)
        records = [HealthRecord.from_record(v) for v in store.load_index(pet_records_index(pet_id), health_record_key)]
    return sorted(records, key=lambda r: (r.date, r.created_at), reverse=True)


def delete_health_record(actor: Actor, record_id: str) -> HealthRecord:
    with snapshot() as store:
        value = store.get(health_record_key(record_id))
    if value is None:
        raise NotFound("Health record not found", {"record_id": record_id})
    pet_id = value["pet_id"]

    index = pet_records_index(pet_id)
    with serialized(index) as store:
        value = store.get(health_record_key(record_id))
        if value is None:
            raise NotFound("Health record not found", {"record_id": record_id})
        record = HealthRecord.from_record(value)
        require_pet_access(actor, load_pet(store, pet_id))

        store.delete(health_record_key(record_id))
        store.remove_from_index(index, record_id)

    logger.info("Health record deleted: %s", record_id)
    return record
