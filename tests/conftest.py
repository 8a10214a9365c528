from __future__ import annotations

from datetime import date, datetime, timezone
from zoneinfo import ZoneInfo

import pytest

from clinic_backend import config, db, services
from clinic_backend.entities import Actor, PetFields
from clinic_backend.models import Role
from clinic_backend.store import (
    pet_records_index,
    snapshot,
    user_appointments_index,
    user_pets_index,
)

# A Monday, far enough in the future for every booking test
DAY = date(2030, 3, 4)
NOW = datetime(2030, 3, 4, 12, 0, tzinfo=timezone.utc)


@pytest.fixture(autouse=True)
def database(tmp_path, monkeypatch):
    monkeypatch.setattr(config, "CLINIC_TIMEZONE", ZoneInfo("UTC"))
    db.configure_engine(f"sqlite:///{tmp_path / 'clinic.sqlite'}")
    db.init_db()
    yield
    db.engine.dispose()


def as_actor(user) -> Actor:
    return Actor(id=user.id, role=user.role)


@pytest.fixture
def staff() -> Actor:
    return as_actor(services.create_user("staff@clinic.test", "Front Desk", Role.STAFF))


@pytest.fixture
def admin() -> Actor:
    return as_actor(services.create_user("admin@clinic.test", "Admin", Role.ADMIN))


@pytest.fixture
def owner() -> Actor:
    return as_actor(services.create_user("anna@clinic.test", "Anna", Role.OWNER, phone="+39 333 000000"))


@pytest.fixture
def other_owner() -> Actor:
    return as_actor(services.create_user("marco@clinic.test", "Marco", Role.OWNER))


@pytest.fixture
def pet(owner):
    return services.create_pet(
        owner,
        PetFields(name="Fido", species="dog", breed="beagle", date_of_birth=date(2020, 4, 2), weight=11.5),
    )


@pytest.fixture
def other_pet(other_owner):
    return services.create_pet(
        other_owner,
        PetFields(name="Micia", species="cat", breed="european", date_of_birth=date(2019, 9, 15)),
    )


def _check_indexes() -> None:
    """Every index list equals exactly the set of live records pointing at its owner/pet."""
    with snapshot() as store:
        users = store.scan_by_prefix("user:")
        pets = store.scan_by_prefix("pet:")
        appointments = store.scan_by_prefix("appointment:")
        records = store.scan_by_prefix("record:")
        pet_ids = {p["id"] for p in pets}

        for u in users:
            pet_index = store.read_index(user_pets_index(u["id"]))
            assert len(pet_index) == len(set(pet_index))
            assert set(pet_index) == {p["id"] for p in pets if p["owner_id"] == u["id"]}

            apt_index = store.read_index(user_appointments_index(u["id"]))
            assert len(apt_index) == len(set(apt_index))
            assert set(apt_index) == {a["id"] for a in appointments if a["user_id"] == u["id"]}

        for p in pets:
            rec_index = store.read_index(pet_records_index(p["id"]))
            assert set(rec_index) == {r["id"] for r in records if r["pet_id"] == p["id"]}

        # no orphaned health records
        assert all(r["pet_id"] in pet_ids for r in records)


@pytest.fixture
def check_indexes():
    return _check_indexes
