from __future__ import annotations

from datetime import date, timedelta

from .entities import Actor, PetFields
from .models import Role
from .services import create_pet, create_user, get_user_by_email, list_pets


def seed_base() -> None:
    """
    Loads minimal demo data (idempotent):
    - a staff member and two owners
    - a couple of pets, one with a vaccination due soon
    """
    users = [
        ("staff@clinic.local", "Front Desk", Role.STAFF),
        ("anna.owner@clinic.local", "Anna Rossi", Role.OWNER),
        ("marco.owner@clinic.local", "Marco Bianchi", Role.OWNER),
    ]
    for email, name, role in users:
        if get_user_by_email(email) is None:
            create_user(email, name, role)

    soon = date.today() + timedelta(days=5)
    pets = {
        "anna.owner@clinic.local": [
            PetFields(name="Fido", species="dog", breed="beagle", date_of_birth=date(2020, 4, 2), weight=11.5,
                      next_vaccination_date=soon),
        ],
        "marco.owner@clinic.local": [
            PetFields(name="Micia", species="cat", breed="european", date_of_birth=date(2019, 9, 15), weight=4.2,
                      microchip_id="380260000000001"),
        ],
    }
    for email, owner_pets in pets.items():
        owner = get_user_by_email(email)
        actor = Actor(id=owner.id, role=owner.role)
        existing = {p.name for p in list_pets(actor)}
        for fields in owner_pets:
            if fields.name not in existing:
                create_pet(actor, fields)
