from __future__ import annotations

from datetime import datetime, timedelta, timezone

import pytest
from fastapi.testclient import TestClient

from clinic_backend import scheduling
from clinic_backend.api_main import app
from clinic_backend.identity import create_access_token

from conftest import DAY


@pytest.fixture
def client() -> TestClient:
    return TestClient(app)


def _auth(actor) -> dict[str, str]:
    return {"Authorization": f"Bearer {create_access_token(actor.id)}"}


def _slot(hour: int, minute: int = 0) -> str:
    return f"{DAY.isoformat()}T{hour:02d}:{minute:02d}:00+00:00"


def test_health(client):
    resp = client.get("/api/health")
    assert resp.status_code == 200
    assert resp.json()["status"] == "ok"


def test_missing_or_invalid_token_is_401(client, owner):
    assert client.get("/api/pets").status_code == 401

    resp = client.get("/api/pets", headers={"Authorization": "Bearer not-a-jwt"})
    assert resp.status_code == 401
    assert resp.json() == {"error": "Unauthorized"}

    resp = client.get("/api/pets", headers={"Authorization": f"Bearer {create_access_token('ghost')}"})
    assert resp.status_code == 401
    assert resp.json() == {"error": "Profile not found"}


def test_register_owner_and_me(client):
    resp = client.post("/api/users", json={"id": "idp-1", "email": "Luca@clinic.test", "name": "Luca"})
    assert resp.status_code == 200
    assert resp.json()["user"]["email"] == "luca@clinic.test"

    headers = {"Authorization": f"Bearer {create_access_token('idp-1')}"}
    me = client.get("/api/me", headers=headers).json()["profile"]
    assert me["id"] == "idp-1"
    assert me["role"] == "owner"

    again = client.post("/api/users", json={"email": "luca@clinic.test", "name": "Luca"})
    assert again.status_code == 409
    assert again.json()["user"]["id"] == "idp-1"


def test_self_registration_cannot_pick_a_staff_role(client):
    resp = client.post("/api/users", json={"email": "evil@clinic.test", "name": "Evil", "role": "admin"})
    assert resp.status_code == 403


def test_pet_lifecycle(client, owner):
    headers = _auth(owner)
    body = {"name": "Fido", "species": "dog", "breed": "beagle", "date_of_birth": "2020-04-02"}

    created = client.post("/api/pets", json=body, headers=headers)
    assert created.status_code == 200
    pet_id = created.json()["pet"]["id"]

    dup = client.post("/api/pets", json={**body, "name": "FIDO"}, headers=headers)
    assert dup.status_code == 409
    assert dup.json()["error"] == "Duplicate pet exists"
    assert dup.json()["pet"]["id"] == pet_id

    assert [p["id"] for p in client.get("/api/pets", headers=headers).json()["pets"]] == [pet_id]

    updated = client.put(f"/api/pets/{pet_id}", json={"weight": 12.5}, headers=headers)
    assert updated.json()["pet"]["weight"] == 12.5

    assert client.delete(f"/api/pets/{pet_id}", headers=headers).json() == {"deleted": pet_id}
    assert client.get(f"/api/pets/{pet_id}", headers=headers).status_code == 404


def test_pet_update_with_null_or_empty_fields(client, owner, pet):
    headers = _auth(owner)

    cleared = client.put(f"/api/pets/{pet.id}", json={"breed": None}, headers=headers)
    assert cleared.status_code == 200
    assert cleared.json()["pet"]["breed"] == ""

    empty_name = client.put(f"/api/pets/{pet.id}", json={"name": ""}, headers=headers)
    assert empty_name.status_code == 400
    assert empty_name.json() == {"error": "Invalid pet fields", "fields": ["name"]}


def test_invalid_body_is_rejected(client, owner):
    resp = client.post("/api/pets", json={"species": "dog"}, headers=_auth(owner))
    assert resp.status_code == 422


def test_staff_only_routes(client, owner, staff, pet):
    for path in ("/api/pets/all", "/api/appointments/all", "/api/blocks", "/api/dashboard/stats"):
        assert client.get(path, headers=_auth(owner)).status_code == 403
        assert client.get(path, headers=_auth(staff)).status_code == 200

    rows = client.get("/api/pets/all", headers=_auth(staff)).json()["pets"]
    assert rows[0]["owner_email"] == "anna@clinic.test"


def test_booking_flow(client, owner, other_owner, staff, pet, other_pet):
    resp = client.post(
        "/api/appointments",
        json={"pet_id": pet.id, "date_time": _slot(10), "reason": "Checkup"},
        headers=_auth(owner),
    )
    assert resp.status_code == 200
    apt = resp.json()["appointment"]
    assert apt["status"] == "pending"

    clash = client.post(
        "/api/appointments",
        json={"pet_id": other_pet.id, "date_time": _slot(10, 15), "reason": "Vaccine"},
        headers=_auth(other_owner),
    )
    assert clash.status_code == 409
    assert clash.json()["appointment"]["id"] == apt["id"]

    forbidden = client.post(
        "/api/appointments",
        json={"pet_id": pet.id, "date_time": _slot(12), "reason": "Checkup"},
        headers=_auth(other_owner),
    )
    assert forbidden.status_code == 403

    slots = client.get("/api/slots", params={"day": DAY.isoformat()}, headers=_auth(owner)).json()["slots"]
    assert len(slots) == 16
    assert sum(1 for s in slots if not s["available"]) == 1

    approved = client.put(f"/api/appointments/{apt['id']}", json={"status": "approved"}, headers=_auth(staff))
    assert approved.json()["appointment"]["status"] == "approved"
    assert client.get(f"/api/appointments/{apt['id']}", headers=_auth(other_owner)).status_code == 403

    mine = client.get("/api/appointments", headers=_auth(owner)).json()["appointments"]
    assert [a["id"] for a in mine] == [apt["id"]]


def test_blocks(client, staff, owner, pet):
    resp = client.post("/api/blocks", json={"date": DAY.isoformat(), "notes": "Training"}, headers=_auth(staff))
    assert resp.json()["block"]["id"] == DAY.isoformat()

    blocked = client.post(
        "/api/appointments",
        json={"pet_id": pet.id, "date_time": _slot(11), "reason": "Checkup"},
        headers=_auth(owner),
    )
    assert blocked.status_code == 409
    assert blocked.json()["block"]["date"] == DAY.isoformat()

    assert client.post("/api/blocks", json={"date": DAY.isoformat()}, headers=_auth(owner)).status_code == 403
    assert client.delete(f"/api/blocks/{DAY.isoformat()}", headers=_auth(staff)).json() == {"deleted": DAY.isoformat()}
    assert client.delete(f"/api/blocks/{DAY.isoformat()}", headers=_auth(staff)).status_code == 404


def test_health_records(client, owner, other_owner, pet):
    body = {"pet_id": pet.id, "record_type": "vaccination", "title": "Rabies", "date": "2030-01-15"}
    created = client.post("/api/health-records", json=body, headers=_auth(owner))
    record_id = created.json()["record"]["id"]

    records = client.get(f"/api/health-records/{pet.id}", headers=_auth(owner)).json()["records"]
    assert [r["id"] for r in records] == [record_id]
    assert client.get(f"/api/health-records/{pet.id}", headers=_auth(other_owner)).status_code == 403

    assert client.delete(f"/api/health-records/{record_id}", headers=_auth(owner)).json() == {"deleted": record_id}


def test_reminders_and_dismiss(client, owner, pet):
    tomorrow = datetime.now(timezone.utc) + timedelta(days=1)
    apt = scheduling.create_appointment(owner, pet.id, tomorrow, "Checkup")

    items = client.get("/api/reminders", headers=_auth(owner)).json()["reminders"]
    assert [r["id"] for r in items] == [apt.id]
    assert items[0]["type"] == "appointment"
    assert items[0]["priority"] == "high"

    dismissed = client.post(f"/api/reminders/{apt.id}/dismiss", headers=_auth(owner)).json()
    assert dismissed == {"dismissed": [apt.id]}
    assert client.get("/api/reminders", headers=_auth(owner)).json()["reminders"] == []
