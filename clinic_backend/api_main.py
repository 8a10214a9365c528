from __future__ import annotations

from datetime import date, datetime
from typing import Any

from fastapi import Depends, FastAPI, Query, Request
from fastapi.encoders import jsonable_encoder
from fastapi.responses import JSONResponse
from fastapi.security import OAuth2PasswordBearer
from pydantic import BaseModel, Field

from . import dashboard, reminders, scheduling, services
from .config import configure_logging
from .db import init_db
from .entities import Actor, AppointmentUpdate, HealthRecordFields, PetFields, PetUpdate
from .errors import ClinicError, Forbidden
from .identity import resolve_actor
from .models import Role, utcnow

# OAuth2 Bearer (Authorization: Bearer <token>), tokens issued by the identity provider
oauth2_scheme = OAuth2PasswordBearer(tokenUrl="/api/auth/token")

app = FastAPI(title="Clinic Scheduling API", version="1.0.0")


# Startup

@app.on_event("startup")
def startup() -> None:
    configure_logging()
    init_db()


@app.exception_handler(ClinicError)
def clinic_error_handler(request: Request, exc: ClinicError) -> JSONResponse:
    return JSONResponse(status_code=exc.status_code, content=jsonable_encoder(exc.to_dict()))


# Schemas

class UserCreateIn(BaseModel):
    id: str | None = None
    email: str = Field(..., min_length=3)
    name: str = Field(..., min_length=1)
    role: Role = Role.OWNER
    phone: str | None = None


class PetCreateIn(PetFields):
    # staff only: register the pet for another owner
    owner_id: str | None = None


class HealthRecordCreateIn(HealthRecordFields):
    pet_id: str


class AppointmentCreateIn(BaseModel):
    pet_id: str
    date_time: datetime
    reason: str = Field(..., min_length=1)
    notes: str | None = None
    pet_name: str | None = None


class BlockCreateIn(BaseModel):
    date: date
    notes: str = ""


# Auth dependency

def get_current_actor(token: str = Depends(oauth2_scheme)) -> Actor:
    return resolve_actor(token)


# USERS

@app.post("/api/users")
def api_create_user(payload: UserCreateIn) -> dict[str, Any]:
    """Registration hook called after sign-up at the identity provider."""
    if payload.role != Role.OWNER:
        raise Forbidden("Forbidden: staff accounts are created by an administrator")
    user = services.create_user(payload.email, payload.name, payload.role, payload.phone, user_id=payload.id)
    return {"user": user}


@app.get("/api/me")
def api_me(actor: Actor = Depends(get_current_actor)) -> dict[str, Any]:
    return {"profile": services.get_user(actor.id)}


# PETS

@app.post("/api/pets")
def api_create_pet(payload: PetCreateIn, actor: Actor = Depends(get_current_actor)) -> dict[str, Any]:
    fields = PetFields(**payload.model_dump(exclude={"owner_id"}))
    return {"pet": services.create_pet(actor, fields, owner_id=payload.owner_id)}


@app.get("/api/pets")
def api_list_pets(actor: Actor = Depends(get_current_actor)) -> dict[str, Any]:
    return {"pets": services.list_pets(actor)}


@app.get("/api/pets/all")
def api_list_all_pets(actor: Actor = Depends(get_current_actor)) -> dict[str, Any]:
    return {"pets": services.list_all_pets_flat(actor)}


@app.get("/api/pets/{pet_id}")
def api_get_pet(pet_id: str, actor: Actor = Depends(get_current_actor)) -> dict[str, Any]:
    return {"pet": services.get_pet(actor, pet_id)}


@app.put("/api/pets/{pet_id}")
def api_update_pet(pet_id: str, payload: PetUpdate, actor: Actor = Depends(get_current_actor)) -> dict[str, Any]:
    return {"pet": services.update_pet(actor, pet_id, payload)}


@app.delete("/api/pets/{pet_id}")
def api_delete_pet(pet_id: str, actor: Actor = Depends(get_current_actor)) -> dict[str, Any]:
    services.delete_pet(actor, pet_id)
    return {"deleted": pet_id}


# HEALTH RECORDS

@app.post("/api/health-records")
def api_create_health_record(
    payload: HealthRecordCreateIn, actor: Actor = Depends(get_current_actor)
) -> dict[str, Any]:
    fields = HealthRecordFields(**payload.model_dump(exclude={"pet_id"}))
    return {"record": services.create_health_record(actor, payload.pet_id, fields)}


@app.get("/api/health-records/{pet_id}")
def api_list_health_records(pet_id: str, actor: Actor = Depends(get_current_actor)) -> dict[str, Any]:
    return {"records": services.list_health_records(actor, pet_id)}


@app.delete("/api/health-records/{record_id}")
def api_delete_health_record(record_id: str, actor: Actor = Depends(get_current_actor)) -> dict[str, Any]:
    services.delete_health_record(actor, record_id)
    return {"deleted": record_id}


# SCHEDULING

@app.get("/api/slots")
def api_slots(day: date = Query(...), actor: Actor = Depends(get_current_actor)) -> dict[str, Any]:
    return {"day": day, "slots": scheduling.list_day_slots(day)}


@app.post("/api/appointments")
def api_create_appointment(
    payload: AppointmentCreateIn, actor: Actor = Depends(get_current_actor)
) -> dict[str, Any]:
    appointment = scheduling.create_appointment(
        actor,
        pet_id=payload.pet_id,
        date_time=payload.date_time,
        reason=payload.reason,
        notes=payload.notes,
        pet_name=payload.pet_name,
    )
    return {"appointment": appointment}


@app.get("/api/appointments")
def api_list_appointments(actor: Actor = Depends(get_current_actor)) -> dict[str, Any]:
    return {"appointments": scheduling.list_appointments(actor)}


@app.get("/api/appointments/all")
def api_list_all_appointments(actor: Actor = Depends(get_current_actor)) -> dict[str, Any]:
    return {"appointments": scheduling.list_appointments(actor, all_users=True)}


@app.get("/api/appointments/{appointment_id}")
def api_get_appointment(appointment_id: str, actor: Actor = Depends(get_current_actor)) -> dict[str, Any]:
    return {"appointment": scheduling.get_appointment(actor, appointment_id)}


@app.put("/api/appointments/{appointment_id}")
def api_update_appointment(
    appointment_id: str, payload: AppointmentUpdate, actor: Actor = Depends(get_current_actor)
) -> dict[str, Any]:
    return {"appointment": scheduling.update_appointment(actor, appointment_id, payload)}


# BLOCKS (staff)

@app.post("/api/blocks")
def api_create_block(payload: BlockCreateIn, actor: Actor = Depends(get_current_actor)) -> dict[str, Any]:
    return {"block": scheduling.create_block(actor, payload.date, payload.notes)}


@app.get("/api/blocks")
def api_list_blocks(actor: Actor = Depends(get_current_actor)) -> dict[str, Any]:
    return {"blocks": scheduling.list_blocks(actor)}


@app.delete("/api/blocks/{day}")
def api_delete_block(day: date, actor: Actor = Depends(get_current_actor)) -> dict[str, Any]:
    block = scheduling.delete_block(actor, day)
    return {"deleted": block.id}


# REMINDERS

@app.get("/api/reminders")
def api_reminders(actor: Actor = Depends(get_current_actor)) -> dict[str, Any]:
    return {"reminders": reminders.get_reminders(actor)}


@app.post("/api/reminders/{reminder_id}/dismiss")
def api_dismiss_reminder(reminder_id: str, actor: Actor = Depends(get_current_actor)) -> dict[str, Any]:
    return {"dismissed": reminders.dismiss_reminder(actor, reminder_id)}


# DASHBOARD (staff)

@app.get("/api/dashboard/stats")
def api_dashboard_stats(actor: Actor = Depends(get_current_actor)) -> dict[str, Any]:
    return {"stats": dashboard.get_dashboard_stats(actor)}


@app.get("/api/health")
def api_health() -> dict[str, Any]:
    return {"status": "ok", "timestamp": utcnow().isoformat()}
