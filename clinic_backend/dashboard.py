from __future__ import annotations

from datetime import datetime, timedelta
from typing import Any, Iterable

from .entities import Actor, Appointment, Pet, User, ensure_utc
from .models import AppointmentStatus, Role, utcnow
from .reminders import in_vaccination_window
from .scheduling import calendar_day
from .services import require_staff
from .store import snapshot

RECENT_ACTIVITY_LIMIT = 10


def compute_dashboard_stats(
    appointments: Iterable[Appointment],
    pets: Iterable[Pet],
    users: Iterable[User],
    now: datetime,
) -> dict[str, Any]:
    """Read-only rollups for the staff home screen."""
    now = ensure_utc(now)
    appointments = list(appointments)
    pets = list(pets)
    today = calendar_day(now)
    week_start = now - timedelta(days=7)

    week = [a for a in appointments if week_start <= a.date_time <= now]
    recent = sorted(week, key=lambda a: a.date_time, reverse=True)[:RECENT_ACTIVITY_LIMIT]

    return {
        "total_pets": len(pets),
        "total_clients": sum(1 for u in users if u.role == Role.OWNER),
        "today_appointments": sum(1 for a in appointments if calendar_day(a.date_time) == today),
        "week_appointments": len(week),
        "pending_appointments": sum(1 for a in appointments if a.status == AppointmentStatus.PENDING),
        "completed_appointments": sum(1 for a in appointments if a.status == AppointmentStatus.COMPLETED),
        "missed_appointments": sum(
            1 for a in appointments if a.status == AppointmentStatus.PENDING and a.date_time < now
        ),
        "vaccinations_due": sum(
            1 for p in pets if p.next_vaccination_date and in_vaccination_window(p.next_vaccination_date, now)
        ),
        "recent_activity": [a.to_record() for a in recent],
    }


def get_dashboard_stats(actor: Actor, now: datetime | None = None) -> dict[str, Any]:
    require_staff(actor)
    now = now or utcnow()
    with snapshot() as store:
        appointments = [Appointment.from_record(v) for v in store.scan_by_prefix("appointment:")]
        pets = [Pet.from_record(v) for v in store.scan_by_prefix("pet:")]
        users = [User.from_record(v) for v in store.scan_by_prefix("user:")]
    return compute_dashboard_stats(appointments, pets, users, now)
