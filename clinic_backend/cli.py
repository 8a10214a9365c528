from __future__ import annotations

import argparse
import sys
from datetime import date, datetime

from . import dashboard, reminders, scheduling, services
from .config import configure_logging
from .db import configure_engine, init_db
from .entities import Actor, AppointmentUpdate, PetFields
from .errors import ClinicError
from .identity import create_access_token
from .models import AppointmentStatus, Role
from .seed import seed_base


def _actor(args: argparse.Namespace) -> Actor:
    user = services.get_user_by_email(args.as_user)
    if user is None:
        raise ClinicError(f"No user with email {args.as_user}")
    return Actor(id=user.id, role=user.role)


def cmd_init(args: argparse.Namespace) -> None:
    print("DB initialized.")


def cmd_seed(args: argparse.Namespace) -> None:
    seed_base()
    print("Seed completed.")


def cmd_add_user(args: argparse.Namespace) -> None:
    user = services.create_user(args.email, args.name, Role(args.role), args.phone)
    print(f"User created: {user.id} | {user.email} | {user.role.value}")


def cmd_token(args: argparse.Namespace) -> None:
    """Development token, signed like the identity provider's ones."""
    actor = _actor(args)
    print(create_access_token(actor.id, actor.role))


def cmd_add_pet(args: argparse.Namespace) -> None:
    actor = _actor(args)
    owner_id = None
    if args.owner:
        owner = services.get_user_by_email(args.owner)
        if owner is None:
            raise ClinicError(f"No user with email {args.owner}")
        owner_id = owner.id

    fields = PetFields(
        name=args.name,
        species=args.species,
        breed=args.breed,
        date_of_birth=date.fromisoformat(args.dob) if args.dob else None,
        weight=args.weight,
        microchip_id=args.microchip,
        next_vaccination_date=date.fromisoformat(args.next_vaccination) if args.next_vaccination else None,
    )
    pet = services.create_pet(actor, fields, owner_id=owner_id)
    print(f"Pet created: {pet.id}")


def cmd_list(args: argparse.Namespace) -> None:
    actor = _actor(args)
    if args.entity == "pets":
        rows = services.list_all_pets_flat(actor) if args.all else [p.to_record() for p in services.list_pets(actor)]
        for p in rows:
            print(f"{p['id']} | {p['name']} ({p['species']}) | owner {p.get('owner_email') or p['owner_id']}")
    elif args.entity == "appointments":
        for a in scheduling.list_appointments(actor, all_users=args.all):
            print(f"{a.id} | {a.date_time.isoformat()} | {a.status.value} | {a.pet_name} | {a.reason}")
    elif args.entity == "blocks":
        for b in scheduling.list_blocks(actor):
            print(f"{b.date.isoformat()} | {b.notes or '-'}")


def cmd_slots(args: argparse.Namespace) -> None:
    for slot in scheduling.list_day_slots(date.fromisoformat(args.day)):
        print(f"{slot['date_time']} | {'free' if slot['available'] else 'taken'}")


def cmd_book(args: argparse.Namespace) -> None:
    start = datetime.fromisoformat(args.start)  # format: 2026-01-14T10:30
    appointment = scheduling.create_appointment(
        _actor(args),
        pet_id=args.pet_id,
        date_time=start,
        reason=args.reason,
        notes=args.notes,
    )
    print(f"Appointment booked: {appointment.id} ({appointment.status.value}) for user {appointment.user_id}")


def cmd_status(args: argparse.Namespace) -> None:
    appointment = scheduling.update_appointment(
        _actor(args), args.appointment_id, AppointmentUpdate(status=AppointmentStatus(args.status))
    )
    print(f"Appointment {appointment.id}: {appointment.status.value}")


def cmd_block(args: argparse.Namespace) -> None:
    block = scheduling.create_block(_actor(args), date.fromisoformat(args.day), args.notes)
    print(f"Blocked: {block.id}")


def cmd_unblock(args: argparse.Namespace) -> None:
    block = scheduling.delete_block(_actor(args), date.fromisoformat(args.day))
    print(f"Unblocked: {block.id}")


def cmd_reminders(args: argparse.Namespace) -> None:
    items = reminders.get_reminders(_actor(args))
    if not items:
        print("No reminders.")
        return
    for r in items:
        print(f"[{r.priority.value}] {r.type.value} | {r.date_time} | {r.message} | {r.id}")


def cmd_stats(args: argparse.Namespace) -> None:
    stats = dashboard.get_dashboard_stats(_actor(args))
    for name, value in stats.items():
        if name == "recent_activity":
            continue
        print(f"{name}: {value}")


def build_parser() -> argparse.ArgumentParser:
    p = argparse.ArgumentParser(prog="clinic-cli", description="Clinic scheduling CLI (simulates external callers)")
    p.add_argument("--database-url", default=None, help="Override CLINIC_DATABASE_URL")
    sub = p.add_subparsers(required=True)

    def with_actor(parser: argparse.ArgumentParser) -> argparse.ArgumentParser:
        parser.add_argument("--as-user", required=True, help="Email of the acting user")
        return parser

    p_init = sub.add_parser("init", help="Create the DB tables")
    p_init.set_defaults(func=cmd_init)

    p_seed = sub.add_parser("seed", help="Load demo users and pets")
    p_seed.set_defaults(func=cmd_seed)

    p_user = sub.add_parser("add-user", help="Create a user profile")
    p_user.add_argument("--email", required=True)
    p_user.add_argument("--name", required=True)
    p_user.add_argument("--role", choices=[r.value for r in Role], default=Role.OWNER.value)
    p_user.add_argument("--phone", default=None)
    p_user.set_defaults(func=cmd_add_user)

    p_token = with_actor(sub.add_parser("token", help="Print a development bearer token"))
    p_token.set_defaults(func=cmd_token)

    p_pet = with_actor(sub.add_parser("add-pet", help="Register a pet"))
    p_pet.add_argument("--name", required=True)
    p_pet.add_argument("--species", required=True)
    p_pet.add_argument("--breed", default="")
    p_pet.add_argument("--dob", default=None, help="YYYY-MM-DD")
    p_pet.add_argument("--weight", type=float, default=None)
    p_pet.add_argument("--microchip", default=None)
    p_pet.add_argument("--next-vaccination", default=None, help="YYYY-MM-DD")
    p_pet.add_argument("--owner", default=None, help="Owner email (staff only)")
    p_pet.set_defaults(func=cmd_add_pet)

    p_list = with_actor(sub.add_parser("list", help="List entities"))
    p_list.add_argument("entity", choices=["pets", "appointments", "blocks"])
    p_list.add_argument("--all", action="store_true", help="Every user's entities (staff only)")
    p_list.set_defaults(func=cmd_list)

    p_slots = sub.add_parser("slots", help="Slot calendar of a day")
    p_slots.add_argument("--day", required=True, help="YYYY-MM-DD")
    p_slots.set_defaults(func=cmd_slots)

    p_book = with_actor(sub.add_parser("book", help="Book an appointment"))
    p_book.add_argument("--pet-id", required=True)
    p_book.add_argument("--start", required=True, help="ISO datetime e.g. 2026-01-14T10:30")
    p_book.add_argument("--reason", required=True)
    p_book.add_argument("--notes", default=None)
    p_book.set_defaults(func=cmd_book)

    p_status = with_actor(sub.add_parser("status", help="Change the status of an appointment"))
    p_status.add_argument("--appointment-id", required=True)
    p_status.add_argument("--status", required=True, choices=[s.value for s in AppointmentStatus])
    p_status.set_defaults(func=cmd_status)

    p_block = with_actor(sub.add_parser("block", help="Block a day (staff)"))
    p_block.add_argument("--day", required=True, help="YYYY-MM-DD")
    p_block.add_argument("--notes", default="")
    p_block.set_defaults(func=cmd_block)

    p_unblock = with_actor(sub.add_parser("unblock", help="Remove a day block (staff)"))
    p_unblock.add_argument("--day", required=True, help="YYYY-MM-DD")
    p_unblock.set_defaults(func=cmd_unblock)

    p_rem = with_actor(sub.add_parser("reminders", help="Reminders of the acting user"))
    p_rem.set_defaults(func=cmd_reminders)

    p_stats = with_actor(sub.add_parser("stats", help="Dashboard stats (staff)"))
    p_stats.set_defaults(func=cmd_stats)

    return p


def main(argv: list[str] | None = None) -> int:
    parser = build_parser()
    args = parser.parse_args(argv)
    configure_logging()
    if args.database_url:
        configure_engine(args.database_url)
    init_db()  # ensures the tables exist
    try:
        args.func(args)
    except ClinicError as e:
        print(f"Error: {e.message}", file=sys.stderr)
        return 1
    return 0


if __name__ == "__main__":
    sys.exit(main())
