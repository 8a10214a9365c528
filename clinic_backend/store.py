"""
Key-value record store over the ``records`` table.

Primary records and their index lists (lists of ids emulating a secondary
index) live side by side. There is no multi-key transaction at the API level,
so every read-modify-write goes through two layers:

- ``key_lock``: in-process single writer per key (threading locks, sorted order)
- ``RecordStore.update``: versioned compare-and-set inside the database
  transaction, so a lost update is detected instead of silently overwritten

``serialized(*keys)`` combines both with one ``db_session()``: the record and
every index list it touches commit or roll back together.
"""
from __future__ import annotations

import logging
import threading
from contextlib import contextmanager
from datetime import date
from typing import Any, Callable, Iterable, Iterator

from sqlalchemy import delete, insert, select, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from . import config
from .db import db_session
from .errors import StoreError
from .models import Record, utcnow

logger = logging.getLogger(__name__)


# =========================
# Key layout
# =========================
def user_key(user_id: str) -> str:
    return f"user:{user_id}"


def pet_key(pet_id: str) -> str:
    return f"pet:{pet_id}"


def appointment_key(appointment_id: str) -> str:
    return f"appointment:{appointment_id}"


def block_key(day: date | str) -> str:
    return f"block:{day.isoformat() if isinstance(day, date) else day}"


def health_record_key(record_id: str) -> str:
    return f"record:{record_id}"


def user_pets_index(user_id: str) -> str:
    return f"index:user_pets:{user_id}"


def user_appointments_index(user_id: str) -> str:
    return f"index:user_appointments:{user_id}"


def pet_records_index(pet_id: str) -> str:
    return f"index:pet_records:{pet_id}"


def dismissed_reminders_key(user_id: str) -> str:
    return f"index:dismissed_reminders:{user_id}"


# Lock names that do not map to a single record
SCHEDULE_LOCK = "schedule"
USERS_LOCK = "users"


# =========================
# Single-writer discipline
# =========================
class KeyLocks:
    """
    One ``threading.Lock`` per key, created on demand.
    Each entry counts its holders and waiters and is dropped when the count
    reaches zero, so the registry only holds keys currently in use.
    """

    def __init__(self) -> None:
        self._registry_lock = threading.Lock()
        self._locks: dict[str, list] = {}  # key -> [lock, users]

    def __len__(self) -> int:
        with self._registry_lock:
            return len(self._locks)

    def _checkout(self, key: str) -> threading.Lock:
        with self._registry_lock:
            entry = self._locks.setdefault(key, [threading.Lock(), 0])
            entry[1] += 1
            return entry[0]

    def _checkin(self, key: str) -> None:
        with self._registry_lock:
            entry = self._locks[key]
            entry[1] -= 1
            if entry[1] == 0:
                del self._locks[key]

    @contextmanager
    def hold(self, *keys: str) -> Iterator[None]:
        # sorted acquisition order: two callers can never wait on each other in a cycle
        acquired: list[tuple[str, threading.Lock]] = []
        try:
            for key in sorted(set(keys)):
                lock = self._checkout(key)
                try:
                    lock.acquire()
                except BaseException:
                    self._checkin(key)
                    raise
                acquired.append((key, lock))
            yield
        finally:
            for key, lock in reversed(acquired):
                lock.release()
                self._checkin(key)


_key_locks = KeyLocks()


def key_lock(*keys: str):
    return _key_locks.hold(*keys)


def _like_prefix(prefix: str) -> str:
    escaped = prefix.replace("\\", "\\\\").replace("%", "\\%").replace("_", "\\_")
    return f"{escaped}%"


# =========================
# Store
# =========================
class RecordStore:
    """Record store bound to one SQLAlchemy session (one unit of work)."""

    def __init__(self, session: Session, cas_retries: int | None = None) -> None:
        self.session = session
        self.cas_retries = cas_retries or config.STORE_CAS_RETRIES

    # --- point operations
    def get(self, key: str) -> Any | None:
        return self.session.execute(select(Record.value).where(Record.key == key)).scalar_one_or_none()

    def get_versioned(self, key: str) -> tuple[Any | None, int]:
        """Value and version; version 0 means the key does not exist."""
        row = self.session.execute(select(Record.value, Record.version).where(Record.key == key)).first()
        if row is None:
            return None, 0
        return row.value, row.version

    def set(self, key: str, value: Any) -> None:
        result = self.session.execute(
            update(Record)
            .where(Record.key == key)
            .values(value=value, version=Record.version + 1, updated_at=utcnow())
        )
        if result.rowcount == 0:
            self._insert(key, value)

    def delete(self, key: str) -> None:
        self.session.execute(delete(Record).where(Record.key == key))

    # --- batch operations
    def multi_get(self, keys: Iterable[str]) -> list[Any | None]:
        """Same length and order as ``keys``; missing keys come back as None."""
        keys = list(keys)
        if not keys:
            return []
        rows = self.session.execute(select(Record.key, Record.value).where(Record.key.in_(set(keys)))).all()
        found = {r.key: r.value for r in rows}
        return [found.get(k) for k in keys]

    def scan_by_prefix(self, prefix: str) -> list[Any]:
        """All values whose key starts with ``prefix``, in no particular order."""
        q = select(Record.value).where(Record.key.like(_like_prefix(prefix), escape="\\"))
        return list(self.session.execute(q).scalars())

    # --- compare-and-set
    def compare_and_set(self, key: str, value: Any, expected_version: int) -> bool:
        """
        Write ``value`` only if the stored version is still ``expected_version``.
        ``expected_version == 0`` means "create, the key must not exist yet".
        """
        if expected_version == 0:
            if self.get_versioned(key)[1] != 0:
                return False
            self._insert(key, value)
            return True

        result = self.session.execute(
            update(Record)
            .where(Record.key == key, Record.version == expected_version)
            .values(value=value, version=expected_version + 1, updated_at=utcnow())
        )
        return result.rowcount == 1

    def update(self, key: str, fn: Callable[[Any], Any], default: Callable[[], Any] = dict) -> Any:
        """Read-modify-write of one key through compare-and-set, retried on a stale version."""
        for attempt in range(1, self.cas_retries + 1):
            current, version = self.get_versioned(key)
            new_value = fn(current if current is not None else default())
            if self.compare_and_set(key, new_value, version):
                return new_value
            logger.debug("Stale version on %s (attempt %s), retrying", key, attempt)

        logger.error("Compare-and-set on %s failed after %s attempts", key, self.cas_retries)
        raise StoreError(f"Concurrent update on {key}, please retry")

    def guard(self, name: str) -> None:
        """
        Touch ``guard:<name>`` inside the current transaction: the write takes the
        database lock on that row, so concurrent writers of the same name queue up
        until commit, also across processes.
        """
        self.update(f"guard:{name}", lambda g: {"writes": g.get("writes", 0) + 1})

    # --- index lists
    def read_index(self, key: str) -> list[str]:
        return list(self.get(key) or [])

    def load_index(self, key: str, record_key: Callable[[str], str]) -> list[Any]:
        """Records referenced by an index list, skipping ids that no longer resolve."""
        keys = [record_key(item_id) for item_id in self.read_index(key)]
        return [v for v in self.multi_get(keys) if v is not None]

    def append_to_index(self, key: str, item_id: str) -> list[str]:
        return self.update(key, lambda ids: ids if item_id in ids else [*ids, item_id], default=list)

    def remove_from_index(self, key: str, item_id: str) -> list[str]:
        if self.get_versioned(key)[1] == 0:
            return []
        return self.update(key, lambda ids: [i for i in ids if i != item_id], default=list)

    def _insert(self, key: str, value: Any) -> None:
        try:
            self.session.execute(insert(Record).values(key=key, value=value, version=1, updated_at=utcnow()))
        except IntegrityError as exc:
            logger.error("Concurrent create of %s", key)
            raise StoreError(f"Concurrent create of {key}, please retry") from exc


# =========================
# Units of work
# =========================
@contextmanager
def serialized(*keys: str) -> Iterator[RecordStore]:
    """
    Mutating unit of work: holds the in-process locks of ``keys`` and touches
    their guards first, then commits everything at exit (or rolls back).
    """
    with key_lock(*keys), db_session() as session:
        store = RecordStore(session)
        for key in sorted(set(keys)):
            store.guard(key)
        yield store


@contextmanager
def snapshot() -> Iterator[RecordStore]:
    """Read-only unit of work: an unsynchronized snapshot."""
    with db_session() as session:
        yield RecordStore(session)
