from __future__ import annotations

import threading

import pytest

from clinic_backend import store as store_module
from clinic_backend.errors import StoreError
from clinic_backend.store import KeyLocks, RecordStore, serialized, snapshot


def test_get_set_delete():
    with serialized("k") as store:
        assert store.get("pet:1") is None
        store.set("pet:1", {"name": "Fido"})
        store.set("pet:1", {"name": "Rex"})

    with snapshot() as store:
        value, version = store.get_versioned("pet:1")
        assert value == {"name": "Rex"}
        assert version == 2

    with serialized("k") as store:
        store.delete("pet:1")
        store.delete("pet:missing")

    with snapshot() as store:
        assert store.get("pet:1") is None
        assert store.get_versioned("pet:1") == (None, 0)


def test_multi_get_preserves_order_and_length():
    with serialized("k") as store:
        store.set("a", {"v": 1})
        store.set("b", {"v": 2})

    with snapshot() as store:
        assert store.multi_get(["b", "missing", "a", "b"]) == [{"v": 2}, None, {"v": 1}, {"v": 2}]
        assert store.multi_get([]) == []


def test_scan_by_prefix_only_matches_the_namespace():
    with serialized("k") as store:
        store.set("pet:1", {"id": "1"})
        store.set("pet:2", {"id": "2"})
        store.set("petx:3", {"id": "3"})
        store.set("index:user_pets:u1", ["1", "2"])

    with snapshot() as store:
        assert sorted(v["id"] for v in store.scan_by_prefix("pet:")) == ["1", "2"]


def test_scan_by_prefix_escapes_like_wildcards():
    with serialized("k") as store:
        store.set("a_b:1", {"id": "underscore"})
        store.set("axb:1", {"id": "x"})
        store.set("a%:1", {"id": "percent"})

    with snapshot() as store:
        assert [v["id"] for v in store.scan_by_prefix("a_b:")] == ["underscore"]
        assert [v["id"] for v in store.scan_by_prefix("a%")] == ["percent"]


def test_compare_and_set_rejects_stale_versions():
    with serialized("k") as store:
        assert store.compare_and_set("counter", {"n": 1}, expected_version=0)
        assert not store.compare_and_set("counter", {"n": 9}, expected_version=0)
        assert store.compare_and_set("counter", {"n": 2}, expected_version=1)
        assert not store.compare_and_set("counter", {"n": 9}, expected_version=1)

    with snapshot() as store:
        assert store.get_versioned("counter") == ({"n": 2}, 2)


def test_update_gives_up_after_retries(monkeypatch):
    monkeypatch.setattr(RecordStore, "compare_and_set", lambda self, key, value, expected_version: False)
    with pytest.raises(StoreError):
        with serialized("k") as store:
            store.update("counter", lambda v: {"n": 1})


def test_index_append_is_idempotent_and_remove_prunes():
    with serialized("idx") as store:
        store.append_to_index("idx", "a")
        store.append_to_index("idx", "b")
        store.append_to_index("idx", "a")
        assert store.read_index("idx") == ["a", "b"]

        store.remove_from_index("idx", "a")
        assert store.read_index("idx") == ["b"]
        assert store.remove_from_index("missing-idx", "a") == []
        assert store.get("missing-idx") is None


def test_load_index_skips_dangling_ids():
    with serialized("idx") as store:
        store.set("pet:1", {"id": "1"})
        store.append_to_index("idx", "1")
        store.append_to_index("idx", "gone")
        assert store.load_index("idx", lambda i: f"pet:{i}") == [{"id": "1"}]


def test_failed_unit_of_work_writes_nothing():
    with pytest.raises(RuntimeError):
        with serialized("idx") as store:
            store.set("pet:1", {"id": "1"})
            store.append_to_index("idx", "1")
            raise RuntimeError("boom")

    with snapshot() as store:
        assert store.get("pet:1") is None
        assert store.read_index("idx") == []


def test_concurrent_appends_lose_nothing():
    key = "index:user_pets:u1"
    ids = [f"pet-{i}" for i in range(20)]
    errors = []

    def append(item_id):
        try:
            with serialized(key) as store:
                store.append_to_index(key, item_id)
        except Exception as exc:  # surfaced by the assertion below
            errors.append(exc)

    threads = [threading.Thread(target=append, args=(i,)) for i in ids]
    for t in threads:
        t.start()
    for t in threads:
        t.join()

    assert errors == []
    assert len(store_module._key_locks) == 0
    with snapshot() as store:
        assert sorted(store.read_index(key)) == sorted(ids)


def test_key_locks_are_released_from_the_registry():
    locks = KeyLocks()
    with locks.hold("b", "a", "a"):
        assert len(locks) == 2
        with locks.hold("c"):
            assert len(locks) == 3
    assert len(locks) == 0

    with pytest.raises(RuntimeError):
        with locks.hold("a"):
            raise RuntimeError("boom")
    assert len(locks) == 0


def test_key_lock_excludes_other_threads_while_held():
    locks = KeyLocks()
    entered = threading.Event()

    def contender():
        with locks.hold("pet:1"):
            entered.set()

    with locks.hold("pet:1"):
        t = threading.Thread(target=contender)
        t.start()
        assert not entered.wait(timeout=0.2)
        # the waiting thread keeps the entry alive
        assert len(locks) == 1
    t.join()
    assert entered.is_set()
    assert len(locks) == 0


def test_units_of_work_leave_no_locks_behind():
    with serialized("pet:1", "index:user_pets:u1") as store:
        store.set("pet:1", {"id": "1"})
    assert len(store_module._key_locks) == 0
