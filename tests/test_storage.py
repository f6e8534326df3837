"""
Test suite for storage backends

Covers basic CRUD, atomic scopes with rollback, version-checked writes and
URL-based backend selection for both the in-memory and SQLite backends.
"""

import threading
from dataclasses import dataclass
from datetime import datetime, timezone
from decimal import Decimal
from typing import Optional

import pytest

from banking_ledger.currency import Currency
from banking_ledger.errors import ConcurrentModificationError, PersistenceError
from banking_ledger.storage import (
    InMemoryStorage, SQLiteStorage, StorageRecord, create_storage
)


@pytest.fixture(params=["memory", "sqlite"])
def storage(request, tmp_path):
    if request.param == "memory":
        backend = InMemoryStorage()
    else:
        backend = SQLiteStorage(tmp_path / "ledger.db")
    yield backend
    backend.close()


class TestBasicOperations:

    def test_save_and_load(self, storage):
        storage.save("accounts", "A1", {"id": "A1", "balance": "10.00"})
        assert storage.load("accounts", "A1") == {"id": "A1", "balance": "10.00"}
        assert storage.load("accounts", "missing") is None

    def test_overwrite_keeps_insertion_order(self, storage):
        storage.save("t", "a", {"id": "a", "n": 1})
        storage.save("t", "b", {"id": "b", "n": 2})
        storage.save("t", "a", {"id": "a", "n": 3})
        assert [r["id"] for r in storage.load_all("t")] == ["a", "b"]
        assert storage.load("t", "a")["n"] == 3

    def test_find_exists_count_delete(self, storage):
        storage.save("t", "1", {"status": "open", "user_id": "u1"})
        storage.save("t", "2", {"status": "closed", "user_id": "u1"})
        storage.save("t", "3", {"status": "open", "user_id": "u2"})

        assert len(storage.find("t", {"status": "open"})) == 2
        assert len(storage.find("t", {"status": "open", "user_id": "u2"})) == 1
        assert storage.exists("t", "1")
        assert storage.count("t") == 3
        assert storage.delete("t", "1") is True
        assert storage.delete("t", "1") is False
        assert storage.count("t") == 2

    def test_clear_table(self, storage):
        storage.save("t", "1", {"x": 1})
        storage.clear_table("t")
        assert storage.count("t") == 0

    def test_loaded_records_are_copies(self, storage):
        storage.save("t", "1", {"nested": {"x": 1}})
        loaded = storage.load("t", "1")
        loaded["nested"]["x"] = 99
        assert storage.load("t", "1")["nested"]["x"] == 1

    def test_invalid_table_name_rejected(self, storage):
        with pytest.raises(ValueError):
            storage.save("bad; DROP TABLE x", "1", {})


class TestAtomic:

    def test_commit(self, storage):
        with storage.atomic():
            storage.save("t", "1", {"v": 1})
            storage.save("t", "2", {"v": 2})
        assert storage.count("t") == 2
        assert not storage.in_transaction

    def test_rollback_on_error(self, storage):
        storage.save("t", "keep", {"v": 0})
        with pytest.raises(RuntimeError):
            with storage.atomic():
                storage.save("t", "1", {"v": 1})
                storage.save("t", "keep", {"v": 42})
                raise RuntimeError("boom")
        assert storage.load("t", "1") is None
        assert storage.load("t", "keep") == {"v": 0}

    def test_nested_scopes_join_outer(self, storage):
        with pytest.raises(RuntimeError):
            with storage.atomic():
                with storage.atomic():
                    storage.save("t", "inner", {"v": 1})
                assert storage.in_transaction
                raise RuntimeError("outer fails")
        assert storage.load("t", "inner") is None

    def test_rollback_of_table_created_inside_scope(self, storage):
        with pytest.raises(RuntimeError):
            with storage.atomic():
                storage.save("fresh_table", "1", {"v": 1})
                raise RuntimeError("boom")
        assert storage.load_all("fresh_table") == []
        storage.save("fresh_table", "2", {"v": 2})
        assert storage.count("fresh_table") == 1

    def test_atomic_blocks_other_writers(self, storage):
        entered = threading.Event()
        release = threading.Event()
        order = []

        def holder():
            with storage.atomic():
                entered.set()
                release.wait(timeout=5)
                order.append("holder")

        def writer():
            entered.wait(timeout=5)
            storage.save("t", "w", {"v": 1})
            order.append("writer")

        t1 = threading.Thread(target=holder)
        t2 = threading.Thread(target=writer)
        t1.start()
        t2.start()
        entered.wait(timeout=5)
        release.set()
        t1.join(timeout=5)
        t2.join(timeout=5)
        assert order == ["holder", "writer"]


class TestAfterCommit:

    def test_runs_immediately_outside_scope(self, storage):
        calls = []
        storage.after_commit(lambda: calls.append("now"))
        assert calls == ["now"]

    def test_deferred_until_outermost_commit(self, storage):
        calls = []
        with storage.atomic():
            storage.after_commit(lambda: calls.append("outer"))
            with storage.atomic():
                storage.after_commit(lambda: calls.append("inner"))
            assert calls == []
        assert calls == ["outer", "inner"]

    def test_discarded_on_rollback(self, storage):
        calls = []
        with pytest.raises(RuntimeError):
            with storage.atomic():
                storage.after_commit(lambda: calls.append("lost"))
                raise RuntimeError("boom")
        assert calls == []

        with storage.atomic():
            pass
        assert calls == []

    def test_callbacks_run_after_lock_released(self, storage):
        seen = []

        def count_from_other_thread():
            worker = threading.Thread(target=lambda: seen.append(storage.count("t")))
            worker.start()
            worker.join(timeout=5)

        with storage.atomic():
            storage.save("t", "1", {"v": 1})
            storage.after_commit(count_from_other_thread)
        assert seen == [1]


class TestRecordLocks:

    def test_lock_dropped_after_release(self, storage):
        with storage.record_lock("accounts", "A1"):
            with storage.record_lock("accounts", "A1"):
                assert len(storage._record_locks) == 1
        assert storage._record_locks == {}

    def test_lock_shared_while_contended(self, storage):
        entered = threading.Event()
        release = threading.Event()
        order = []

        def holder():
            with storage.record_lock("accounts", "A1"):
                entered.set()
                release.wait(timeout=5)
                order.append("holder")

        def waiter():
            entered.wait(timeout=5)
            with storage.record_lock("accounts", "A1"):
                order.append("waiter")

        t1 = threading.Thread(target=holder)
        t2 = threading.Thread(target=waiter)
        t1.start()
        t2.start()
        entered.wait(timeout=5)
        release.set()
        t1.join(timeout=5)
        t2.join(timeout=5)
        assert order == ["holder", "waiter"]
        assert storage._record_locks == {}


class TestVersionedWrites:

    def test_save_versioned_success(self, storage):
        storage.save("accounts", "A", {"version": 0, "balance": "0"})
        storage.save_versioned("accounts", "A", {"version": 1, "balance": "5"}, expected_version=0)
        assert storage.load("accounts", "A")["version"] == 1

    def test_save_versioned_conflict(self, storage):
        storage.save("accounts", "A", {"version": 3})
        with pytest.raises(ConcurrentModificationError):
            storage.save_versioned("accounts", "A", {"version": 3}, expected_version=2)

    def test_conflict_is_a_persistence_error(self, storage):
        with pytest.raises(PersistenceError):
            storage.save_versioned("accounts", "missing", {"version": 1}, expected_version=0)


@dataclass
class SampleRecord(StorageRecord):
    amount: Decimal
    currency: Currency
    note: Optional[str] = None
    seen_at: Optional[datetime] = None


class TestStorageRecord:

    def test_round_trip_types(self):
        now = datetime.now(timezone.utc)
        record = SampleRecord(
            id="r1", created_at=now, updated_at=now,
            amount=Decimal("12.50"), currency=Currency.EUR, seen_at=now
        )
        data = record.to_dict()
        assert data["amount"] == "12.50"
        assert data["currency"] == "EUR"

        restored = SampleRecord.from_dict(data)
        assert restored == record

    def test_from_dict_ignores_unknown_keys(self):
        now = datetime.now(timezone.utc).isoformat()
        restored = SampleRecord.from_dict({
            "id": "r2", "created_at": now, "updated_at": now,
            "amount": "1", "currency": "USD", "legacy_field": True
        })
        assert restored.amount == Decimal("1")
        assert restored.note is None


class TestSQLiteSpecifics:

    def test_data_survives_reopen(self, tmp_path):
        path = tmp_path / "persist.db"
        first = SQLiteStorage(path)
        first.save("t", "1", {"v": 1})
        first.close()

        second = SQLiteStorage(path)
        assert second.load("t", "1") == {"v": 1}
        second.close()

    def test_closed_storage_raises_persistence_error(self, tmp_path):
        backend = SQLiteStorage(tmp_path / "closed.db")
        backend.close()
        with pytest.raises(PersistenceError):
            backend.save("t", "1", {"v": 1})


class TestCreateStorage:

    def test_memory_url(self):
        assert isinstance(create_storage("memory"), InMemoryStorage)

    def test_sqlite_url(self, tmp_path):
        backend = create_storage(f"sqlite:///{tmp_path}/x.db")
        assert isinstance(backend, SQLiteStorage)
        backend.close()

    def test_unsupported_url(self):
        with pytest.raises(ValueError):
            create_storage("postgresql://localhost/db")
