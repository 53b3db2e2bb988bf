"""
Test suite for storage backends

Runs the same behaviour against the in-memory and SQLite implementations:
CRUD, filtering, unit-of-work rollback and versioned writes.
"""

import pytest
import threading

from loan_servicing.exceptions import ConcurrencyConflict
from loan_servicing.storage import InMemoryStorage, SQLiteStorage, create_storage


@pytest.fixture(params=["memory", "sqlite"])
def backend(request, tmp_path):
    if request.param == "memory":
        store = InMemoryStorage()
    else:
        store = SQLiteStorage(tmp_path / "test.db")
    yield store
    store.close()


def record(record_id, **fields):
    data = {"id": record_id, "created_at": "2024-01-01T00:00:00+00:00"}
    data.update(fields)
    return data


class TestBasicOperations:
    """Test CRUD and queries"""

    def test_save_and_load(self, backend):
        backend.save("loans", "a", record("a", status="pending"))
        assert backend.load("loans", "a")["status"] == "pending"
        assert backend.exists("loans", "a")

    def test_load_missing(self, backend):
        assert backend.load("loans", "missing") is None
        assert not backend.exists("loans", "missing")

    def test_overwrite(self, backend):
        backend.save("loans", "a", record("a", status="pending"))
        backend.save("loans", "a", record("a", status="approved"))
        assert backend.load("loans", "a")["status"] == "approved"
        assert backend.count("loans") == 1

    def test_find_by_filters(self, backend):
        backend.save("payments", "1", record("1", loan_id="L1", status="pending"))
        backend.save("payments", "2", record("2", loan_id="L1", status="paid"))
        backend.save("payments", "3", record("3", loan_id="L2", status="pending"))

        found = backend.find("payments", {"loan_id": "L1", "status": "pending"})
        assert [r["id"] for r in found] == ["1"]

    def test_delete_and_delete_where(self, backend):
        for i in range(3):
            backend.save("payments", str(i), record(str(i), loan_id="L1"))
        backend.save("payments", "x", record("x", loan_id="L2"))

        assert backend.delete("payments", "0")
        assert not backend.delete("payments", "0")
        assert backend.delete_where("payments", {"loan_id": "L1"}) == 2
        assert backend.count("payments") == 1

    def test_loaded_records_are_copies(self, backend):
        backend.save("loans", "a", record("a", notes="original"))
        loaded = backend.load("loans", "a")
        loaded["notes"] = "changed"
        assert backend.load("loans", "a")["notes"] == "original"

    def test_clear_table(self, backend):
        backend.save("loans", "a", record("a"))
        backend.clear_table("loans")
        assert backend.load_all("loans") == []


class TestTransactions:
    """Test atomic unit of work"""

    def test_atomic_commits(self, backend):
        with backend.atomic():
            backend.save("loans", "a", record("a"))
        assert backend.exists("loans", "a")

    def test_atomic_rolls_back_on_error(self, backend):
        backend.save("loans", "a", record("a", status="pending"))

        with pytest.raises(RuntimeError):
            with backend.atomic():
                backend.save("loans", "a", record("a", status="active"))
                backend.save("loans", "b", record("b"))
                raise RuntimeError("boom")

        assert backend.load("loans", "a")["status"] == "pending"
        assert not backend.exists("loans", "b")

    def test_nested_failure_rolls_back_outer(self, backend):
        with pytest.raises(RuntimeError):
            with backend.atomic():
                backend.save("loans", "outer", record("outer"))
                with backend.atomic():
                    backend.save("loans", "inner", record("inner"))
                    raise RuntimeError("inner failure")

        assert not backend.exists("loans", "outer")
        assert not backend.exists("loans", "inner")

    def test_swallowed_nested_failure_still_rolls_back(self, backend):
        with pytest.raises(RuntimeError, match="rollback-only"):
            with backend.atomic():
                backend.save("loans", "outer", record("outer"))
                try:
                    with backend.atomic():
                        raise ValueError("ignored")
                except ValueError:
                    pass

        assert not backend.exists("loans", "outer")

    def test_row_lock_is_reentrant(self, backend):
        with backend.lock("loans", "a"):
            with backend.lock("loans", "a"):
                backend.save("loans", "a", record("a"))
        assert backend.exists("loans", "a")

    def test_row_lock_excludes_other_threads(self, backend):
        events = []
        started = threading.Event()

        def contender():
            started.set()
            with backend.lock("loans", "a"):
                events.append("contender")

        with backend.lock("loans", "a"):
            worker = threading.Thread(target=contender)
            worker.start()
            started.wait()
            events.append("holder")
        worker.join(timeout=5)

        assert events == ["holder", "contender"]
        assert backend._row_locks == {}

    def test_released_row_locks_are_dropped(self, backend):
        with backend.lock("loans", "a"):
            with backend.lock("loans", "a"):
                assert len(backend._row_locks) == 1
            assert len(backend._row_locks) == 1
        for record_id in ("b", "c", "d"):
            with backend.lock("payments", record_id):
                pass
        assert backend._row_locks == {}


class TestVersionedWrites:
    """Test optimistic version guard"""

    def test_insert_starts_at_version_one(self, backend):
        assert backend.save_versioned("loans", "a", record("a", version=0), "loan") == 1
        assert backend.load("loans", "a")["version"] == 1

    def test_sequential_updates(self, backend):
        backend.save_versioned("loans", "a", record("a", version=0), "loan")
        assert backend.save_versioned("loans", "a", record("a", version=1), "loan") == 2

    def test_stale_write_conflicts(self, backend):
        backend.save_versioned("loans", "a", record("a", version=0), "loan")
        backend.save_versioned("loans", "a", record("a", version=1), "loan")

        with pytest.raises(ConcurrencyConflict) as exc_info:
            backend.save_versioned("loans", "a", record("a", version=1, status="stale"), "loan")

        assert exc_info.value.context["expected_version"] == 1
        assert exc_info.value.context["actual_version"] == 2
        assert "status" not in backend.load("loans", "a")


class TestCreateStorage:
    """Test backend selection from a URL"""

    def test_memory(self):
        assert isinstance(create_storage("memory"), InMemoryStorage)

    def test_sqlite_file(self, tmp_path):
        store = create_storage(f"sqlite:///{tmp_path / 'loans.db'}")
        assert isinstance(store, SQLiteStorage)
        store.close()

    def test_sqlite_in_memory(self):
        store = create_storage("sqlite://")
        assert isinstance(store, SQLiteStorage)
        assert store.db_path == ":memory:"
        store.close()

    def test_unsupported(self):
        with pytest.raises(ValueError):
            create_storage("postgres://localhost/loans")

    def test_sqlite_persists_across_connections(self, tmp_path):
        path = tmp_path / "loans.db"
        first = SQLiteStorage(path)
        first.save("loans", "a", record("a", status="active"))
        first.close()

        second = SQLiteStorage(path)
        assert second.load("loans", "a")["status"] == "active"
        second.close()
