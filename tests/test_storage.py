"""
Tests for storage backends and transaction support
"""

import pytest
import tempfile
from datetime import datetime, timezone
from pathlib import Path

from loan_workflow.storage import InMemoryStorage, SQLiteStorage, create_storage


# Test data
test_data = {
    "id": "loan_001",
    "application_id": "LN00001",
    "principal": {"amount": "500000.00", "currency": "LKR"},
    "current_stage": "application_submitted",
    "created_at": datetime.now(timezone.utc).isoformat(),
    "updated_at": datetime.now(timezone.utc).isoformat()
}


@pytest.fixture(params=["memory", "sqlite"])
def storage(request):
    if request.param == "memory":
        backend = InMemoryStorage()
    else:
        backend = SQLiteStorage(":memory:")
    yield backend
    backend.close()


class TestStorageOperations:
    """Test basic CRUD operations on every backend"""

    def test_save_and_load(self, storage):
        storage.save("loans", "loan_001", test_data)

        assert storage.load("loans", "loan_001") == test_data
        assert storage.load("loans", "missing") is None

    def test_exists_and_count(self, storage):
        storage.save("loans", "loan_001", test_data)
        storage.save("loans", "loan_002", {"id": "loan_002", "current_stage": "active"})

        assert storage.exists("loans", "loan_001")
        assert not storage.exists("loans", "loan_003")
        assert storage.count("loans") == 2
        assert len(storage.load_all("loans")) == 2

    def test_find(self, storage):
        storage.save("loans", "loan_001", test_data)
        storage.save("loans", "loan_002", {"id": "loan_002", "current_stage": "active"})

        results = storage.find("loans", {"current_stage": "active"})

        assert [r["id"] for r in results] == ["loan_002"]
        assert storage.find("loans", {"current_stage": "closed"}) == []

    def test_delete(self, storage):
        storage.save("loans", "loan_001", test_data)

        assert storage.delete("loans", "loan_001")
        assert not storage.delete("loans", "loan_001")
        assert storage.count("loans") == 0

    def test_loaded_records_are_copies(self, storage):
        storage.save("loans", "loan_001", test_data)

        loaded = storage.load("loans", "loan_001")
        loaded["current_stage"] = "closed"

        assert storage.load("loans", "loan_001")["current_stage"] == "application_submitted"


class TestCompareAndSet:
    """Test version-guarded writes"""

    def test_matching_version_written(self, storage):
        storage.save("loans", "loan_001", {**test_data, "version": 1})

        assert storage.compare_and_set("loans", "loan_001", {**test_data, "version": 2}, 1)
        assert storage.load("loans", "loan_001")["version"] == 2

    def test_stale_version_rejected(self, storage):
        storage.save("loans", "loan_001", {**test_data, "version": 3})

        assert not storage.compare_and_set("loans", "loan_001", {**test_data, "version": 3}, 2)
        assert storage.load("loans", "loan_001")["version"] == 3

    def test_missing_record_rejected(self, storage):
        assert not storage.compare_and_set("loans", "loan_009", {"id": "loan_009", "version": 1}, 0)
        assert not storage.exists("loans", "loan_009")


class TestTransactions:
    """Test atomic blocks"""

    def test_commit(self, storage):
        with storage.atomic():
            storage.save("loans", "loan_001", test_data)

        assert storage.exists("loans", "loan_001")

    def test_rollback_on_error(self, storage):
        storage.save("loans", "loan_001", test_data)

        with pytest.raises(RuntimeError):
            with storage.atomic():
                storage.save("loans", "loan_001", {**test_data, "current_stage": "active"})
                storage.save("loans", "loan_002", {"id": "loan_002"})
                raise RuntimeError("boom")

        assert storage.load("loans", "loan_001")["current_stage"] == "application_submitted"
        assert not storage.exists("loans", "loan_002")


class TestSQLitePersistence:

    def test_data_survives_reopen(self):
        with tempfile.TemporaryDirectory() as temp_dir:
            db_path = Path(temp_dir) / "loans.db"

            storage = SQLiteStorage(db_path)
            storage.save("loans", "loan_001", test_data)
            storage.close()

            reopened = SQLiteStorage(db_path)
            assert reopened.load("loans", "loan_001") == test_data
            reopened.close()


class TestCreateStorage:

    def test_memory_url(self):
        assert isinstance(create_storage("memory://"), InMemoryStorage)

    def test_sqlite_url(self):
        storage = create_storage("sqlite:///:memory:")
        assert isinstance(storage, SQLiteStorage)
        assert storage.db_path == ":memory:"
        storage.close()

    def test_unsupported_url(self):
        with pytest.raises(ValueError):
            create_storage("postgresql://localhost/loans")
