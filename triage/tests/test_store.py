"""Tests for the Datastore: team scoping, uniqueness, compare-and-set, persistence."""

import json
import threading
import pytest

from triage.common.store import Datastore


@pytest.fixture
def store():
    return Datastore()


class TestInsertAndGet:
    def test_insert_requires_id(self, store):
        with pytest.raises(ValueError, match="must have an id"):
            store.insert("jobs", {"status": "pending"})

    def test_duplicate_id_rejected(self, store):
        store.insert("jobs", {"id": "j1"})
        with pytest.raises(ValueError, match="duplicate"):
            store.insert("jobs", {"id": "j1"})

    def test_get_is_team_scoped(self, store):
        store.insert("jobs", {"id": "j1", "team_id": "t1"})
        assert store.get("jobs", "j1", team_id="t1")["id"] == "j1"
        assert store.get("jobs", "j1", team_id="t2") is None
        assert store.get("jobs", "j1")["id"] == "j1"

    def test_returned_records_are_copies(self, store):
        store.insert("jobs", {"id": "j1", "task_ids": []})
        record = store.get("jobs", "j1")
        record["task_ids"].append("x")
        assert store.get("jobs", "j1")["task_ids"] == []

    def test_find_keeps_insertion_order(self, store):
        for i in range(3):
            store.insert("jobs", {"id": f"j{i}", "team_id": "t1", "status": "pending"})
        store.insert("jobs", {"id": "other", "team_id": "t2", "status": "pending"})

        assert [r["id"] for r in store.find("jobs", team_id="t1")] == ["j0", "j1", "j2"]
        assert store.count("jobs", status="pending") == 4
        assert store.find_one("jobs", team_id="t3") is None


class TestInsertUnique:
    def test_second_insert_returns_existing(self, store):
        key = ("team_id", "source_type", "source_dedup_key")
        first, created = store.insert_unique(
            "discussions", {"id": "d1", "team_id": "t1", "source_type": "slack", "source_dedup_key": "k"}, key
        )
        again, created_again = store.insert_unique(
            "discussions", {"id": "d2", "team_id": "t1", "source_type": "slack", "source_dedup_key": "k"}, key
        )

        assert created is True
        assert created_again is False
        assert again["id"] == "d1"
        assert store.count("discussions") == 1

    def test_other_team_is_not_a_duplicate(self, store):
        key = ("team_id", "source_dedup_key")
        store.insert_unique("discussions", {"id": "d1", "team_id": "t1", "source_dedup_key": "k"}, key)
        _, created = store.insert_unique("discussions", {"id": "d2", "team_id": "t2", "source_dedup_key": "k"}, key)
        assert created is True

    def test_concurrent_inserts_create_one_record(self, store):
        key = ("source_dedup_key",)
        results = []

        def deliver(i):
            _, created = store.insert_unique("discussions", {"id": f"d{i}", "source_dedup_key": "same"}, key)
            results.append(created)

        threads = [threading.Thread(target=deliver, args=(i,)) for i in range(10)]
        for t in threads:
            t.start()
        for t in threads:
            t.join()

        assert results.count(True) == 1
        assert store.count("discussions") == 1


class TestUpdate:
    def test_compare_and_set_success(self, store):
        store.insert("jobs", {"id": "j1", "team_id": "t1", "status": "pending"})
        updated = store.update("jobs", "j1", {"status": "processing"}, team_id="t1", expected={"status": "pending"})
        assert updated["status"] == "processing"

    def test_stale_expected_status_is_rejected(self, store):
        store.insert("jobs", {"id": "j1", "team_id": "t1", "status": "processing"})
        assert store.update("jobs", "j1", {"status": "processing"}, expected={"status": "pending"}) is None
        assert store.get("jobs", "j1")["status"] == "processing"

    def test_update_out_of_scope(self, store):
        store.insert("jobs", {"id": "j1", "team_id": "t1", "status": "pending"})
        assert store.update("jobs", "j1", {"status": "failed"}, team_id="t2") is None
        assert store.update("jobs", "missing", {"status": "failed"}) is None

    def test_delete(self, store):
        store.insert("accounts", {"id": "a1", "team_id": "t1"})
        assert store.delete("accounts", "a1", team_id="t2") is False
        assert store.delete("accounts", "a1", team_id="t1") is True
        assert store.get("accounts", "a1") is None


class TestPersistence:
    def test_survives_reload(self, tmp_path):
        path = tmp_path / "data" / "store.json"
        store = Datastore(path)
        store.insert("jobs", {"id": "j1", "team_id": "t1", "status": "pending"})
        store.update("jobs", "j1", {"status": "completed"})

        reloaded = Datastore(path)
        assert reloaded.get("jobs", "j1")["status"] == "completed"
        assert json.loads(path.read_text())["jobs"][0]["id"] == "j1"

    def test_write_leaves_no_temporary_file(self, tmp_path):
        path = tmp_path / "store.json"
        store = Datastore(path)
        store.insert("jobs", {"id": "j1", "team_id": "t1"})
        store.delete("jobs", "j1")

        assert [p.name for p in tmp_path.iterdir()] == ["store.json"]
        assert json.loads(path.read_text())["jobs"] == []

    def test_corrupt_file_starts_empty(self, tmp_path, caplog):
        path = tmp_path / "store.json"
        path.write_text("{broken")

        store = Datastore(path)

        assert store.count("jobs") == 0
        assert "Failed to load datastore" in caplog.text
