"""Tests for keyed stores, append-only logs and repositories"""

import json
import tempfile
import threading
from pathlib import Path

import pytest
from pydantic import BaseModel

from rwe_governance.database.repositories import BaseRepository
from rwe_governance.database.store import AppendOnlyLog, InMemoryKeyedStore, JsonFileKeyedStore
from rwe_governance.exceptions import ConcurrencyError


class Counter(BaseModel):
    name: str
    value: int = 0
    tags: list = []


class CounterRepository(BaseRepository[Counter]):
    collection = "counters"
    model = Counter


class TestInMemoryKeyedStore:
    """Test InMemoryKeyedStore class"""

    def test_put_and_get(self):
        """Test records round-trip and versions increase"""
        store = InMemoryKeyedStore("counters")

        assert store.put("a", Counter(name="a")) == 1
        assert store.put("a", Counter(name="a", value=2)) == 2
        assert store.get("a").value == 2
        assert store.get_versioned("a")[1] == 2

    def test_get_missing_returns_none(self):
        """Test missing keys return None"""
        store = InMemoryKeyedStore()

        assert store.get("missing") is None
        assert store.get_versioned("missing") is None

    def test_get_returns_copy(self):
        """Test mutating a fetched record does not change the store"""
        store = InMemoryKeyedStore()
        store.put("a", Counter(name="a", tags=["x"]))

        fetched = store.get("a")
        fetched.tags.append("y")

        assert store.get("a").tags == ["x"]

    def test_expected_version_zero_means_create(self):
        """Test expected_version 0 rejects an existing record"""
        store = InMemoryKeyedStore()
        store.put("a", Counter(name="a"), expected_version=0)

        with pytest.raises(ConcurrencyError):
            store.put("a", Counter(name="a"), expected_version=0)

    def test_stale_write_rejected(self):
        """Test a write based on an old version is rejected"""
        store = InMemoryKeyedStore()
        store.put("a", Counter(name="a"))
        _, version = store.get_versioned("a")
        store.put("a", Counter(name="a", value=1), expected_version=version)

        with pytest.raises(ConcurrencyError) as excinfo:
            store.put("a", Counter(name="a", value=99), expected_version=version)

        assert excinfo.value.details["current_version"] == 2
        assert store.get("a").value == 1

    def test_delete(self):
        """Test delete reports whether a record was removed"""
        store = InMemoryKeyedStore()
        store.put("a", Counter(name="a"))

        assert store.delete("a") is True
        assert store.delete("a") is False
        assert len(store) == 0

    def test_values_in_insertion_order(self):
        """Test values keep insertion order"""
        store = InMemoryKeyedStore()
        for name in ["c", "a", "b"]:
            store.put(name, Counter(name=name))

        assert [c.name for c in store.values()] == ["c", "a", "b"]
        assert store.keys() == ["c", "a", "b"]

    def test_locked_increments_are_not_lost(self):
        """Test read-compute-write under the key lock loses no updates"""
        store = InMemoryKeyedStore()
        store.put("a", Counter(name="a"))

        def increment():
            for _ in range(50):
                with store.locked("a"):
                    current, version = store.get_versioned("a")
                    store.put("a", Counter(name="a", value=current.value + 1), expected_version=version)

        threads = [threading.Thread(target=increment) for _ in range(4)]
        for thread in threads:
            thread.start()
        for thread in threads:
            thread.join()

        assert store.get("a").value == 200


class TestJsonFileKeyedStore:
    """Test JsonFileKeyedStore class"""

    def test_snapshot_written_and_reloaded(self):
        """Test records survive a reload from the snapshot file"""
        with tempfile.TemporaryDirectory() as tmpdir:
            path = Path(tmpdir) / "counters.json"
            store = JsonFileKeyedStore(str(path), Counter)
            store.put("a", Counter(name="a", value=3))
            store.put("a", Counter(name="a", value=4))

            raw = json.loads(path.read_text())
            assert raw["a"]["version"] == 2
            assert raw["a"]["value"]["value"] == 4

            reloaded = JsonFileKeyedStore(str(path), Counter)
            assert reloaded.get("a").value == 4
            assert reloaded.get_versioned("a")[1] == 2

    def test_delete_persists(self):
        """Test deletes are written to the snapshot"""
        with tempfile.TemporaryDirectory() as tmpdir:
            path = Path(tmpdir) / "counters.json"
            store = JsonFileKeyedStore(str(path), Counter)
            store.put("a", Counter(name="a"))
            store.delete("a")

            assert JsonFileKeyedStore(str(path), Counter).get("a") is None

    def test_no_temp_files_left_behind(self):
        """Test atomic writes leave only the snapshot file"""
        with tempfile.TemporaryDirectory() as tmpdir:
            path = Path(tmpdir) / "counters.json"
            store = JsonFileKeyedStore(str(path), Counter)
            for i in range(3):
                store.put(str(i), Counter(name=str(i)))

            assert [p.name for p in Path(tmpdir).iterdir()] == ["counters.json"]


class TestAppendOnlyLog:
    """Test AppendOnlyLog class"""

    def test_sequence_numbers(self):
        """Test appends return 1-based sequence numbers"""
        log = AppendOnlyLog("events")

        assert log.append(Counter(name="a")) == 1
        assert log.append(Counter(name="b")) == 2
        assert len(log) == 2

    def test_entries_filter(self):
        """Test entries can be filtered by predicate"""
        log = AppendOnlyLog("events")
        for i in range(5):
            log.append(Counter(name="even" if i % 2 == 0 else "odd", value=i))

        assert [c.value for c in log.entries(lambda c: c.name == "even")] == [0, 2, 4]

    def test_sink_receives_entries(self):
        """Test the sink is called with the log name and entry"""
        received = []
        log = AppendOnlyLog("events", sink=lambda name, entry: received.append((name, entry.name)))
        log.append(Counter(name="a"))

        assert received == [("events", "a")]

    def test_file_backed_log_reloads(self):
        """Test a file-backed log reloads its entries"""
        with tempfile.TemporaryDirectory() as tmpdir:
            path = Path(tmpdir) / "events.jsonl"
            log = AppendOnlyLog("events", path=str(path), model=Counter)
            log.append(Counter(name="a", value=1))
            log.append(Counter(name="b", value=2))

            reloaded = AppendOnlyLog("events", path=str(path), model=Counter)
            assert [c.value for c in reloaded.entries()] == [1, 2]
            assert reloaded.append(Counter(name="c")) == 3

    def test_file_backed_log_requires_model(self):
        """Test a path without a model is rejected"""
        with tempfile.TemporaryDirectory() as tmpdir:
            with pytest.raises(ValueError):
                AppendOnlyLog("events", path=str(Path(tmpdir) / "events.jsonl"))


class TestBaseRepository:
    """Test BaseRepository class"""

    def test_defaults_to_in_memory_store(self):
        """Test a repository without a store gets an in-memory one"""
        repository = CounterRepository()

        assert isinstance(repository.store, InMemoryKeyedStore)
        assert repository.store.name == "counters"

    def test_find(self):
        """Test find filters by predicate"""
        repository = CounterRepository()
        repository.save("a", Counter(name="a", value=1))
        repository.save("b", Counter(name="b", value=5))

        assert [c.name for c in repository.find(lambda c: c.value > 2)] == ["b"]
        assert len(repository.list_all()) == 2
