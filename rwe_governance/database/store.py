"""Keyed store abstraction with per-record locking and versioning"""

import json
import os
import tempfile
import threading
from abc import ABC, abstractmethod
from contextlib import contextmanager
from pathlib import Path
from typing import Callable, Dict, Generic, Iterator, List, Optional, Tuple, Type, TypeVar

import structlog
from pydantic import BaseModel

from rwe_governance.exceptions import ConcurrencyError

logger = structlog.get_logger(__name__)

ModelT = TypeVar("ModelT", bound=BaseModel)


class KeyedStore(ABC, Generic[ModelT]):
    """Abstract get/put-by-key store for one entity collection"""

    @abstractmethod
    def get(self, key: str) -> Optional[ModelT]:
        """
        Get a copy of the record stored under key

        Args:
            key: Record key

        Returns:
            Record copy or None if absent
        """
        pass

    @abstractmethod
    def get_versioned(self, key: str) -> Optional[Tuple[ModelT, int]]:
        """
        Get a record copy together with its current version

        Args:
            key: Record key

        Returns:
            (record, version) or None if absent
        """
        pass

    @abstractmethod
    def put(self, key: str, value: ModelT, expected_version: Optional[int] = None) -> int:
        """
        Store a record

        Args:
            key: Record key
            value: Record to store
            expected_version: Version the caller read; 0 means "must not exist"

        Returns:
            New record version

        Raises:
            ConcurrencyError: If expected_version is stale
        """
        pass

    @abstractmethod
    def delete(self, key: str) -> bool:
        """
        Delete the record under key

        Returns:
            True if a record was removed
        """
        pass

    @abstractmethod
    def values(self) -> List[ModelT]:
        """Return copies of all records in insertion order"""
        pass

    @abstractmethod
    def locked(self, key: str):
        """Context manager holding the lock of one record key"""
        pass

    def keys(self) -> List[str]:
        """Return all keys"""
        return [key for key, _ in self.items()]

    @abstractmethod
    def items(self) -> List[Tuple[str, ModelT]]:
        """Return (key, record copy) pairs in insertion order"""
        pass


class InMemoryKeyedStore(KeyedStore[ModelT]):
    """Dictionary-backed store with a reentrant lock per key"""

    def __init__(self, name: str = "store"):
        """
        Initialize in-memory store

        Args:
            name: Collection name used in log events
        """
        self.name = name
        self._records: Dict[str, Tuple[ModelT, int]] = {}
        self._locks: Dict[str, threading.RLock] = {}
        self._registry_lock = threading.Lock()

    def _lock_for(self, key: str) -> threading.RLock:
        with self._registry_lock:
            lock = self._locks.get(key)
            if lock is None:
                lock = threading.RLock()
                self._locks[key] = lock
            return lock

    @contextmanager
    def locked(self, key: str) -> Iterator[None]:
        """Hold the lock of one record key for a read-compute-write sequence"""
        lock = self._lock_for(key)
        with lock:
            yield

    def get(self, key: str) -> Optional[ModelT]:
        versioned = self.get_versioned(key)
        return versioned[0] if versioned else None

    def get_versioned(self, key: str) -> Optional[Tuple[ModelT, int]]:
        with self._registry_lock:
            entry = self._records.get(key)
        if entry is None:
            return None
        value, version = entry
        return value.model_copy(deep=True), version

    def put(self, key: str, value: ModelT, expected_version: Optional[int] = None) -> int:
        with self.locked(key):
            with self._registry_lock:
                current = self._records.get(key)
                current_version = current[1] if current else 0
                if expected_version is not None and expected_version != current_version:
                    logger.warning(
                        "stale_write_rejected",
                        store=self.name,
                        key=key,
                        expected_version=expected_version,
                        current_version=current_version,
                    )
                    raise ConcurrencyError(
                        f"Stale write to {self.name}/{key}",
                        details={"expected_version": expected_version, "current_version": current_version},
                    )
                new_version = current_version + 1
                self._records[key] = (value.model_copy(deep=True), new_version)
            self._persist()
            return new_version

    def delete(self, key: str) -> bool:
        with self.locked(key):
            with self._registry_lock:
                removed = self._records.pop(key, None) is not None
            if removed:
                self._persist()
            return removed

    def items(self) -> List[Tuple[str, ModelT]]:
        with self._registry_lock:
            snapshot = list(self._records.items())
        return [(key, value.model_copy(deep=True)) for key, (value, _) in snapshot]

    def values(self) -> List[ModelT]:
        return [value for _, value in self.items()]

    def __len__(self) -> int:
        with self._registry_lock:
            return len(self._records)

    def _persist(self) -> None:
        """Hook for durable backends"""
        pass


class JsonFileKeyedStore(InMemoryKeyedStore[ModelT]):
    """In-memory store snapshotted to a JSON file after every write"""

    def __init__(self, path: str, model: Type[ModelT], name: Optional[str] = None):
        """
        Initialize JSON file store, loading any existing snapshot

        Args:
            path: Snapshot file path
            model: Pydantic model class of the records
            name: Collection name used in log events
        """
        super().__init__(name or Path(path).stem)
        self.path = Path(path)
        self.model = model
        self._file_lock = threading.Lock()
        self.path.parent.mkdir(parents=True, exist_ok=True)
        self._load()

    def _load(self) -> None:
        if not self.path.exists():
            return
        with open(self.path, "r", encoding="utf-8") as f:
            raw = json.load(f)
        for key, entry in raw.items():
            self._records[key] = (self.model.model_validate(entry["value"]), int(entry["version"]))
        logger.info("store_loaded", store=self.name, path=str(self.path), records=len(self._records))

    def _persist(self) -> None:
        with self._file_lock:
            with self._registry_lock:
                snapshot = {
                    key: {"version": version, "value": value.model_dump(mode="json")}
                    for key, (value, version) in self._records.items()
                }
            fd, tmp_path = tempfile.mkstemp(dir=str(self.path.parent), suffix=".tmp")
            try:
                with os.fdopen(fd, "w", encoding="utf-8") as f:
                    json.dump(snapshot, f, indent=2)
                os.replace(tmp_path, self.path)
            except OSError:
                if os.path.exists(tmp_path):
                    os.remove(tmp_path)
                raise


class AppendOnlyLog(Generic[ModelT]):
    """Insert-only, sequence-numbered event log

    Entries are never rewritten or removed. Appends are serialized by one
    lock, so entries for any subject keep the order in which they were
    written.
    """

    def __init__(
        self,
        name: str,
        path: Optional[str] = None,
        model: Optional[Type[ModelT]] = None,
        sink: Optional[Callable[[str, ModelT], None]] = None,
    ):
        """
        Initialize append-only log

        Args:
            name: Log name, also passed to the sink as the event type
            path: Optional JSON Lines file the log is appended to and reloaded from
            model: Entry model class, required when path is given
            sink: Optional callback receiving every appended entry
        """
        self.name = name
        self.path = Path(path) if path else None
        self.model = model
        self.sink = sink
        self._entries: List[ModelT] = []
        self._lock = threading.Lock()

        if self.path is not None:
            if model is None:
                raise ValueError("model is required for a file-backed log")
            self.path.parent.mkdir(parents=True, exist_ok=True)
            if self.path.exists():
                with open(self.path, "r", encoding="utf-8") as f:
                    for line in f:
                        line = line.strip()
                        if line:
                            self._entries.append(model.model_validate(json.loads(line)["entry"]))

    def append(self, entry: ModelT) -> int:
        """
        Append an entry

        Args:
            entry: Entry to append

        Returns:
            Sequence number of the entry (1-based)
        """
        with self._lock:
            self._entries.append(entry)
            sequence = len(self._entries)
            if self.path is not None:
                with open(self.path, "a", encoding="utf-8") as f:
                    f.write(json.dumps({"seq": sequence, "entry": entry.model_dump(mode="json")}) + "\n")
            if self.sink is not None:
                self.sink(self.name, entry)
        return sequence

    def entries(self, predicate: Optional[Callable[[ModelT], bool]] = None) -> List[ModelT]:
        """Return entries in append order, optionally filtered"""
        with self._lock:
            snapshot = list(self._entries)
        if predicate is None:
            return snapshot
        return [entry for entry in snapshot if predicate(entry)]

    def __len__(self) -> int:
        with self._lock:
            return len(self._entries)
