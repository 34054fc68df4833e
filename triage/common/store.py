"""
Datastore

Generic keyed record store used by every pipeline component.

Records are plain JSON-compatible dicts grouped into named collections and
keyed by ``id``. Reads and writes can be scoped by ``team_id``: a record whose
``team_id`` does not match is treated as absent. Writes are serialized behind
a lock, and ``update`` supports a compare-and-set precondition so concurrent
executions cannot both win the same state transition.

When constructed with a path the store is persisted to a JSON file after
every write. The whole file is rewritten synchronously by the caller, event
loop included, so file persistence is for development and single-process
deployments with small datasets. Leave the path empty to run in memory.
"""

import copy
import json
import logging
import os
import threading
from pathlib import Path
from typing import Any, Dict, List, Optional, Sequence, Tuple

logger = logging.getLogger("triage.common.store")


class Datastore:
    """
    Thread-safe in-memory datastore with optional JSON file persistence.

    Usage:
        store = Datastore()
        store.insert("jobs", {"id": "job_1", "team_id": "t1", "status": "pending"})
        store.update("jobs", "job_1", {"status": "processing"},
                     team_id="t1", expected={"status": "pending"})
    """

    def __init__(self, path: Optional[Path] = None):
        """
        Initialize datastore.

        Args:
            path: JSON file to persist to (default: memory only)
        """
        self._path = Path(path) if path else None
        self._collections: Dict[str, Dict[str, Dict[str, Any]]] = {}
        self._lock = threading.RLock()
        self._load()

    def _load(self) -> None:
        """Load collections from disk"""
        if not self._path or not self._path.exists():
            return

        try:
            with open(self._path) as f:
                data = json.load(f)
            self._collections = {
                name: {record["id"]: record for record in records}
                for name, records in data.items()
            }
        except (json.JSONDecodeError, IOError, KeyError) as e:
            logger.warning("Failed to load datastore from %s: %s", self._path, e)
            self._collections = {}

    def _save(self) -> None:
        """Save collections to disk"""
        if not self._path:
            return

        self._path.parent.mkdir(parents=True, exist_ok=True)
        data = {
            name: list(records.values())
            for name, records in self._collections.items()
        }
        # write then rename, so a crash never leaves a truncated file
        tmp_path = self._path.with_name(self._path.name + ".tmp")
        with open(tmp_path, "w") as f:
            json.dump(data, f, indent=2, default=str)
        os.replace(tmp_path, self._path)

    def _bucket(self, collection: str) -> Dict[str, Dict[str, Any]]:
        return self._collections.setdefault(collection, {})

    @staticmethod
    def _in_scope(record: Dict[str, Any], team_id: Optional[str]) -> bool:
        return team_id is None or record.get("team_id") == team_id

    @staticmethod
    def _matches(record: Dict[str, Any], filters: Dict[str, Any]) -> bool:
        return all(record.get(key) == value for key, value in filters.items())

    def insert(self, collection: str, record: Dict[str, Any]) -> Dict[str, Any]:
        """
        Insert a new record.

        Raises:
            ValueError: if the record has no id or the id already exists
        """
        record_id = record.get("id")
        if not record_id:
            raise ValueError("record must have an id")

        with self._lock:
            bucket = self._bucket(collection)
            if record_id in bucket:
                raise ValueError(f"duplicate id in {collection}: {record_id}")
            bucket[record_id] = copy.deepcopy(record)
            self._save()
            return copy.deepcopy(record)

    def insert_unique(
        self,
        collection: str,
        record: Dict[str, Any],
        unique_on: Sequence[str],
    ) -> Tuple[Dict[str, Any], bool]:
        """
        Insert unless a record with the same values for ``unique_on`` exists.

        The check and the insert happen under one lock acquisition.

        Returns:
            (stored record, created) where created is False for an existing match
        """
        key = {name: record.get(name) for name in unique_on}
        with self._lock:
            for existing in self._bucket(collection).values():
                if self._matches(existing, key):
                    return copy.deepcopy(existing), False
            return self.insert(collection, record), True

    def get(
        self,
        collection: str,
        record_id: str,
        team_id: Optional[str] = None,
    ) -> Optional[Dict[str, Any]]:
        """Get a record by id, or None if absent or owned by another team"""
        with self._lock:
            record = self._bucket(collection).get(record_id)
            if record is None or not self._in_scope(record, team_id):
                return None
            return copy.deepcopy(record)

    def find(self, collection: str, **filters: Any) -> List[Dict[str, Any]]:
        """All records whose fields equal every given filter, in insertion order"""
        with self._lock:
            return [
                copy.deepcopy(record)
                for record in self._bucket(collection).values()
                if self._matches(record, filters)
            ]

    def find_one(self, collection: str, **filters: Any) -> Optional[Dict[str, Any]]:
        found = self.find(collection, **filters)
        return found[0] if found else None

    def update(
        self,
        collection: str,
        record_id: str,
        changes: Dict[str, Any],
        *,
        team_id: Optional[str] = None,
        expected: Optional[Dict[str, Any]] = None,
    ) -> Optional[Dict[str, Any]]:
        """
        Apply changes to a record.

        Args:
            collection: Collection name
            record_id: Record id
            changes: Field values to set
            team_id: Only update if the record belongs to this team
            expected: Only update if the record's current values match

        Returns:
            Updated record, or None if absent, out of scope, or a precondition failed
        """
        with self._lock:
            record = self._bucket(collection).get(record_id)
            if record is None or not self._in_scope(record, team_id):
                return None
            if expected and not self._matches(record, expected):
                return None
            record.update(copy.deepcopy(changes))
            self._save()
            return copy.deepcopy(record)

    def delete(
        self,
        collection: str,
        record_id: str,
        team_id: Optional[str] = None,
    ) -> bool:
        """Delete a record; returns False if it was absent or out of scope"""
        with self._lock:
            bucket = self._bucket(collection)
            record = bucket.get(record_id)
            if record is None or not self._in_scope(record, team_id):
                return False
            del bucket[record_id]
            self._save()
            return True

    def count(self, collection: str, **filters: Any) -> int:
        return len(self.find(collection, **filters))
