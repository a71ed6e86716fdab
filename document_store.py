"""
Shared document storage for engine records.

Records live in named collections (filingCorrections, keywordCandidates,
learningEvents, knowledgeItems). Every stored record carries its own `_id`
and `_collection`. Two backends share one contract:

- InMemoryDocumentStore: process-local, used by tests and by default
- JsonFileDocumentStore: one JSON file per collection under a storage
  directory, so main.py and server.py can share learned state
"""
import json
import uuid
import logging
import threading
from contextlib import contextmanager
from pathlib import Path
from typing import Any, Dict, Iterator, List, Optional

logger = logging.getLogger(__name__)


class DocumentStore:
    """
    Persistence contract used by the learning loop and the consolidation helpers.

    get/patch/delete address records by id alone; ids are unique across
    collections. transaction() holds the store lock for a read-modify-write
    sequence.
    """

    def __init__(self):
        self._records: Dict[str, Dict[str, Any]] = {}
        self._lock = threading.RLock()

    # ------------------------------------------------------------------
    # Contract
    # ------------------------------------------------------------------

    def get(self, record_id: str) -> Optional[Dict[str, Any]]:
        with self._lock:
            record = self._records.get(record_id)
            return dict(record) if record is not None else None

    def query_by_field(self, collection: str, field: str, value: Any) -> List[Dict[str, Any]]:
        """All records in a collection whose `field` equals `value`, in insertion order."""
        with self._lock:
            return [
                dict(r) for r in self._records.values()
                if r["_collection"] == collection and r.get(field) == value
            ]

    def insert(self, collection: str, record: Dict[str, Any]) -> str:
        """Insert a record and return its new id."""
        record_id = uuid.uuid4().hex
        with self._lock:
            stored = {k: v for k, v in record.items() if k not in ("_id", "_collection")}
            stored["_id"] = record_id
            stored["_collection"] = collection
            self._records[record_id] = stored
            self._persist(collection)
        return record_id

    def patch(self, record_id: str, partial: Dict[str, Any]) -> Dict[str, Any]:
        """
        Merge fields into an existing record.

        Raises:
            KeyError: If the record does not exist
        """
        with self._lock:
            record = self._records.get(record_id)
            if record is None:
                raise KeyError(f"Record {record_id} not found")
            record.update({k: v for k, v in partial.items() if k not in ("_id", "_collection")})
            self._persist(record["_collection"])
            return dict(record)

    def delete(self, record_id: str) -> bool:
        with self._lock:
            record = self._records.pop(record_id, None)
            if record is None:
                return False
            self._persist(record["_collection"])
            return True

    def list(self, collection: str) -> List[Dict[str, Any]]:
        with self._lock:
            return [dict(r) for r in self._records.values() if r["_collection"] == collection]

    @contextmanager
    def transaction(self) -> Iterator["DocumentStore"]:
        """Hold the store lock across several operations."""
        with self._lock:
            yield self

    def clear(self) -> int:
        with self._lock:
            collections = {r["_collection"] for r in self._records.values()}
            count = len(self._records)
            self._records.clear()
            for collection in collections:
                self._persist(collection)
            return count

    def __len__(self) -> int:
        return len(self._records)

    # ------------------------------------------------------------------

    def _persist(self, collection: str) -> None:
        """Hook for durable backends; called with the lock held."""


class InMemoryDocumentStore(DocumentStore):
    """Process-local store."""


class JsonFileDocumentStore(DocumentStore):
    """
    Store backed by one JSON file per collection.

    Files are rewritten in full on every change, which is fine for the
    handful of learning records the engine keeps.
    """

    def __init__(self, storage_dir: str):
        super().__init__()
        self.storage_dir = Path(storage_dir)
        self.storage_dir.mkdir(parents=True, exist_ok=True)
        self.load()

    def _path_for(self, collection: str) -> Path:
        return self.storage_dir / f"{collection}.json"

    def load(self) -> int:
        """Load every collection file from the storage directory."""
        loaded = 0
        with self._lock:
            for file_path in sorted(self.storage_dir.glob("*.json")):
                collection = file_path.stem
                with open(file_path, "r") as f:
                    records = json.load(f)
                for record in records:
                    record["_collection"] = collection
                    self._records[record["_id"]] = record
                    loaded += 1
        logger.info(f"Loaded {loaded} records from {self.storage_dir}")
        return loaded

    def _persist(self, collection: str) -> None:
        records = [r for r in self._records.values() if r["_collection"] == collection]
        file_path = self._path_for(collection)
        if not records:
            if file_path.exists():
                file_path.unlink()
            return

        serializable = [
            {k: v for k, v in r.items() if k != "_collection"} for r in records
        ]
        with open(file_path, "w") as f:
            json.dump(serializable, f, indent=2, default=str)
