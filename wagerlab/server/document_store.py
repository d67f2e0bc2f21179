"""Key-document store interface and the in-memory implementation.

The production store is an external transactional document database. The
server only relies on the primitives declared on ``DocumentStore``:
get/set/update/add by id, equality queries with ordering and a limit, and an
optimistic read-modify-write transaction.

Collections are addressed by slash-separated paths, e.g. ``sessions`` or
``sessions/<session_id>/trials``.
"""

from __future__ import annotations

import copy
import dataclasses
import logging
import os
import threading
import uuid
from abc import ABC, abstractmethod
from typing import Any, Callable

import msgpack

logger = logging.getLogger(__name__)

# msgpack ext type code for Timestamp values in snapshots
_TIMESTAMP_EXT_CODE = 1


@dataclasses.dataclass(frozen=True, order=True)
class Timestamp:
    """Structured time value stored on documents."""

    seconds: int
    nanoseconds: int = 0

    @classmethod
    def from_millis(cls, millis: int | float) -> Timestamp:
        millis = int(millis)
        return cls(seconds=millis // 1000, nanoseconds=(millis % 1000) * 1_000_000)

    def to_millis(self) -> int:
        return self.seconds * 1000 + self.nanoseconds // 1_000_000


class DocumentStoreError(Exception):
    """Base class for store failures."""


class DocumentNotFound(DocumentStoreError):
    def __init__(self, collection: str, doc_id: str):
        super().__init__(f"Document {collection}/{doc_id} does not exist")
        self.collection = collection
        self.doc_id = doc_id


class TransactionConflict(DocumentStoreError):
    """A transaction kept conflicting with concurrent writers."""


def collection_path(*parts: str) -> str:
    return "/".join(parts)


class Transaction(ABC):
    """Reads and buffered writes of a single read-modify-write attempt."""

    @abstractmethod
    def get(self, collection: str, doc_id: str) -> dict | None:
        ...

    @abstractmethod
    def set(self, collection: str, doc_id: str, data: dict) -> None:
        ...

    @abstractmethod
    def update(self, collection: str, doc_id: str, fields: dict) -> None:
        ...


class DocumentStore(ABC):
    """Operations the experiment server needs from a document store."""

    @abstractmethod
    def new_id(self) -> str:
        ...

    @abstractmethod
    def get(self, collection: str, doc_id: str) -> dict | None:
        """Return a copy of the document, or None if it does not exist."""
        ...

    @abstractmethod
    def set(self, collection: str, doc_id: str, data: dict) -> None:
        """Create or overwrite a document."""
        ...

    @abstractmethod
    def update(self, collection: str, doc_id: str, fields: dict) -> None:
        """Merge top-level fields into an existing document.

        Raises:
            DocumentNotFound: if the document does not exist.
        """
        ...

    @abstractmethod
    def add(self, collection: str, data: dict) -> str:
        """Create a document under a fresh id and return the id."""
        ...

    @abstractmethod
    def query(
        self,
        collection: str,
        field: str,
        value: Any,
        order_by: str | None = None,
        descending: bool = False,
        limit: int | None = None,
    ) -> list[tuple[str, dict]]:
        """Return (doc_id, document) pairs whose ``field`` equals ``value``."""
        ...

    @abstractmethod
    def list(self, collection: str) -> list[tuple[str, dict]]:
        ...

    @abstractmethod
    def transaction(self, fn: Callable[[Transaction], Any], max_attempts: int = 5) -> Any:
        """Run ``fn`` as an optimistic read-modify-write transaction.

        ``fn`` may be called more than once; it must not have side effects
        outside the transaction object. Its return value is returned from the
        attempt that commits.

        Raises:
            TransactionConflict: if no attempt commits within ``max_attempts``.
        """
        ...


@dataclasses.dataclass
class _StoredDocument:
    data: dict
    version: int


class _InMemoryTransaction(Transaction):
    def __init__(self, store: InMemoryDocumentStore):
        self._store = store
        # (collection, doc_id) -> version observed (0 if absent)
        self.read_versions: dict[tuple[str, str], int] = {}
        # (collection, doc_id) -> ("set" | "update", data)
        self.writes: list[tuple[str, str, str, dict]] = []

    def get(self, collection: str, doc_id: str) -> dict | None:
        for op_collection, op_id, op, data in reversed(self.writes):
            if (op_collection, op_id) == (collection, doc_id) and op == "set":
                return copy.deepcopy(data)
        doc, version = self._store._read_versioned(collection, doc_id)
        self.read_versions.setdefault((collection, doc_id), version)
        return doc

    def set(self, collection: str, doc_id: str, data: dict) -> None:
        self.writes.append((collection, doc_id, "set", copy.deepcopy(data)))

    def update(self, collection: str, doc_id: str, fields: dict) -> None:
        self.writes.append((collection, doc_id, "update", copy.deepcopy(fields)))


class InMemoryDocumentStore(DocumentStore):
    """Process-local document store with optimistic transactions.

    Every document carries a version number that is bumped on each write. A
    transaction records the versions it read and commits only if none of them
    changed in the meantime; otherwise ``fn`` is re-run.

    Documents are deep-copied on the way in and out so callers never share
    mutable state with the store.
    """

    def __init__(self):
        self._collections: dict[str, dict[str, _StoredDocument]] = {}
        self._lock = threading.RLock()

    def new_id(self) -> str:
        return uuid.uuid4().hex[:20]

    def _read_versioned(self, collection: str, doc_id: str) -> tuple[dict | None, int]:
        with self._lock:
            stored = self._collections.get(collection, {}).get(doc_id)
            if stored is None:
                return None, 0
            return copy.deepcopy(stored.data), stored.version

    def _write(self, collection: str, doc_id: str, data: dict) -> None:
        docs = self._collections.setdefault(collection, {})
        previous = docs.get(doc_id)
        version = previous.version + 1 if previous else 1
        docs[doc_id] = _StoredDocument(data=data, version=version)

    def get(self, collection: str, doc_id: str) -> dict | None:
        doc, _ = self._read_versioned(collection, doc_id)
        return doc

    def set(self, collection: str, doc_id: str, data: dict) -> None:
        with self._lock:
            self._write(collection, doc_id, copy.deepcopy(data))

    def update(self, collection: str, doc_id: str, fields: dict) -> None:
        with self._lock:
            stored = self._collections.get(collection, {}).get(doc_id)
            if stored is None:
                raise DocumentNotFound(collection, doc_id)
            merged = copy.deepcopy(stored.data)
            merged.update(copy.deepcopy(fields))
            self._write(collection, doc_id, merged)

    def add(self, collection: str, data: dict) -> str:
        doc_id = self.new_id()
        self.set(collection, doc_id, data)
        return doc_id

    def list(self, collection: str) -> list[tuple[str, dict]]:
        with self._lock:
            return [
                (doc_id, copy.deepcopy(stored.data))
                for doc_id, stored in self._collections.get(collection, {}).items()
            ]

    def query(
        self,
        collection: str,
        field: str,
        value: Any,
        order_by: str | None = None,
        descending: bool = False,
        limit: int | None = None,
    ) -> list[tuple[str, dict]]:
        matches = [
            (doc_id, doc) for doc_id, doc in self.list(collection)
            if field in doc and doc[field] == value
        ]
        if order_by is not None:
            # Documents missing the ordering field are excluded, as in most document stores
            matches = [(doc_id, doc) for doc_id, doc in matches if doc.get(order_by) is not None]
            matches.sort(key=lambda item: item[1][order_by], reverse=descending)
        if limit is not None:
            matches = matches[:limit]
        return matches

    def transaction(self, fn: Callable[[Transaction], Any], max_attempts: int = 5) -> Any:
        for attempt in range(1, max_attempts + 1):
            txn = _InMemoryTransaction(self)
            result = fn(txn)
            with self._lock:
                conflicted = [
                    key for key, version in txn.read_versions.items()
                    if self._read_versioned(*key)[1] != version
                ]
                if not conflicted:
                    for collection, doc_id, op, data in txn.writes:
                        if op == "set":
                            self._write(collection, doc_id, data)
                        else:
                            stored = self._collections.get(collection, {}).get(doc_id)
                            if stored is None:
                                raise DocumentNotFound(collection, doc_id)
                            merged = copy.deepcopy(stored.data)
                            merged.update(data)
                            self._write(collection, doc_id, merged)
                    return result
            logger.info(
                f"[Store:Transaction] Conflict on {conflicted} "
                f"(attempt {attempt}/{max_attempts}). Retrying."
            )
        raise TransactionConflict(
            f"Transaction did not commit after {max_attempts} attempts"
        )

    # ------------------------------------------------------------------ #
    # Snapshots
    # ------------------------------------------------------------------ #

    def save_snapshot(self, path: str) -> None:
        """Write every document to ``path`` as msgpack."""
        with self._lock:
            payload = {
                collection: {doc_id: stored.data for doc_id, stored in docs.items()}
                for collection, docs in self._collections.items()
            }
            packed = msgpack.packb(payload, default=_encode_ext, use_bin_type=True)

        directory = os.path.dirname(path)
        if directory:
            os.makedirs(directory, exist_ok=True)
        with open(path, "wb") as f:
            f.write(packed)
        logger.info(f"[Store:Snapshot] Saved {len(payload)} collections to {path}")

    def load_snapshot(self, path: str) -> None:
        """Replace the store contents with the snapshot at ``path``."""
        with open(path, "rb") as f:
            payload = msgpack.unpackb(f.read(), ext_hook=_decode_ext, raw=False)

        with self._lock:
            self._collections = {
                collection: {
                    doc_id: _StoredDocument(data=data, version=1)
                    for doc_id, data in docs.items()
                }
                for collection, docs in payload.items()
            }
        logger.info(f"[Store:Snapshot] Loaded {len(payload)} collections from {path}")


def _encode_ext(obj: Any) -> msgpack.ExtType:
    if isinstance(obj, Timestamp):
        return msgpack.ExtType(
            _TIMESTAMP_EXT_CODE, msgpack.packb([obj.seconds, obj.nanoseconds])
        )
    raise TypeError(f"Cannot snapshot value of type {type(obj).__name__}")


def _decode_ext(code: int, data: bytes) -> Any:
    if code == _TIMESTAMP_EXT_CODE:
        seconds, nanoseconds = msgpack.unpackb(data)
        return Timestamp(seconds=seconds, nanoseconds=nanoseconds)
    return msgpack.ExtType(code, data)
