"""Transactional document store interface and the in-process adapter.

Documents are JSON-compatible dicts addressed by ``(collection, doc_id)``.
All mutations go through ``run_transaction``: the callback reads what it
needs through the transaction, stages writes, and the store commits them
atomically only if nothing it read has changed since. On conflict the
callback is re-executed against fresh state, up to a bounded number of
attempts with jittered exponential backoff.

Field updates use dotted paths into nested maps and support the atomic
field operations ``ArrayUnion``, ``ArrayRemove``, ``Increment`` and
``DELETE_FIELD``.
"""
import copy
import random
import threading
import time
import uuid
from typing import Any, Callable, Dict, List, Mapping, Optional, Tuple, TypeVar

from timeout_app.core.errors import InternalError, NotFound
from timeout_app.core.logging import get_logger

logger = get_logger(__name__)

T = TypeVar("T")
DocKey = Tuple[str, str]


class TransactionConflict(Exception):
    """Raised by ``commit`` when a document read by the transaction changed."""


class DocumentExists(Exception):
    """Raised when ``create`` targets an id that is already taken."""


class ArrayUnion:
    """Append each value to an array field unless already present."""

    def __init__(self, *values: Any):
        self.values = values


class ArrayRemove:
    """Remove every occurrence of each value from an array field."""

    def __init__(self, *values: Any):
        self.values = values


class Increment:
    """Add ``amount`` to a numeric field (missing counts as 0)."""

    def __init__(self, amount: int):
        self.amount = amount


class _DeleteField:
    def __repr__(self):
        return "DELETE_FIELD"


DELETE_FIELD = _DeleteField()


def apply_field_updates(document: Mapping[str, Any], updates: Mapping[str, Any]) -> Dict[str, Any]:
    """Return a copy of ``document`` with dotted-path ``updates`` applied.

    Example:
        >>> apply_field_updates({"count": 1, "members": ["a"]},
        ...                     {"count": Increment(1), "members": ArrayUnion("b")})
        {'count': 2, 'members': ['a', 'b']}
    """
    result = copy.deepcopy(dict(document))

    for path, value in updates.items():
        keys = path.split(".")
        parent = result
        missing_parent = False
        for key in keys[:-1]:
            child = parent.get(key)
            if not isinstance(child, dict):
                if value is DELETE_FIELD:
                    missing_parent = True
                    break
                child = {}
                parent[key] = child
            parent = child
        if missing_parent:
            continue

        leaf = keys[-1]
        if value is DELETE_FIELD:
            parent.pop(leaf, None)
        elif isinstance(value, Increment):
            parent[leaf] = (parent.get(leaf) or 0) + value.amount
        elif isinstance(value, ArrayUnion):
            current = list(parent.get(leaf) or [])
            for item in value.values:
                if item not in current:
                    current.append(copy.deepcopy(item))
            parent[leaf] = current
        elif isinstance(value, ArrayRemove):
            parent[leaf] = [item for item in (parent.get(leaf) or []) if item not in value.values]
        else:
            parent[leaf] = copy.deepcopy(value)

    return result


class Transaction:
    """Read-modify-write unit. Reads are tracked; writes are buffered."""

    def __init__(self):
        self._snapshots: Dict[DocKey, Optional[Dict[str, Any]]] = {}
        self._writes: Dict[DocKey, Optional[Dict[str, Any]]] = {}

    def _read(self, collection: str, doc_id: str) -> Optional[Dict[str, Any]]:
        raise NotImplementedError

    def commit(self):
        raise NotImplementedError

    def close(self):
        """Release adapter resources; called after every attempt."""

    def _current(self, key: DocKey) -> Optional[Dict[str, Any]]:
        if key in self._writes:
            return self._writes[key]
        if key not in self._snapshots:
            self._snapshots[key] = self._read(*key)
        return self._snapshots[key]

    def get(self, collection: str, doc_id: str) -> Optional[Dict[str, Any]]:
        """Read a document (or None), including this transaction's own writes."""
        return copy.deepcopy(self._current((collection, doc_id)))

    def create(self, collection: str, doc_id: str, data: Mapping[str, Any]):
        if self._current((collection, doc_id)) is not None:
            raise DocumentExists(f"{collection}/{doc_id} already exists")
        self._writes[(collection, doc_id)] = copy.deepcopy(dict(data))

    def set(self, collection: str, doc_id: str, data: Mapping[str, Any]):
        self._writes[(collection, doc_id)] = copy.deepcopy(dict(data))

    def update(self, collection: str, doc_id: str, updates: Mapping[str, Any]):
        current = self._current((collection, doc_id))
        if current is None:
            raise NotFound(f"{collection}/{doc_id} not found")
        self._writes[(collection, doc_id)] = apply_field_updates(current, updates)

    def delete(self, collection: str, doc_id: str):
        self._writes[(collection, doc_id)] = None


class DocumentStore:
    """Base document store with bounded transaction retry.

    Args:
        max_attempts: Attempts before a conflicting transaction is abandoned
        backoff_seconds: Base delay, doubled after each conflict
    """

    def __init__(self, max_attempts: int = 5, backoff_seconds: float = 0.05):
        self.max_attempts = max_attempts
        self.backoff_seconds = backoff_seconds

    def transaction(self) -> Transaction:
        raise NotImplementedError

    def get(self, collection: str, doc_id: str) -> Optional[Dict[str, Any]]:
        raise NotImplementedError

    def list_documents(self, collection: str) -> List[Dict[str, Any]]:
        raise NotImplementedError

    def ping(self) -> bool:
        return True

    def new_id(self) -> str:
        return uuid.uuid4().hex

    def run_transaction(self, fn: Callable[[Transaction], T]) -> T:
        """Run ``fn`` atomically, re-running it on conflicting commits.

        Exceptions raised by ``fn`` abort the attempt without writing and
        propagate unchanged.

        Raises:
            InternalError: If every attempt conflicted
        """
        for attempt in range(1, self.max_attempts + 1):
            txn = self.transaction()
            try:
                result = fn(txn)
                txn.commit()
                return result
            except TransactionConflict as e:
                logger.debug(f"Transaction conflict on attempt {attempt}: {e}", extra={"attempt": attempt})
                if attempt < self.max_attempts:
                    delay = self.backoff_seconds * (2 ** (attempt - 1))
                    time.sleep(delay * random.uniform(0.5, 1.5))
            finally:
                txn.close()

        logger.warning(
            f"Transaction abandoned after {self.max_attempts} conflicting attempts",
            extra={"attempt": self.max_attempts}
        )
        raise InternalError("Too much contention on this document, please retry")

    def create(self, collection: str, doc_id: str, data: Mapping[str, Any]):
        self.run_transaction(lambda txn: txn.create(collection, doc_id, data))

    def set(self, collection: str, doc_id: str, data: Mapping[str, Any]):
        self.run_transaction(lambda txn: txn.set(collection, doc_id, data))

    def update(self, collection: str, doc_id: str, updates: Mapping[str, Any]):
        self.run_transaction(lambda txn: txn.update(collection, doc_id, updates))


class InMemoryTransaction(Transaction):
    def __init__(self, store: "InMemoryDocumentStore"):
        super().__init__()
        self._store = store
        self._versions: Dict[DocKey, int] = {}

    def _read(self, collection: str, doc_id: str) -> Optional[Dict[str, Any]]:
        document, version = self._store._read_versioned((collection, doc_id))
        self._versions[(collection, doc_id)] = version
        return document

    def commit(self):
        if self._writes:
            self._store._commit(self._versions, self._writes)


class InMemoryDocumentStore(DocumentStore):
    """Thread-safe in-process store with per-document version checks.

    Used for tests and local development (``STORE_BACKEND=memory``).
    """

    def __init__(self, max_attempts: int = 5, backoff_seconds: float = 0.001):
        super().__init__(max_attempts=max_attempts, backoff_seconds=backoff_seconds)
        self._documents: Dict[DocKey, Dict[str, Any]] = {}
        self._versions: Dict[DocKey, int] = {}
        self._lock = threading.Lock()

    def transaction(self) -> InMemoryTransaction:
        return InMemoryTransaction(self)

    def _read_versioned(self, key: DocKey) -> Tuple[Optional[Dict[str, Any]], int]:
        with self._lock:
            return copy.deepcopy(self._documents.get(key)), self._versions.get(key, 0)

    def _commit(self, read_versions: Mapping[DocKey, int], writes: Mapping[DocKey, Optional[Dict[str, Any]]]):
        with self._lock:
            for key, version in read_versions.items():
                if self._versions.get(key, 0) != version:
                    raise TransactionConflict(f"{key[0]}/{key[1]} changed since it was read")
            for key, document in writes.items():
                if document is None:
                    self._documents.pop(key, None)
                else:
                    self._documents[key] = copy.deepcopy(document)
                self._versions[key] = self._versions.get(key, 0) + 1

    def get(self, collection: str, doc_id: str) -> Optional[Dict[str, Any]]:
        document, _ = self._read_versioned((collection, doc_id))
        return document

    def list_documents(self, collection: str) -> List[Dict[str, Any]]:
        with self._lock:
            return [
                copy.deepcopy(document)
                for (doc_collection, _), document in self._documents.items()
                if doc_collection == collection
            ]
