"""
Ledger Store

Document collections for accounts, the append-only transaction log,
rewards, redemptions, idempotency claims and the admin audit trail.

Every mutation goes through ``run_transaction``: the callback works on a
``StoreTransaction`` that buffers its writes, and the buffer is committed
as one unit when the callback returns. If the callback raises, nothing is
written. Transactions are serialized by the store, which is what gives
per-account linearizability without application-level locks.
"""

import copy
import threading
from typing import Any, Callable, Iterator, Optional, TypeVar


T = TypeVar("T")

Predicate = Callable[[dict], bool]

COLLECTIONS = (
    "accounts",
    "transactions",
    "rewards",
    "redemptions",
    "claims",
    "admin_audit",
)


class LedgerStore:
    """Contract for a transactional document store."""

    def run_transaction(self, fn: Callable[["StoreTransaction"], T]) -> T:
        raise NotImplementedError

    def get(self, collection: str, key: str) -> Optional[dict]:
        raise NotImplementedError

    def select(self, collection: str, predicate: Optional[Predicate] = None) -> list[dict]:
        raise NotImplementedError


class StoreTransaction:
    def __init__(self, store: "InMemoryStorage"):
        self._store = store
        self._writes: dict[tuple[str, str], dict] = {}

    def get(self, collection: str, key: str) -> Optional[dict]:
        buffered = self._writes.get((collection, key))
        if buffered is not None:
            return copy.deepcopy(buffered)
        return self._store._read(collection, key)

    def set(self, collection: str, key: str, data: dict) -> None:
        self._store._check_collection(collection)
        self._writes[(collection, key)] = copy.deepcopy(data)

    def create(self, collection: str, key: str, data: dict) -> bool:
        """Write ``data`` only if ``key`` is absent. Returns False on conflict."""
        if self.get(collection, key) is not None:
            return False
        self.set(collection, key, data)
        return True

    def update(self, collection: str, key: str, **fields: Any) -> dict:
        doc = self.get(collection, key)
        if doc is None:
            raise KeyError(f"{collection}/{key} does not exist")
        doc.update(fields)
        self.set(collection, key, doc)
        return doc

    def increment_if_below(self, collection: str, key: str, field: str, limit_field: str) -> bool:
        """Increment ``field`` by one if it stays within ``limit_field``."""
        doc = self.get(collection, key)
        if doc is None:
            raise KeyError(f"{collection}/{key} does not exist")
        if doc[field] >= doc[limit_field]:
            return False
        doc[field] += 1
        self.set(collection, key, doc)
        return True

    def select(self, collection: str, predicate: Optional[Predicate] = None) -> list[dict]:
        merged = {key: doc for key, doc in self._store._scan(collection)}
        for (name, key), doc in self._writes.items():
            if name == collection:
                merged[key] = copy.deepcopy(doc)
        return [doc for doc in merged.values() if predicate is None or predicate(doc)]

    def savepoint(self) -> dict[tuple[str, str], dict]:
        # Buffered docs are replaced on write, never mutated, so a shallow copy is enough.
        return dict(self._writes)

    def rollback_to(self, savepoint: dict[tuple[str, str], dict]) -> None:
        self._writes = dict(savepoint)

    def pending_writes(self) -> Iterator[tuple[str, str, dict]]:
        for (collection, key), doc in self._writes.items():
            yield collection, key, doc


class InMemoryStorage(LedgerStore):
    def __init__(self):
        self.accounts: dict[str, dict] = {}
        self.transactions: dict[str, dict] = {}
        self.rewards: dict[str, dict] = {}
        self.redemptions: dict[str, dict] = {}
        self.claims: dict[str, dict] = {}
        self.admin_audit: dict[str, dict] = {}
        self._lock = threading.RLock()
        self._local = threading.local()

    def run_transaction(self, fn: Callable[[StoreTransaction], T]) -> T:
        active = getattr(self._local, "txn", None)
        if active is not None:
            # Nested calls join the enclosing transaction. Writes made by a
            # nested call that raises are dropped even if the caller recovers.
            savepoint = active.savepoint()
            try:
                return fn(active)
            except Exception:
                active.rollback_to(savepoint)
                raise
        with self._lock:
            txn = StoreTransaction(self)
            self._local.txn = txn
            try:
                result = fn(txn)
                self._commit(txn)
            finally:
                self._local.txn = None
            return result

    def get(self, collection: str, key: str) -> Optional[dict]:
        with self._lock:
            return self._read(collection, key)

    def select(self, collection: str, predicate: Optional[Predicate] = None) -> list[dict]:
        with self._lock:
            return [
                doc for _, doc in self._scan(collection)
                if predicate is None or predicate(doc)
            ]

    def _commit(self, txn: StoreTransaction) -> None:
        staged = list(txn.pending_writes())
        for collection, key, doc in staged:
            self._collection(collection)[key] = doc

    def _read(self, collection: str, key: str) -> Optional[dict]:
        doc = self._collection(collection).get(key)
        return copy.deepcopy(doc) if doc is not None else None

    def _scan(self, collection: str) -> Iterator[tuple[str, dict]]:
        for key, doc in list(self._collection(collection).items()):
            yield key, copy.deepcopy(doc)

    def _check_collection(self, collection: str) -> None:
        if collection not in COLLECTIONS:
            raise ValueError(f"Unknown collection {collection!r}")

    def _collection(self, collection: str) -> dict[str, dict]:
        self._check_collection(collection)
        return getattr(self, collection)
