"""
Document store backing every service.

Collections hold plain dict documents keyed by their ``id``. Filters are
equality matches; a list/tuple/set value means "field is one of". Listings
come back newest first. ``update_one`` applies its changes only when the
filter still matches at write time, which is what the state machines use as a
compare-and-swap on ``(id, status, version)``.
"""

import copy
import logging
import threading
from contextlib import contextmanager
from datetime import datetime, timezone
from typing import Any, Iterator, Optional

logger = logging.getLogger(__name__)

USERS = "users"
POLICIES = "policies"
POLICY_ASSIGNMENTS = "employee_policies"
POLICY_INITIATORS = "policy_initiators"
EMPLOYEE_INITIATORS = "employee_initiators"
CREDIT_REQUESTS = "credit_requests"
WALLETS = "wallets"
WALLET_TRANSACTIONS = "wallet_transactions"
REDEMPTION_REQUESTS = "redemption_requests"
NOTIFICATIONS = "notifications"
AUDIT_LOGS = "audit_logs"
ACCESS_GRANTS = "access_grants"

COLLECTIONS = (
    USERS,
    POLICIES,
    POLICY_ASSIGNMENTS,
    POLICY_INITIATORS,
    EMPLOYEE_INITIATORS,
    CREDIT_REQUESTS,
    WALLETS,
    WALLET_TRANSACTIONS,
    REDEMPTION_REQUESTS,
    NOTIFICATIONS,
    AUDIT_LOGS,
    ACCESS_GRANTS,
)

_MISSING = object()
_EPOCH = datetime.min.replace(tzinfo=timezone.utc)


class StoreError(Exception):
    pass


class StoreClosedError(StoreError):
    pass


def _matches(document: dict, filters: Optional[dict]) -> bool:
    if not filters:
        return True
    for field, expected in filters.items():
        actual = document.get(field, _MISSING)
        if isinstance(expected, (list, tuple, set, frozenset)):
            # compare with == so str enums match their stored string values
            if not any(actual == candidate for candidate in expected):
                return False
        elif actual is _MISSING:
            if expected is not None:
                return False
        elif actual != expected:
            return False
    return True


def _newest_first(documents: list[dict]) -> list[dict]:
    # ties on created_at fall back to insertion order, later first
    indexed = list(enumerate(documents))
    indexed.sort(key=lambda pair: (pair[1].get("created_at") or _EPOCH, pair[0]), reverse=True)
    return [doc for _, doc in indexed]


class DocumentStore:
    def __init__(self):
        self._collections: dict[str, dict[Any, dict]] = {name: {} for name in COLLECTIONS}
        self._lock = threading.RLock()
        # key -> [lock, holders]; entries are dropped once nobody holds or waits on them
        self._key_locks: dict[str, list] = {}
        self._open = False

    # ---------- lifecycle ----------

    def open(self) -> "DocumentStore":
        with self._lock:
            self._open = True
        logger.info("Document store opened")
        return self

    def close(self) -> None:
        with self._lock:
            self._open = False
        logger.info("Document store closed")

    @property
    def is_open(self) -> bool:
        return self._open

    def __enter__(self) -> "DocumentStore":
        return self.open()

    def __exit__(self, exc_type, exc, tb) -> None:
        self.close()

    # ---------- reads ----------

    def get(self, collection: str, document_id: Any) -> Optional[dict]:
        with self._lock:
            document = self._collection(collection).get(document_id)
            return copy.deepcopy(document) if document is not None else None

    def find_one(self, collection: str, filters: Optional[dict] = None) -> Optional[dict]:
        with self._lock:
            for document in self._collection(collection).values():
                if _matches(document, filters):
                    return copy.deepcopy(document)
        return None

    def find(self, collection: str, filters: Optional[dict] = None, limit: Optional[int] = None) -> list[dict]:
        with self._lock:
            matched = [
                copy.deepcopy(doc) for doc in self._collection(collection).values()
                if _matches(doc, filters)
            ]
        ordered = _newest_first(matched)
        return ordered[:limit] if limit is not None else ordered

    def count(self, collection: str, filters: Optional[dict] = None) -> int:
        with self._lock:
            return sum(1 for doc in self._collection(collection).values() if _matches(doc, filters))

    # ---------- writes ----------

    def insert(self, collection: str, document: dict) -> dict:
        if "id" not in document:
            raise StoreError(f"Document for {collection} has no id")
        with self._lock:
            documents = self._collection(collection)
            if document["id"] in documents:
                raise StoreError(f"Duplicate id {document['id']} in {collection}")
            documents[document["id"]] = copy.deepcopy(document)
        return copy.deepcopy(document)

    def insert_many(self, collection: str, documents: list[dict]) -> list[dict]:
        with self._lock:
            return [self.insert(collection, document) for document in documents]

    def update_one(self, collection: str, filters: dict, changes: dict) -> Optional[dict]:
        """Apply ``changes`` to the first document matching ``filters``; None when nothing matched."""
        with self._lock:
            for document in self._collection(collection).values():
                if _matches(document, filters):
                    document.update(copy.deepcopy(changes))
                    return copy.deepcopy(document)
        return None

    def update_many(self, collection: str, filters: dict, changes: dict) -> int:
        updated = 0
        with self._lock:
            for document in self._collection(collection).values():
                if _matches(document, filters):
                    document.update(copy.deepcopy(changes))
                    updated += 1
        return updated

    def upsert(self, collection: str, filters: dict, changes: dict, defaults: dict) -> dict:
        with self._lock:
            updated = self.update_one(collection, filters, changes)
            if updated is not None:
                return updated
            document = {**filters, **defaults, **changes}
            return self.insert(collection, document)

    def delete_one(self, collection: str, filters: dict) -> bool:
        with self._lock:
            documents = self._collection(collection)
            for key, document in documents.items():
                if _matches(document, filters):
                    del documents[key]
                    return True
        return False

    def delete_many(self, collection: str, filters: dict) -> int:
        with self._lock:
            documents = self._collection(collection)
            doomed = [key for key, document in documents.items() if _matches(document, filters)]
            for key in doomed:
                del documents[key]
        return len(doomed)

    # ---------- serialization ----------

    @contextmanager
    def transaction(self) -> Iterator["DocumentStore"]:
        """Hold the store lock across several writes; readers see all of them or none."""
        self._ensure_open()
        with self._lock:
            yield self

    @contextmanager
    def locked(self, key: str) -> Iterator[None]:
        """Serialize a multi-step read-modify-write sequence on ``key``."""
        self._ensure_open()
        with self._lock:
            entry = self._key_locks.setdefault(key, [threading.Lock(), 0])
            entry[1] += 1
        try:
            with entry[0]:
                yield
        finally:
            with self._lock:
                entry[1] -= 1
                if not entry[1]:
                    del self._key_locks[key]

    @property
    def held_key_locks(self) -> int:
        with self._lock:
            return len(self._key_locks)

    def _collection(self, name: str) -> dict[Any, dict]:
        self._ensure_open()
        try:
            return self._collections[name]
        except KeyError:
            raise StoreError(f"Unknown collection {name}") from None

    def _ensure_open(self) -> None:
        if not self._open:
            raise StoreClosedError("Document store is not open")
