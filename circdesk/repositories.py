"""
In-memory document store with optimistic units of work.

Records are immutable values kept per collection together with a version
number. A ``UnitOfWork`` remembers the version of everything it reads and
stages its writes; ``commit`` swaps them in under the store lock only if
none of those versions moved in the meantime (compare-and-swap). Anything
left uncommitted when the ``with`` block ends is discarded.

The typed repositories (``MaterialRepo``, ``BorrowRepo``...) are thin views
bound to one unit of work, so callers never touch the raw collections.
"""

from __future__ import annotations

import logging
import threading
from datetime import datetime
from typing import Any, Callable, Dict, List, Optional, Tuple

from .domain import (
    BorrowRecord,
    BorrowStatus,
    Material,
    Rating,
    ReserveRecord,
    ReserveStatus,
)
from .errors import (
    DuplicateRating,
    LibraryError,
    NotFound,
    StorageConflict,
    ValidationError,
)

LOGGER = logging.getLogger("circdesk.store")

MATERIALS = "materials"
BORROWS = "borrows"
RESERVATIONS = "reservations"
RATINGS = "ratings"

Key = Tuple[str, str]

# tombstone for a staged delete
_DELETED = object()


def _idempotency_key(record) -> Optional[tuple]:
    if not record.idempotency_key:
        return None
    return (record.user_id, record.idempotency_key)


def _key_in_use(key: tuple) -> LibraryError:
    return StorageConflict(f"Idempotency key {key[1]!r} already in use")


class _UniqueIndex:
    def __init__(
        self,
        name: str,
        key_fn: Callable[[Any], Optional[tuple]],
        error: Callable[[tuple], LibraryError],
    ) -> None:
        self.name = name
        self.key_fn = key_fn
        self.error = error


class DocumentStore:
    def __init__(self) -> None:
        self._lock = threading.RLock()
        self._docs: Dict[str, Dict[str, Tuple[int, Any]]] = {
            MATERIALS: {},
            BORROWS: {},
            RESERVATIONS: {},
            RATINGS: {},
        }
        self._indexes: Dict[str, List[_UniqueIndex]] = {
            MATERIALS: [
                _UniqueIndex(
                    "accession_number",
                    lambda m: (m.accession_number,),
                    lambda k: ValidationError(
                        f"Accession number {k[0]!r} already exists"
                    ),
                )
            ],
            BORROWS: [
                _UniqueIndex("idempotency_key", _idempotency_key, _key_in_use)
            ],
            RESERVATIONS: [
                _UniqueIndex("idempotency_key", _idempotency_key, _key_in_use)
            ],
            RATINGS: [
                _UniqueIndex(
                    "user_borrow",
                    lambda r: (r.user_id, r.borrow_id),
                    lambda k: DuplicateRating(
                        "You have already rated this transaction"
                    ),
                )
            ],
        }

    def unit_of_work(self) -> "UnitOfWork":
        return UnitOfWork(self)

    # ---- raw access, used by UnitOfWork only
    def _get(self, collection: str, doc_id: str) -> Optional[Tuple[int, Any]]:
        with self._lock:
            return self._docs[collection].get(doc_id)

    def _scan(self, collection: str) -> List[Tuple[str, int, Any]]:
        with self._lock:
            return [(k, v, doc) for k, (v, doc) in self._docs[collection].items()]

    def _commit(self, reads: Dict[Key, int], writes: Dict[Key, Any]) -> None:
        with self._lock:
            for (collection, doc_id), version in reads.items():
                current = self._docs[collection].get(doc_id)
                current_version = current[0] if current else 0
                if current_version != version:
                    raise StorageConflict(
                        f"{collection}/{doc_id} changed during the transaction",
                        details={"expected": version, "found": current_version},
                    )
            self._check_unique(writes)
            for (collection, doc_id), doc in writes.items():
                if doc is _DELETED:
                    self._docs[collection].pop(doc_id, None)
                    continue
                current = self._docs[collection].get(doc_id)
                version = current[0] + 1 if current else 1
                self._docs[collection][doc_id] = (version, doc)

    def _check_unique(self, writes: Dict[Key, Any]) -> None:
        for (collection, doc_id), doc in writes.items():
            if doc is _DELETED:
                continue
            for index in self._indexes.get(collection, []):
                key = index.key_fn(doc)
                if key is None:
                    continue
                for other_id, (_, other) in self._docs[collection].items():
                    if other_id != doc_id and index.key_fn(other) == key:
                        raise index.error(key)
                for (other_coll, other_id), other in writes.items():
                    if (
                        other_coll == collection
                        and other_id != doc_id
                        and other is not _DELETED
                        and index.key_fn(other) == key
                    ):
                        raise index.error(key)


class UnitOfWork:
    """One atomic read-modify-write against the store.

    Use as a context manager and call ``commit()`` before leaving the block;
    an exception (or a missing commit) rolls everything back.
    """

    def __init__(self, store: DocumentStore) -> None:
        self._store = store
        self._reads: Dict[Key, int] = {}
        self._writes: Dict[Key, Any] = {}
        self.committed = False

        self.materials = MaterialRepo(self)
        self.borrows = BorrowRepo(self)
        self.reservations = ReservationRepo(self)
        self.ratings = RatingRepo(self)

    def __enter__(self) -> "UnitOfWork":
        return self

    def __exit__(self, exc_type, exc, tb) -> None:
        if not self.committed:
            if exc_type is not None:
                LOGGER.debug("rolling back unit of work after %s", exc_type.__name__)
            self.rollback()

    # ---- document access
    def get(self, collection: str, doc_id: str) -> Optional[Any]:
        key = (collection, doc_id)
        if key in self._writes:
            staged = self._writes[key]
            return None if staged is _DELETED else staged
        found = self._store._get(collection, doc_id)
        if found is None:
            self._reads.setdefault(key, 0)
            return None
        version, doc = found
        self._reads.setdefault(key, version)
        return doc

    def find(self, collection: str, predicate: Callable[[Any], bool]) -> List[Any]:
        results: Dict[str, Any] = {}
        for doc_id, version, doc in self._store._scan(collection):
            key = (collection, doc_id)
            current = self._writes.get(key, doc)
            if current is not _DELETED and predicate(current):
                self._reads.setdefault(key, version)
                results[doc_id] = current
        for (coll, doc_id), doc in self._writes.items():
            if (
                coll == collection
                and doc_id not in results
                and doc is not _DELETED
                and predicate(doc)
            ):
                results[doc_id] = doc
        return list(results.values())

    def put(self, collection: str, doc_id: str, doc: Any) -> None:
        key = (collection, doc_id)
        if key not in self._reads and key not in self._writes:
            # pin the version we are overwriting
            self.get(collection, doc_id)
        self._writes[key] = doc

    def remove(self, collection: str, doc_id: str) -> None:
        self.put(collection, doc_id, _DELETED)

    # ---- lifecycle
    def commit(self) -> None:
        if self.committed:
            return
        self._store._commit(self._reads, self._writes)
        self.committed = True

    def rollback(self) -> None:
        self._reads.clear()
        self._writes.clear()


# =========================
# typed repositories
# =========================

class MaterialRepo:
    def __init__(self, uow: UnitOfWork) -> None:
        self._uow = uow

    def add(self, material: Material) -> None:
        self._uow.put(MATERIALS, material.material_id, material)

    def get(self, material_id: str) -> Optional[Material]:
        return self._uow.get(MATERIALS, material_id)

    def require(self, material_id: str) -> Material:
        material = self.get(material_id)
        if material is None:
            raise NotFound("Material not found", details={"material_id": material_id})
        return material

    def replace(self, material: Material) -> None:
        self._uow.put(MATERIALS, material.material_id, material)

    def remove(self, material_id: str) -> None:
        self._uow.remove(MATERIALS, material_id)

    def list_all(self) -> List[Material]:
        return self._uow.find(MATERIALS, lambda m: True)

    def search(self, text: str) -> List[Material]:
        t = text.lower().strip()

        def matches(m: Material) -> bool:
            return (
                t in m.name.lower()
                or t in m.author.lower()
                or t in m.accession_number.lower()
            )

        return self._uow.find(MATERIALS, matches)


class BorrowRepo:
    def __init__(self, uow: UnitOfWork) -> None:
        self._uow = uow

    def add(self, record: BorrowRecord) -> None:
        self._uow.put(BORROWS, record.borrow_id, record)

    def get(self, borrow_id: str) -> Optional[BorrowRecord]:
        return self._uow.get(BORROWS, borrow_id)

    def require(self, borrow_id: str) -> BorrowRecord:
        record = self.get(borrow_id)
        if record is None:
            raise NotFound("Borrow request not found", details={"borrow_id": borrow_id})
        return record

    def replace(self, record: BorrowRecord) -> None:
        self._uow.put(BORROWS, record.borrow_id, record)

    def list_all(self) -> List[BorrowRecord]:
        items = self._uow.find(BORROWS, lambda b: True)
        return sorted(items, key=lambda b: b.borrow_date)

    def list_by_user(self, user_id: str) -> List[BorrowRecord]:
        items = self._uow.find(BORROWS, lambda b: b.user_id == user_id)
        return sorted(items, key=lambda b: b.borrow_date, reverse=True)

    def list_for_material(self, material_id: str) -> List[BorrowRecord]:
        return self._uow.find(BORROWS, lambda b: b.material_id == material_id)

    def list_active_for_material(self, material_id: str) -> List[BorrowRecord]:
        return self._uow.find(
            BORROWS, lambda b: b.material_id == material_id and b.is_active
        )

    def list_past_due(self, now: datetime) -> List[BorrowRecord]:
        return self._uow.find(
            BORROWS,
            lambda b: b.status in (BorrowStatus.PENDING, BorrowStatus.BORROWED)
            and b.return_date < now,
        )

    def list_overdue(self) -> List[BorrowRecord]:
        return self._uow.find(BORROWS, lambda b: b.status == BorrowStatus.OVERDUE)

    def list_unclaimed(self, cutoff: datetime) -> List[BorrowRecord]:
        return self._uow.find(
            BORROWS,
            lambda b: b.status == BorrowStatus.PENDING and b.borrow_date < cutoff,
        )

    def list_due_between(self, start: datetime, end: datetime) -> List[BorrowRecord]:
        return self._uow.find(
            BORROWS,
            lambda b: b.status == BorrowStatus.BORROWED
            and b.reminded_at is None
            and start <= b.return_date < end,
        )

    def find_by_idempotency_key(
        self, user_id: str, key: str
    ) -> Optional[BorrowRecord]:
        found = self._uow.find(
            BORROWS, lambda b: b.user_id == user_id and b.idempotency_key == key
        )
        return found[0] if found else None


class ReservationRepo:
    def __init__(self, uow: UnitOfWork) -> None:
        self._uow = uow

    def add(self, record: ReserveRecord) -> None:
        self._uow.put(RESERVATIONS, record.reservation_id, record)

    def get(self, reservation_id: str) -> Optional[ReserveRecord]:
        return self._uow.get(RESERVATIONS, reservation_id)

    def require(self, reservation_id: str) -> ReserveRecord:
        record = self.get(reservation_id)
        if record is None:
            raise NotFound(
                "Reservation not found", details={"reservation_id": reservation_id}
            )
        return record

    def replace(self, record: ReserveRecord) -> None:
        self._uow.put(RESERVATIONS, record.reservation_id, record)

    def list_by_user(self, user_id: str) -> List[ReserveRecord]:
        items = self._uow.find(RESERVATIONS, lambda r: r.user_id == user_id)
        return sorted(items, key=lambda r: r.reservation_date, reverse=True)

    def list_for_material(self, material_id: str) -> List[ReserveRecord]:
        return self._uow.find(RESERVATIONS, lambda r: r.material_id == material_id)

    def list_active_for_material(self, material_id: str) -> List[ReserveRecord]:
        items = self._uow.find(
            RESERVATIONS, lambda r: r.material_id == material_id and r.is_active
        )
        # FIFO by reservation_date
        return sorted(items, key=lambda r: r.reservation_date)

    def list_expired(self, now: datetime) -> List[ReserveRecord]:
        return self._uow.find(
            RESERVATIONS,
            lambda r: r.status in (ReserveStatus.PENDING, ReserveStatus.APPROVED)
            and r.pickup_date < now,
        )

    def find_by_idempotency_key(
        self, user_id: str, key: str
    ) -> Optional[ReserveRecord]:
        found = self._uow.find(
            RESERVATIONS, lambda r: r.user_id == user_id and r.idempotency_key == key
        )
        return found[0] if found else None


class RatingRepo:
    def __init__(self, uow: UnitOfWork) -> None:
        self._uow = uow

    def add(self, rating: Rating) -> None:
        self._uow.put(RATINGS, rating.rating_id, rating)

    def list_for_material(self, material_id: str) -> List[Rating]:
        return self._uow.find(RATINGS, lambda r: r.material_id == material_id)

    def find_for_transaction(self, user_id: str, borrow_id: str) -> Optional[Rating]:
        found = self._uow.find(
            RATINGS, lambda r: r.user_id == user_id and r.borrow_id == borrow_id
        )
        return found[0] if found else None
