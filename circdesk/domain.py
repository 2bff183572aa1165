from __future__ import annotations

import math
import uuid
from dataclasses import dataclass, field, replace
from datetime import datetime, timedelta, timezone
from enum import Enum
from typing import Iterable, Optional, Tuple

from .errors import InvalidPickupWindow, InvalidStatus


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def new_id(prefix: str) -> str:
    return f"{prefix}_{uuid.uuid4().hex[:8]}"


class Role(str, Enum):
    MEMBER = "member"
    ADMIN = "admin"


@dataclass(frozen=True)
class Principal:
    """Authenticated caller handed to every coordinator entry point."""

    id: str
    role: Role = Role.MEMBER

    @property
    def is_admin(self) -> bool:
        return self.role == Role.ADMIN

    def can_act_for(self, user_id: str) -> bool:
        return self.is_admin or self.id == user_id


class MaterialStatus(str, Enum):
    AVAILABLE = "available"
    RESERVED = "reserved"
    PENDING = "pending"
    BORROWED = "borrowed"
    OVERDUE = "overdue"
    CANCELLED = "cancelled"


class BorrowStatus(str, Enum):
    PENDING = "pending"
    BORROWED = "borrowed"
    RETURNED = "returned"
    OVERDUE = "overdue"
    CANCELLED = "cancelled"


class ReserveStatus(str, Enum):
    PENDING = "pending"
    APPROVED = "approved"
    ACTIVE = "active"
    BORROWED = "borrowed"
    CANCELLED = "cancelled"
    EXPIRED = "expired"
    REJECTED = "rejected"


class PaymentStatus(str, Enum):
    UNPAID = "unpaid"
    PENDING = "pending"
    PAID = "paid"


class Hold(Enum):
    """What kind of record is taking a copy off the shelf."""

    BORROW = "borrow"
    RESERVATION = "reservation"


# statuses in which a record keeps a copy out of the available pool
ACTIVE_BORROW_STATUSES = frozenset(
    {BorrowStatus.PENDING, BorrowStatus.BORROWED, BorrowStatus.OVERDUE}
)
ACTIVE_RESERVE_STATUSES = frozenset(
    {ReserveStatus.PENDING, ReserveStatus.APPROVED, ReserveStatus.ACTIVE}
)
TERMINAL_BORROW_STATUSES = frozenset({BorrowStatus.RETURNED, BorrowStatus.CANCELLED})
TERMINAL_RESERVE_STATUSES = frozenset(
    {
        ReserveStatus.BORROWED,
        ReserveStatus.CANCELLED,
        ReserveStatus.EXPIRED,
        ReserveStatus.REJECTED,
    }
)
# cancel is only offered before a copy is physically handed over
CANCELLABLE_STATUSES = frozenset({"pending", "approved", "active"})


def parse_status(enum_cls, value):
    """Coerce a raw status string into ``enum_cls`` or raise ``InvalidStatus``."""
    if isinstance(value, enum_cls):
        return value
    try:
        return enum_cls(str(value).strip().lower())
    except ValueError:
        allowed = ", ".join(s.value for s in enum_cls)
        raise InvalidStatus(f"Invalid status {value!r}; expected one of: {allowed}")


# =========================
# fines
# =========================

@dataclass(frozen=True)
class Fine:
    days_overdue: int
    amount_due: float


def compute_fine(now: datetime, return_date: datetime, daily_rate: float) -> Fine:
    """Whole days past ``return_date`` and the amount owed for them."""
    if now <= return_date:
        return Fine(0, 0.0)
    days = math.floor((now - return_date) / timedelta(days=1))
    return Fine(days, round(days * daily_rate, 2))


def validate_pickup_window(
    reservation_date: datetime, pickup_date: datetime, window_days: int
) -> None:
    latest = reservation_date + timedelta(days=window_days)
    if pickup_date > latest:
        raise InvalidPickupWindow(
            f"Pickup date must be within {window_days} days of reservation",
            details={"latest_pickup": latest.isoformat()},
        )
    if pickup_date < reservation_date:
        raise InvalidPickupWindow("Pickup date cannot be before the reservation date")


# =========================
# entities (immutable values)
# =========================

@dataclass(frozen=True)
class Material:
    material_id: str
    accession_number: str
    name: str
    total_copies: int = 1
    available_copies: int = 1
    status: MaterialStatus = MaterialStatus.AVAILABLE
    author: str = ""
    average_rating: float = 0.0
    rating_count: int = 0
    created_at: datetime = field(default_factory=utcnow)

    def with_status(self, status: MaterialStatus) -> "Material":
        return replace(self, status=status)

    def take_copy(self) -> "Material":
        return replace(self, available_copies=self.available_copies - 1)

    def release_copy(self) -> "Material":
        return replace(
            self, available_copies=min(self.available_copies + 1, self.total_copies)
        )

    def with_rating(self, average: float, count: int) -> "Material":
        return replace(self, average_rating=average, rating_count=count)


@dataclass(frozen=True)
class BorrowRecord:
    borrow_id: str
    material_id: str
    user_id: str
    borrow_date: datetime
    return_date: datetime
    status: BorrowStatus = BorrowStatus.PENDING
    actual_return_date: Optional[datetime] = None
    days_overdue: int = 0
    amount_due: float = 0.0
    payment_status: PaymentStatus = PaymentStatus.UNPAID
    book_title: str = ""
    is_rated: bool = False
    cancelled_at: Optional[datetime] = None
    reminded_at: Optional[datetime] = None
    reservation_id: Optional[str] = None
    idempotency_key: Optional[str] = None

    @property
    def is_active(self) -> bool:
        return self.status in ACTIVE_BORROW_STATUSES

    def confirm(self) -> "BorrowRecord":
        return replace(self, status=BorrowStatus.BORROWED)

    def mark_returned(self, when: datetime) -> "BorrowRecord":
        return replace(
            self,
            status=BorrowStatus.RETURNED,
            actual_return_date=when,
            days_overdue=0,
            amount_due=0.0,
            payment_status=PaymentStatus.PAID,
        )

    def cancel(self, when: datetime) -> "BorrowRecord":
        return replace(self, status=BorrowStatus.CANCELLED, cancelled_at=when)

    def mark_overdue(self, fine: Fine) -> "BorrowRecord":
        return replace(
            self,
            status=BorrowStatus.OVERDUE,
            days_overdue=fine.days_overdue,
            amount_due=fine.amount_due,
        )

    def reopen(self, status: BorrowStatus) -> "BorrowRecord":
        return replace(self, status=status, days_overdue=0, amount_due=0.0)

    def with_payment(self, payment_status: PaymentStatus) -> "BorrowRecord":
        return replace(self, payment_status=payment_status)

    def mark_rated(self) -> "BorrowRecord":
        return replace(self, is_rated=True)

    def mark_reminded(self, when: datetime) -> "BorrowRecord":
        return replace(self, reminded_at=when)


@dataclass(frozen=True)
class ReserveRecord:
    reservation_id: str
    material_id: str
    user_id: str
    reservation_date: datetime
    pickup_date: datetime
    status: ReserveStatus = ReserveStatus.PENDING
    book_title: str = ""
    borrow_id: Optional[str] = None
    cancelled_at: Optional[datetime] = None
    idempotency_key: Optional[str] = None

    @property
    def is_active(self) -> bool:
        return self.status in ACTIVE_RESERVE_STATUSES

    def with_status(self, status: ReserveStatus) -> "ReserveRecord":
        return replace(self, status=status)

    def cancel(self, when: datetime) -> "ReserveRecord":
        return replace(self, status=ReserveStatus.CANCELLED, cancelled_at=when)

    def convert(self, borrow_id: str) -> "ReserveRecord":
        return replace(self, status=ReserveStatus.BORROWED, borrow_id=borrow_id)


@dataclass(frozen=True)
class Rating:
    rating_id: str
    user_id: str
    material_id: str
    borrow_id: str
    rating: int
    review: str = ""
    created_at: datetime = field(default_factory=utcnow)


@dataclass(frozen=True)
class Notification:
    notification_id: str
    user_id: str
    type: str
    title: str
    message: str
    related_id: Optional[str] = None
    priority: str = "medium"
    created_at: datetime = field(default_factory=utcnow)


@dataclass(frozen=True)
class ActivityEntry:
    actor_id: str
    action: str
    details: str
    timestamp: datetime = field(default_factory=utcnow)


# =========================
# derived material status
# =========================

def derive_material_status(
    borrow_statuses: Iterable[BorrowStatus],
    reserve_statuses: Iterable[ReserveStatus],
) -> MaterialStatus:
    """Aggregate status of a material from the records that reference it.

    Priority: borrowed/overdue loan, then anything pending, then a held
    reservation. No active record means ``available``.

    This is the mapping the reconciler writes and the one that wins. The
    ledger is stickier between runs: it keeps ``overdue`` while a loan is
    late, and keeps ``borrowed``/``reserved`` once the last copy is taken
    even if a pending record remains. The next reconcile pass folds both
    back into this mapping.
    """
    borrows = set(borrow_statuses)
    reserves = set(reserve_statuses)
    if borrows & {BorrowStatus.BORROWED, BorrowStatus.OVERDUE}:
        return MaterialStatus.BORROWED
    if BorrowStatus.PENDING in borrows or ReserveStatus.PENDING in reserves:
        return MaterialStatus.PENDING
    if reserves & {ReserveStatus.APPROVED, ReserveStatus.ACTIVE}:
        return MaterialStatus.RESERVED
    return MaterialStatus.AVAILABLE


def exhausted_status(hold: Hold) -> MaterialStatus:
    return MaterialStatus.BORROWED if hold == Hold.BORROW else MaterialStatus.RESERVED


def split_active(
    borrows: Iterable[BorrowRecord], reserves: Iterable[ReserveRecord]
) -> Tuple[list, list]:
    """Active statuses of ``borrows`` and ``reserves`` as two lists."""
    return (
        [b.status for b in borrows if b.is_active],
        [r.status for r in reserves if r.is_active],
    )
