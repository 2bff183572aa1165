"""
Lifecycle coordinator: every user-visible borrow/reserve action.

Each action runs as one unit of work spanning the ledger and the transaction
records and either commits whole or not at all. A commit that loses a race
(``StorageConflict``) is re-run from scratch against fresh state, so
preconditions such as "a copy is still available" are checked again.
Notifications and activity entries are queued while the unit of work runs and
fired only after the commit; their failures are logged and never reach the
caller.
"""

from __future__ import annotations

import logging
from dataclasses import replace
from datetime import datetime, timedelta
from typing import Callable, List, Optional, Tuple, TypeVar

from .domain import (
    CANCELLABLE_STATUSES,
    TERMINAL_BORROW_STATUSES,
    TERMINAL_RESERVE_STATUSES,
    BorrowRecord,
    BorrowStatus,
    Hold,
    Material,
    MaterialStatus,
    PaymentStatus,
    Principal,
    ReserveRecord,
    ReserveStatus,
    compute_fine,
    new_id,
    parse_status,
    utcnow,
    validate_pickup_window,
)
from .errors import (
    Forbidden,
    InvalidStateTransition,
    LibraryError,
    NotFound,
    StorageConflict,
    Unauthorized,
    Unexpected,
    ValidationError,
)
from .ledger import InventoryLedger
from .notifications import ActivityLog, NotificationService
from .repositories import DocumentStore, UnitOfWork
from .settings import Settings

LOGGER = logging.getLogger("circdesk.coordinator")

T = TypeVar("T")
SideEffect = Callable[[], None]


def require_admin(principal: Principal) -> None:
    if not principal.is_admin:
        raise Forbidden("Admin access required")


class TransactionalService:
    """Retrying transaction boundary shared by the coordinator and catalog services."""

    def __init__(
        self,
        store: DocumentStore,
        activity: ActivityLog,
        settings: Optional[Settings] = None,
    ) -> None:
        self.store = store
        self.activity = activity
        self.settings = settings or Settings()

    def _transaction(
        self, action: str, work: Callable[[UnitOfWork, List[SideEffect]], T]
    ) -> T:
        attempts = max(1, self.settings.commit_retries)
        for attempt in range(1, attempts + 1):
            effects: List[SideEffect] = []
            try:
                with self.store.unit_of_work() as uow:
                    result = work(uow, effects)
                    uow.commit()
            except StorageConflict as exc:
                if attempt == attempts:
                    LOGGER.error(
                        "%s: giving up after %d conflicting commits", action, attempts
                    )
                    raise
                LOGGER.warning(
                    "%s: commit conflict (%s), retry %d/%d",
                    action,
                    exc,
                    attempt,
                    attempts - 1,
                )
                continue
            except LibraryError:
                raise
            except Exception as exc:
                LOGGER.exception("%s failed unexpectedly", action)
                raise Unexpected(f"Failed to {action.replace('_', ' ')}") from exc
            LOGGER.info("%s committed (attempt %d)", action, attempt)
            self._fire(action, effects)
            return result
        raise Unexpected(f"Failed to {action.replace('_', ' ')}")  # unreachable

    def _fire(self, action: str, effects: List[SideEffect]) -> None:
        for effect in effects:
            try:
                effect()
            except Exception:
                LOGGER.exception("%s: side effect failed after commit", action)

    def _log(
        self, effects: List[SideEffect], actor_id: str, action: str, details: str
    ) -> None:
        effects.append(lambda: self.activity.record(actor_id, action, details))


class LifecycleCoordinator(TransactionalService):
    def __init__(
        self,
        store: DocumentStore,
        ledger: InventoryLedger,
        notifications: NotificationService,
        activity: ActivityLog,
        settings: Optional[Settings] = None,
    ) -> None:
        super().__init__(store, activity, settings)
        self.ledger = ledger
        self.notifications = notifications

    # =========================
    # borrow
    # =========================

    def create_borrow(
        self,
        principal: Principal,
        material_id: str,
        due_date: datetime,
        *,
        user_id: Optional[str] = None,
        book_title: Optional[str] = None,
        borrow_date: Optional[datetime] = None,
        idempotency_key: Optional[str] = None,
        now: Optional[datetime] = None,
    ) -> BorrowRecord:
        now = now or utcnow()
        borrow_date = borrow_date or now
        user_id = user_id or principal.id
        if not principal.can_act_for(user_id):
            raise Forbidden("Cannot submit a borrow request for another user")
        if due_date <= borrow_date:
            raise ValidationError("Return date must be after the borrow date")

        def work(uow: UnitOfWork, effects: List[SideEffect]) -> BorrowRecord:
            if idempotency_key:
                existing = uow.borrows.find_by_idempotency_key(user_id, idempotency_key)
                if existing is not None:
                    return existing
            material = uow.materials.require(material_id)
            record = BorrowRecord(
                borrow_id=new_id("brw"),
                material_id=material_id,
                user_id=user_id,
                borrow_date=borrow_date,
                return_date=due_date,
                status=BorrowStatus.PENDING,
                book_title=book_title or material.name,
                idempotency_key=idempotency_key,
            )
            uow.borrows.add(record)
            self.ledger.decrement_availability(uow, material_id, Hold.BORROW)
            self._log(
                effects,
                principal.id,
                "borrow_add",
                f"Requested to borrow {record.book_title}",
            )
            return record

        return self._transaction("create_borrow", work)

    def admin_direct_borrow(
        self,
        principal: Principal,
        material_id: str,
        user_id: str,
        due_date: Optional[datetime] = None,
        *,
        now: Optional[datetime] = None,
    ) -> BorrowRecord:
        """Librarian-initiated loan: skips the request step entirely."""
        require_admin(principal)
        now = now or utcnow()
        due_date = due_date or now + timedelta(days=self.settings.loan_days)
        if due_date <= now:
            raise ValidationError("Return date must be in the future")

        def work(uow: UnitOfWork, effects: List[SideEffect]) -> BorrowRecord:
            material = uow.materials.require(material_id)
            record = BorrowRecord(
                borrow_id=new_id("brw"),
                material_id=material_id,
                user_id=user_id,
                borrow_date=now,
                return_date=due_date,
                status=BorrowStatus.BORROWED,
                book_title=material.name,
            )
            uow.borrows.add(record)
            self.ledger.decrement_availability(uow, material_id, Hold.BORROW)
            self._log(
                effects,
                principal.id,
                "admin_borrow_create",
                f"Lent {material.name} to {user_id}",
            )
            effects.append(
                lambda: self.notifications.borrow_approved(
                    user_id, record.book_title, record.borrow_id
                )
            )
            return record

        return self._transaction("admin_direct_borrow", work)

    def return_borrow(
        self, principal: Principal, borrow_id: str, *, now: Optional[datetime] = None
    ) -> BorrowRecord:
        now = now or utcnow()

        def work(uow: UnitOfWork, effects: List[SideEffect]) -> BorrowRecord:
            record = uow.borrows.require(borrow_id)
            if not principal.can_act_for(record.user_id):
                raise Unauthorized("Unauthorized to return this book")
            if not record.is_active:
                raise InvalidStateTransition(
                    f"Cannot return a borrow that is {record.status.value}"
                )
            updated = self._release_borrow(uow, record, BorrowStatus.RETURNED, now)
            self._log(effects, principal.id, "return", f"Returned {record.book_title}")
            effects.append(
                lambda: self.notifications.book_returned(
                    record.user_id, record.book_title, borrow_id
                )
            )
            return updated

        return self._transaction("return_borrow", work)

    def cancel_borrow(
        self, principal: Principal, borrow_id: str, *, now: Optional[datetime] = None
    ) -> BorrowRecord:
        now = now or utcnow()

        def work(uow: UnitOfWork, effects: List[SideEffect]) -> BorrowRecord:
            record = uow.borrows.require(borrow_id)
            if not principal.can_act_for(record.user_id):
                raise Unauthorized("Unauthorized to cancel this borrow request")
            if record.status.value not in CANCELLABLE_STATUSES:
                raise InvalidStateTransition(
                    f"Cannot cancel a borrow request that is {record.status.value}"
                )
            updated = self._release_borrow(uow, record, BorrowStatus.CANCELLED, now)
            self._log(
                effects,
                principal.id,
                "status_change",
                f"Cancelled borrow of {record.book_title}",
            )
            return updated

        return self._transaction("cancel_borrow", work)

    def update_payment_status(
        self, principal: Principal, borrow_id: str, payment_status: str
    ) -> BorrowRecord:
        require_admin(principal)
        status = parse_status(PaymentStatus, payment_status)

        def work(uow: UnitOfWork, effects: List[SideEffect]) -> BorrowRecord:
            updated = uow.borrows.require(borrow_id).with_payment(status)
            uow.borrows.replace(updated)
            self._log(
                effects,
                principal.id,
                "payment",
                f"Payment for {borrow_id} set to {status.value}",
            )
            return updated

        return self._transaction("update_payment_status", work)

    def _release_borrow(
        self, uow: UnitOfWork, record: BorrowRecord, status: BorrowStatus, now: datetime
    ) -> BorrowRecord:
        if status == BorrowStatus.RETURNED:
            updated = record.mark_returned(now)
        else:
            updated = record.cancel(now)
        uow.borrows.replace(updated)
        self.ledger.increment_availability(uow, record.material_id)
        return updated

    # =========================
    # reservations
    # =========================

    def create_reservation(
        self,
        principal: Principal,
        material_id: str,
        pickup_date: datetime,
        *,
        reservation_date: Optional[datetime] = None,
        user_id: Optional[str] = None,
        book_title: Optional[str] = None,
        idempotency_key: Optional[str] = None,
        now: Optional[datetime] = None,
    ) -> ReserveRecord:
        now = now or utcnow()
        reservation_date = reservation_date or now
        user_id = user_id or principal.id
        if not principal.can_act_for(user_id):
            raise Forbidden("Cannot reserve on behalf of another user")
        validate_pickup_window(
            reservation_date, pickup_date, self.settings.pickup_window_days
        )

        def work(uow: UnitOfWork, effects: List[SideEffect]) -> ReserveRecord:
            if idempotency_key:
                existing = uow.reservations.find_by_idempotency_key(
                    user_id, idempotency_key
                )
                if existing is not None:
                    return existing
            material = uow.materials.require(material_id)
            record = ReserveRecord(
                reservation_id=new_id("rsv"),
                material_id=material_id,
                user_id=user_id,
                reservation_date=reservation_date,
                pickup_date=pickup_date,
                book_title=book_title or material.name,
                idempotency_key=idempotency_key,
            )
            uow.reservations.add(record)
            self.ledger.decrement_availability(uow, material_id, Hold.RESERVATION)
            self._log(
                effects, principal.id, "reserve_add", f"Reserved {record.book_title}"
            )
            return record

        return self._transaction("create_reservation", work)

    def cancel_reservation(
        self,
        principal: Principal,
        reservation_id: str,
        *,
        now: Optional[datetime] = None,
    ) -> ReserveRecord:
        now = now or utcnow()

        def work(uow: UnitOfWork, effects: List[SideEffect]) -> ReserveRecord:
            record = uow.reservations.require(reservation_id)
            if not principal.can_act_for(record.user_id):
                raise Unauthorized("Unauthorized to cancel this reservation")
            if record.status.value not in CANCELLABLE_STATUSES:
                raise InvalidStateTransition(
                    f"Cannot cancel a reservation that is {record.status.value}"
                )
            updated = record.cancel(now)
            uow.reservations.replace(updated)
            self.ledger.increment_availability(uow, record.material_id)
            self._log(
                effects,
                principal.id,
                "status_change",
                f"Cancelled reservation of {record.book_title}",
            )
            if principal.id != record.user_id:
                effects.append(
                    lambda: self.notifications.reservation_cancelled(
                        record.user_id, record.book_title, reservation_id
                    )
                )
            return updated

        return self._transaction("cancel_reservation", work)

    # =========================
    # admin status changes
    # =========================

    def admin_set_status(
        self,
        principal: Principal,
        transaction_id: str,
        new_status: str,
        *,
        now: Optional[datetime] = None,
    ):
        """Set the status of the borrow or reservation ``transaction_id`` names."""
        require_admin(principal)
        now = now or utcnow()

        def work(uow: UnitOfWork, effects: List[SideEffect]):
            borrow = uow.borrows.get(transaction_id)
            if borrow is not None:
                status = parse_status(BorrowStatus, new_status)
                return self._apply_borrow_status(
                    uow, effects, principal, borrow, status, now
                )
            reservation = uow.reservations.get(transaction_id)
            if reservation is not None:
                status = parse_status(ReserveStatus, new_status)
                return self._apply_reservation_status(
                    uow, effects, principal, reservation, status, now
                )
            raise NotFound(
                "Transaction not found", details={"transaction_id": transaction_id}
            )

        return self._transaction("admin_set_status", work)

    def admin_set_borrow_status(
        self,
        principal: Principal,
        borrow_id: str,
        new_status: str,
        *,
        now: Optional[datetime] = None,
    ) -> BorrowRecord:
        require_admin(principal)
        status = parse_status(BorrowStatus, new_status)
        now = now or utcnow()

        def work(uow: UnitOfWork, effects: List[SideEffect]) -> BorrowRecord:
            record = uow.borrows.require(borrow_id)
            return self._apply_borrow_status(
                uow, effects, principal, record, status, now
            )

        return self._transaction("admin_set_borrow_status", work)

    def admin_set_reservation_status(
        self,
        principal: Principal,
        reservation_id: str,
        new_status: str,
        *,
        now: Optional[datetime] = None,
    ) -> ReserveRecord:
        require_admin(principal)
        status = parse_status(ReserveStatus, new_status)
        now = now or utcnow()

        def work(uow: UnitOfWork, effects: List[SideEffect]) -> ReserveRecord:
            record = uow.reservations.require(reservation_id)
            return self._apply_reservation_status(
                uow, effects, principal, record, status, now
            )

        return self._transaction("admin_set_reservation_status", work)

    def admin_set_material_status(
        self, principal: Principal, material_id: str, new_status: str
    ) -> Material:
        require_admin(principal)
        status = parse_status(MaterialStatus, new_status)

        def work(uow: UnitOfWork, effects: List[SideEffect]) -> Material:
            updated = self.ledger.set_status(uow, material_id, status)
            self._log(
                effects,
                principal.id,
                "learnmat_update",
                f"Material {material_id} set to {status.value}",
            )
            return updated

        return self._transaction("admin_set_material_status", work)

    def _apply_borrow_status(
        self,
        uow: UnitOfWork,
        effects: List[SideEffect],
        principal: Principal,
        record: BorrowRecord,
        status: BorrowStatus,
        now: datetime,
    ) -> BorrowRecord:
        if status == record.status:
            return record
        if record.status in TERMINAL_BORROW_STATUSES:
            raise InvalidStateTransition(
                f"Borrow request is already {record.status.value}"
            )

        if status in (BorrowStatus.RETURNED, BorrowStatus.CANCELLED):
            updated = self._release_borrow(uow, record, status, now)
            if status == BorrowStatus.RETURNED:
                effects.append(
                    lambda: self.notifications.book_returned(
                        record.user_id, record.book_title, record.borrow_id
                    )
                )
        elif status == BorrowStatus.OVERDUE:
            fine = compute_fine(now, record.return_date, self.settings.daily_fine_rate)
            updated = record.mark_overdue(fine)
            uow.borrows.replace(updated)
            self.ledger.mark_overdue(uow, record.material_id)
        else:
            if status == BorrowStatus.BORROWED:
                updated = record.confirm()
            else:
                updated = record.reopen(status)
            uow.borrows.replace(updated)
            self.ledger.refresh_status(uow, record.material_id)
            confirmed = record.status == BorrowStatus.PENDING
            if status == BorrowStatus.BORROWED and confirmed:
                effects.append(
                    lambda: self.notifications.borrow_approved(
                        record.user_id, record.book_title, record.borrow_id
                    )
                )

        self._log(
            effects,
            principal.id,
            "status_change",
            f"Borrow {record.borrow_id}: {record.status.value} -> {status.value}",
        )
        return updated

    def _apply_reservation_status(
        self,
        uow: UnitOfWork,
        effects: List[SideEffect],
        principal: Principal,
        record: ReserveRecord,
        status: ReserveStatus,
        now: datetime,
    ) -> ReserveRecord:
        if status == record.status:
            return record
        if record.status in TERMINAL_RESERVE_STATUSES:
            raise InvalidStateTransition(
                f"Reservation is already {record.status.value}"
            )

        if status in (
            ReserveStatus.CANCELLED,
            ReserveStatus.REJECTED,
            ReserveStatus.EXPIRED,
        ):
            if status == ReserveStatus.CANCELLED:
                updated = record.cancel(now)
            else:
                updated = record.with_status(status)
            uow.reservations.replace(updated)
            self.ledger.increment_availability(uow, record.material_id)
            if status != ReserveStatus.EXPIRED:
                effects.append(
                    lambda: self.notifications.reservation_cancelled(
                        record.user_id, record.book_title, record.reservation_id
                    )
                )
        elif status == ReserveStatus.BORROWED:
            # conversion: the copy the reservation holds moves to the new loan
            borrow = BorrowRecord(
                borrow_id=new_id("brw"),
                material_id=record.material_id,
                user_id=record.user_id,
                borrow_date=now,
                return_date=now + timedelta(days=self.settings.loan_days),
                status=BorrowStatus.BORROWED,
                book_title=record.book_title,
                reservation_id=record.reservation_id,
            )
            uow.borrows.add(borrow)
            updated = record.convert(borrow.borrow_id)
            uow.reservations.replace(updated)
            self.ledger.refresh_status(uow, record.material_id)
            effects.append(
                lambda: self.notifications.reservation_converted_to_borrow(
                    record.user_id, record.book_title, record.reservation_id
                )
            )
        else:
            updated = record.with_status(status)
            uow.reservations.replace(updated)
            self.ledger.refresh_status(uow, record.material_id)
            if status == ReserveStatus.APPROVED:
                effects.append(
                    lambda: self.notifications.reservation_approved(
                        record.user_id, record.book_title, record.reservation_id
                    )
                )

        self._log(
            effects,
            principal.id,
            "status_change",
            f"Reservation {record.reservation_id}: "
            f"{record.status.value} -> {status.value}",
        )
        return updated

    # =========================
    # read paths
    # =========================

    def with_live_fine(
        self, record: BorrowRecord, now: Optional[datetime] = None
    ) -> BorrowRecord:
        """``record`` with ``days_overdue``/``amount_due`` as of ``now``."""
        if not record.is_active:
            return record
        fine = compute_fine(
            now or utcnow(), record.return_date, self.settings.daily_fine_rate
        )
        return replace(
            record, days_overdue=fine.days_overdue, amount_due=fine.amount_due
        )

    def get_borrow(
        self, principal: Principal, borrow_id: str, *, now: Optional[datetime] = None
    ) -> BorrowRecord:
        with self.store.unit_of_work() as uow:
            record = uow.borrows.require(borrow_id)
        if not principal.can_act_for(record.user_id):
            raise Unauthorized("Unauthorized to view this borrow request")
        return self.with_live_fine(record, now)

    def list_user_borrows(
        self,
        principal: Principal,
        user_id: Optional[str] = None,
        *,
        now: Optional[datetime] = None,
    ) -> List[BorrowRecord]:
        user_id = user_id or principal.id
        if not principal.can_act_for(user_id):
            raise Forbidden("Admin access required")
        with self.store.unit_of_work() as uow:
            records = uow.borrows.list_by_user(user_id)
        return [self.with_live_fine(r, now) for r in records]

    def list_borrows(
        self, principal: Principal, *, now: Optional[datetime] = None
    ) -> List[BorrowRecord]:
        require_admin(principal)
        with self.store.unit_of_work() as uow:
            records = uow.borrows.list_all()
        return [self.with_live_fine(r, now) for r in records]

    def get_reservation(
        self, principal: Principal, reservation_id: str
    ) -> ReserveRecord:
        with self.store.unit_of_work() as uow:
            record = uow.reservations.require(reservation_id)
        if not principal.can_act_for(record.user_id):
            raise Unauthorized("Unauthorized to view this reservation")
        return record

    def list_user_reservations(
        self, principal: Principal, user_id: Optional[str] = None
    ) -> List[ReserveRecord]:
        user_id = user_id or principal.id
        if not principal.can_act_for(user_id):
            raise Forbidden("Admin access required")
        with self.store.unit_of_work() as uow:
            return uow.reservations.list_by_user(user_id)

    def list_active_for_user(
        self,
        principal: Principal,
        user_id: Optional[str] = None,
        *,
        now: Optional[datetime] = None,
    ) -> Tuple[List[BorrowRecord], List[ReserveRecord]]:
        """Borrows and reservations of ``user_id`` that still hold a copy."""
        user_id = user_id or principal.id
        if not principal.can_act_for(user_id):
            raise Forbidden("Admin access required")
        with self.store.unit_of_work() as uow:
            borrows = [b for b in uow.borrows.list_by_user(user_id) if b.is_active]
            reserves = [
                r for r in uow.reservations.list_by_user(user_id) if r.is_active
            ]
        return [self.with_live_fine(b, now) for b in borrows], reserves
