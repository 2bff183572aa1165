"""
Time-driven transitions for borrows and reservations.

The sweeper selects candidates with one read, then handles each record in its
own unit of work after re-checking the condition against fresh state, so a
concurrent coordinator action simply makes the candidate drop out. Running it
twice with the same ``now`` changes nothing the second time.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Callable, Iterable, Optional

from .domain import BorrowRecord, BorrowStatus, ReserveStatus, compute_fine, utcnow
from .ledger import InventoryLedger
from .notifications import NotificationService
from .repositories import DocumentStore
from .settings import Settings

LOGGER = logging.getLogger("circdesk.sweeper")


@dataclass
class SweepReport:
    overdue: int = 0
    refreshed: int = 0
    expired: int = 0
    unclaimed: int = 0
    reminded: int = 0
    failures: int = 0

    @property
    def changed(self) -> int:
        return (
            self.overdue
            + self.refreshed
            + self.expired
            + self.unclaimed
            + self.reminded
        )


class OverdueSweeper:
    def __init__(
        self,
        store: DocumentStore,
        ledger: InventoryLedger,
        notifications: NotificationService,
        settings: Optional[Settings] = None,
    ) -> None:
        self.store = store
        self.ledger = ledger
        self.notifications = notifications
        self.settings = settings or Settings()

    def run(self, now: Optional[datetime] = None) -> SweepReport:
        now = now or utcnow()
        report = SweepReport()

        with self.store.unit_of_work() as uow:
            past_due = [b.borrow_id for b in uow.borrows.list_past_due(now)]
            overdue = [b.borrow_id for b in uow.borrows.list_overdue()]
            expired = [r.reservation_id for r in uow.reservations.list_expired(now)]
        self._each(
            past_due + overdue, lambda i: self._overdue_one(i, now, report), report
        )
        self._each(expired, lambda i: self._expire_one(i, now, report), report)

        cutoff = now - timedelta(hours=self.settings.unclaimed_grace_hours)
        with self.store.unit_of_work() as uow:
            unclaimed = [b.borrow_id for b in uow.borrows.list_unclaimed(cutoff)]
            tomorrow = now + timedelta(days=1)
            due_soon = [
                b.borrow_id for b in uow.borrows.list_due_between(now, tomorrow)
            ]
        self._each(
            unclaimed, lambda i: self._unclaimed_one(i, cutoff, now, report), report
        )
        self._each(due_soon, lambda i: self._remind_one(i, now, report), report)

        LOGGER.info(
            "sweep done: %d overdue, %d refreshed, %d expired, "
            "%d unclaimed, %d reminded, %d failed",
            report.overdue,
            report.refreshed,
            report.expired,
            report.unclaimed,
            report.reminded,
            report.failures,
        )
        return report

    def _each(
        self, ids: Iterable[str], handle: Callable[[str], None], report: SweepReport
    ) -> None:
        for record_id in dict.fromkeys(ids):
            try:
                handle(record_id)
            except Exception:
                report.failures += 1
                LOGGER.exception("sweep failed for %s; continuing", record_id)

    def _overdue_one(self, borrow_id: str, now: datetime, report: SweepReport) -> None:
        with self.store.unit_of_work() as uow:
            record = uow.borrows.get(borrow_id)
            if record is None:
                return
            fine = compute_fine(now, record.return_date, self.settings.daily_fine_rate)
            newly_overdue = (
                record.status in (BorrowStatus.PENDING, BorrowStatus.BORROWED)
                and record.return_date < now
            )
            stale = (record.days_overdue, record.amount_due) != (
                fine.days_overdue,
                fine.amount_due,
            )
            if not newly_overdue and not (
                record.status == BorrowStatus.OVERDUE and stale
            ):
                return
            updated = record.mark_overdue(fine)
            uow.borrows.replace(updated)
            if newly_overdue:
                self.ledger.mark_overdue(uow, record.material_id)
            uow.commit()

        if newly_overdue:
            report.overdue += 1
            self._notify(
                lambda: self.notifications.settle_fines(
                    updated.user_id,
                    updated.book_title,
                    updated.borrow_id,
                    updated.days_overdue,
                    updated.amount_due,
                )
            )
        else:
            report.refreshed += 1

    def _expire_one(
        self, reservation_id: str, now: datetime, report: SweepReport
    ) -> None:
        with self.store.unit_of_work() as uow:
            record = uow.reservations.get(reservation_id)
            if record is None or record.pickup_date >= now:
                return
            if record.status not in (ReserveStatus.PENDING, ReserveStatus.APPROVED):
                return
            uow.reservations.replace(record.with_status(ReserveStatus.EXPIRED))
            self.ledger.increment_availability(uow, record.material_id)
            uow.commit()
        report.expired += 1

    def _unclaimed_one(
        self, borrow_id: str, cutoff: datetime, now: datetime, report: SweepReport
    ) -> None:
        with self.store.unit_of_work() as uow:
            record = uow.borrows.get(borrow_id)
            if record is None or record.status != BorrowStatus.PENDING:
                return
            if record.borrow_date >= cutoff or record.return_date < now:
                return
            uow.borrows.replace(record.cancel(now))
            self.ledger.increment_availability(uow, record.material_id)
            uow.commit()
        report.unclaimed += 1

    def _remind_one(self, borrow_id: str, now: datetime, report: SweepReport) -> None:
        with self.store.unit_of_work() as uow:
            record: Optional[BorrowRecord] = uow.borrows.get(borrow_id)
            if record is None or record.reminded_at is not None:
                return
            if record.status != BorrowStatus.BORROWED:
                return
            uow.borrows.replace(record.mark_reminded(now))
            uow.commit()
        report.reminded += 1
        self._notify(
            lambda: self.notifications.borrow_due_tomorrow(
                record.user_id, record.book_title, record.borrow_id
            )
        )

    def _notify(self, send: Callable[[], None]) -> None:
        try:
            send()
        except Exception:
            LOGGER.exception("sweep notification failed")
