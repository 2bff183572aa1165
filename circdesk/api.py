from __future__ import annotations

from datetime import datetime
from typing import List, Optional, Tuple

from .coordinator import LifecycleCoordinator
from .domain import BorrowRecord, Material, Principal, ReserveRecord
from .ledger import InventoryLedger
from .notifications import ActivityLog, NotificationService
from .reconciler import StatusReconciler
from .repositories import DocumentStore
from .scheduler import SweepScheduler
from .services import CatalogService, RatingService
from .settings import Settings
from .sweeper import OverdueSweeper, SweepReport


class LibrarySystem:
    """
    A simple facade that wires the store, ledger and services and offers a compact API.
    """

    def __init__(
        self,
        settings: Optional[Settings] = None,
        notifications: Optional[NotificationService] = None,
        activity: Optional[ActivityLog] = None,
    ) -> None:
        self.settings = settings or Settings()

        # storage + collaborators
        self.store = DocumentStore()
        self.ledger = InventoryLedger()
        self.notifications = notifications or NotificationService()
        self.activity = activity or ActivityLog()

        # services
        self.coordinator = LifecycleCoordinator(
            self.store, self.ledger, self.notifications, self.activity, self.settings
        )
        self.catalog = CatalogService(
            self.store, self.ledger, self.activity, self.settings
        )
        self.ratings = RatingService(self.store, self.activity, self.settings)

        # periodic jobs
        self.sweeper = OverdueSweeper(
            self.store, self.ledger, self.notifications, self.settings
        )
        self.reconciler = StatusReconciler(self.store, self.ledger)
        self.scheduler = SweepScheduler(
            self.sweeper,
            self.reconciler,
            sweep_interval=self.settings.sweep_interval_seconds,
            reconcile_interval=self.settings.reconcile_interval_seconds,
        )

    # ---- catalog module
    def add_material(
        self,
        principal: Principal,
        name: str,
        accession_number: str,
        author: str = "",
        copies: int = 1,
    ) -> Material:
        return self.catalog.add_material(
            principal, name, accession_number, author, copies
        )

    def get_material(self, material_id: str) -> Material:
        return self.catalog.get(material_id)

    def search_materials(self, text: str) -> List[Material]:
        return self.catalog.search(text)

    # ---- circulation module
    def borrow(
        self, principal: Principal, material_id: str, due_date: datetime, **kwargs
    ) -> BorrowRecord:
        return self.coordinator.create_borrow(
            principal, material_id, due_date, **kwargs
        )

    def return_borrow(self, principal: Principal, borrow_id: str) -> BorrowRecord:
        return self.coordinator.return_borrow(principal, borrow_id)

    def reserve(
        self, principal: Principal, material_id: str, pickup_date: datetime, **kwargs
    ) -> ReserveRecord:
        return self.coordinator.create_reservation(
            principal, material_id, pickup_date, **kwargs
        )

    def rate(self, principal: Principal, borrow_id: str, rating: int, review: str = ""):
        return self.ratings.rate(principal, borrow_id, rating, review)

    # ---- periodic jobs
    def sweep(self, now: Optional[datetime] = None) -> SweepReport:
        return self.sweeper.run(now)

    def reconcile(self) -> int:
        return self.reconciler.run()

    # ---- reporting
    def report_overdue(self, principal: Principal) -> List[BorrowRecord]:
        return [
            b
            for b in self.coordinator.list_borrows(principal)
            if b.is_active and b.days_overdue > 0
        ]

    def report_inventory(self) -> List[Tuple[Material, int, int]]:
        """
        Returns tuples of (Material, copies_held, expected_available)
        """
        return self.catalog.inventory_report()
