from __future__ import annotations

import logging
from typing import List, Optional, Tuple

from .domain import (
    BorrowStatus,
    Hold,
    Material,
    MaterialStatus,
    derive_material_status,
    exhausted_status,
    split_active,
)
from .errors import ActiveTransactionsExist, OutOfStock
from .repositories import UnitOfWork

LOGGER = logging.getLogger("circdesk.ledger")


class InventoryLedger:
    """Owns ``available_copies`` and ``status`` bookkeeping for materials.

    Every method works inside the caller's unit of work so the copy count and
    the transaction record it accounts for are committed together. Callers
    stage the transaction record first; the status recomputation then sees
    the store exactly as it will look after commit.

    While any loan of a material is overdue the ledger keeps its status at
    ``overdue``; the reconciler folds that back into ``borrowed``.
    """

    def derived_status(self, uow: UnitOfWork, material_id: str) -> MaterialStatus:
        borrows, reserves = split_active(
            uow.borrows.list_active_for_material(material_id),
            uow.reservations.list_active_for_material(material_id),
        )
        return derive_material_status(borrows, reserves)

    def _status_after_change(
        self, uow: UnitOfWork, material_id: str, hold: Optional[Hold] = None
    ) -> MaterialStatus:
        if any(
            b.status == BorrowStatus.OVERDUE
            for b in uow.borrows.list_active_for_material(material_id)
        ):
            return MaterialStatus.OVERDUE
        if hold is not None:
            return exhausted_status(hold)
        return self.derived_status(uow, material_id)

    def decrement_availability(
        self, uow: UnitOfWork, material_id: str, hold: Hold = Hold.BORROW
    ) -> Material:
        material = uow.materials.require(material_id)
        if material.available_copies <= 0:
            raise OutOfStock(
                "All copies of this material are currently checked out",
                details={
                    "available_copies": material.available_copies,
                    "status": material.status.value,
                },
            )
        taken = material.take_copy()
        exhausted = hold if taken.available_copies == 0 else None
        status = self._status_after_change(uow, material_id, exhausted)
        updated = taken.with_status(status)
        uow.materials.replace(updated)
        return updated

    def increment_availability(self, uow: UnitOfWork, material_id: str) -> Material:
        material = uow.materials.require(material_id)
        if material.available_copies >= material.total_copies:
            LOGGER.warning(
                "release on %s ignored: already at %d/%d copies",
                material_id,
                material.available_copies,
                material.total_copies,
            )
        status = self._status_after_change(uow, material_id)
        updated = material.release_copy().with_status(status)
        uow.materials.replace(updated)
        return updated

    def assert_available_transition_allowed(
        self, uow: UnitOfWork, material_id: str
    ) -> None:
        uow.materials.require(material_id)
        active_borrows = uow.borrows.list_active_for_material(material_id)
        active_reserves = uow.reservations.list_active_for_material(material_id)
        if active_borrows or active_reserves:
            raise ActiveTransactionsExist(
                "Cannot set to available - active transactions exist",
                details={
                    "active_borrows": len(active_borrows),
                    "active_reservations": len(active_reserves),
                },
            )

    def set_status(
        self, uow: UnitOfWork, material_id: str, status: MaterialStatus
    ) -> Material:
        if status == MaterialStatus.AVAILABLE:
            self.assert_available_transition_allowed(uow, material_id)
        updated = uow.materials.require(material_id).with_status(status)
        uow.materials.replace(updated)
        return updated

    def mark_overdue(self, uow: UnitOfWork, material_id: str) -> Material:
        return self.set_status(uow, material_id, MaterialStatus.OVERDUE)

    def refresh_status(self, uow: UnitOfWork, material_id: str) -> Material:
        material = uow.materials.require(material_id)
        status = self._status_after_change(uow, material_id)
        if material.available_copies == 0 and status == MaterialStatus.PENDING:
            # keep the exhausted status set when the last copy was taken
            return material
        updated = material.with_status(status)
        uow.materials.replace(updated)
        return updated

    # ---- invariant checks
    def held_copies(self, uow: UnitOfWork, material_id: str) -> int:
        return len(uow.borrows.list_active_for_material(material_id)) + len(
            uow.reservations.list_active_for_material(material_id)
        )

    def check_invariant(self, uow: UnitOfWork, material_id: str) -> Tuple[int, int]:
        """(expected, stored) available copies for ``material_id``."""
        material = uow.materials.require(material_id)
        expected = material.total_copies - self.held_copies(uow, material_id)
        return expected, material.available_copies

    def drifted_materials(self, uow: UnitOfWork) -> List[str]:
        drifted = []
        for material in uow.materials.list_all():
            expected, stored = self.check_invariant(uow, material.material_id)
            if expected != stored:
                drifted.append(material.material_id)
        return drifted
