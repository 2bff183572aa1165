from __future__ import annotations

import logging

from .domain import MaterialStatus
from .ledger import InventoryLedger
from .repositories import DocumentStore

LOGGER = logging.getLogger("circdesk.reconciler")


class StatusReconciler:
    """Recomputes every material's status from its active transactions.

    Only ``status`` is ever written; ``available_copies`` belongs to the
    coordinator. A material whose version moves under us is skipped and picked
    up again on the next pass.
    """

    def __init__(self, store: DocumentStore, ledger: InventoryLedger) -> None:
        self.store = store
        self.ledger = ledger

    def run(self) -> int:
        with self.store.unit_of_work() as uow:
            material_ids = [m.material_id for m in uow.materials.list_all()]

        changed = failed = 0
        for material_id in material_ids:
            try:
                if self.reconcile(material_id):
                    changed += 1
            except Exception:
                failed += 1
                LOGGER.exception("could not reconcile material %s", material_id)

        LOGGER.info(
            "updated status for %d of %d materials (%d failed)",
            changed,
            len(material_ids),
            failed,
        )
        return changed

    def reconcile(self, material_id: str) -> bool:
        with self.store.unit_of_work() as uow:
            material = uow.materials.get(material_id)
            if material is None:
                return False
            status: MaterialStatus = self.ledger.derived_status(uow, material_id)
            if material.status == status:
                return False
            uow.materials.replace(material.with_status(status))
            uow.commit()
        LOGGER.debug(
            "material %s: %s -> %s", material_id, material.status.value, status.value
        )
        return True
