from __future__ import annotations

from dataclasses import replace
from typing import List, Optional, Tuple

from .coordinator import SideEffect, TransactionalService, require_admin
from .domain import (
    BorrowStatus,
    Material,
    Principal,
    Rating,
    new_id,
)
from .errors import (
    ActiveTransactionsExist,
    DuplicateRating,
    InvalidStateTransition,
    Unauthorized,
    ValidationError,
)
from .ledger import InventoryLedger
from .notifications import ActivityLog
from .repositories import DocumentStore, UnitOfWork
from .settings import Settings

MAX_REVIEW_LENGTH = 500


class CatalogService(TransactionalService):
    def __init__(
        self,
        store: DocumentStore,
        ledger: InventoryLedger,
        activity: ActivityLog,
        settings: Optional[Settings] = None,
    ) -> None:
        super().__init__(store, activity, settings)
        self.ledger = ledger

    def add_material(
        self,
        principal: Principal,
        name: str,
        accession_number: str,
        author: str = "",
        copies: int = 1,
    ) -> Material:
        require_admin(principal)
        if not name or not accession_number:
            raise ValidationError("Name and accession number are required")
        if not isinstance(copies, int) or copies < 1:
            raise ValidationError("Total copies must be a positive integer")
        m = Material(
            material_id=new_id("mat"),
            accession_number=accession_number,
            name=name,
            author=author,
            total_copies=copies,
            available_copies=copies,
        )

        def work(uow: UnitOfWork, effects: List[SideEffect]) -> Material:
            uow.materials.add(m)
            self._log(effects, principal.id, "learnmat_create", f"Added {name}")
            return m

        return self._transaction("add_material", work)

    def get(self, material_id: str) -> Material:
        with self.store.unit_of_work() as uow:
            return uow.materials.require(material_id)

    def list_all(self) -> List[Material]:
        with self.store.unit_of_work() as uow:
            return uow.materials.list_all()

    def search(self, text: str) -> List[Material]:
        with self.store.unit_of_work() as uow:
            return uow.materials.search(text)

    def update_copies(
        self, principal: Principal, material_id: str, total_copies: int
    ) -> Material:
        """Change the shelf count; copies currently out stay accounted for."""
        require_admin(principal)
        if not isinstance(total_copies, int) or total_copies < 1:
            raise ValidationError("Total copies must be a positive integer")

        def work(uow: UnitOfWork, effects: List[SideEffect]) -> Material:
            material = uow.materials.require(material_id)
            held = self.ledger.held_copies(uow, material_id)
            if total_copies < held:
                raise ValidationError(
                    f"{held} copies are out on active transactions; "
                    f"total cannot drop to {total_copies}"
                )
            uow.materials.replace(
                replace(
                    material,
                    total_copies=total_copies,
                    available_copies=total_copies - held,
                )
            )
            updated = self.ledger.refresh_status(uow, material_id)
            self._log(
                effects,
                principal.id,
                "learnmat_update",
                f"{material.name}: {total_copies} copies",
            )
            return updated

        return self._transaction("update_copies", work)

    def delete_material(self, principal: Principal, material_id: str) -> None:
        require_admin(principal)

        def work(uow: UnitOfWork, effects: List[SideEffect]) -> None:
            material = uow.materials.require(material_id)
            if self.ledger.held_copies(uow, material_id):
                raise ActiveTransactionsExist(
                    "Cannot delete a material with active transactions"
                )
            uow.materials.remove(material_id)
            self._log(
                effects, principal.id, "learnmat_delete", f"Deleted {material.name}"
            )

        self._transaction("delete_material", work)

    def inventory_report(self) -> List[Tuple[Material, int, int]]:
        """
        Returns tuples of (Material, copies_held, expected_available)
        """
        report: List[Tuple[Material, int, int]] = []
        with self.store.unit_of_work() as uow:
            for material in uow.materials.list_all():
                held = self.ledger.held_copies(uow, material.material_id)
                report.append((material, held, material.total_copies - held))
        return report


class RatingService(TransactionalService):
    def rate(
        self,
        principal: Principal,
        borrow_id: str,
        rating: int,
        review: str = "",
    ) -> Rating:
        is_int = isinstance(rating, int) and not isinstance(rating, bool)
        if not is_int or not 1 <= rating <= 5:
            raise ValidationError("Please provide a valid rating between 1 and 5")
        review = (review or "").strip()
        if len(review) > MAX_REVIEW_LENGTH:
            raise ValidationError(
                f"Review must be at most {MAX_REVIEW_LENGTH} characters"
            )

        def work(uow: UnitOfWork, effects: List[SideEffect]) -> Rating:
            borrow = uow.borrows.require(borrow_id)
            if borrow.user_id != principal.id:
                raise Unauthorized("Borrow transaction does not belong to you")
            if borrow.status != BorrowStatus.RETURNED:
                raise InvalidStateTransition("Only returned materials can be rated")
            if uow.ratings.find_for_transaction(principal.id, borrow_id) is not None:
                raise DuplicateRating(
                    "You have already rated this material for this transaction"
                )

            r = Rating(
                rating_id=new_id("rtg"),
                user_id=principal.id,
                material_id=borrow.material_id,
                borrow_id=borrow_id,
                rating=rating,
                review=review,
            )
            uow.ratings.add(r)
            uow.borrows.replace(borrow.mark_rated())

            material = uow.materials.get(borrow.material_id)
            if material is not None:
                ratings = uow.ratings.list_for_material(borrow.material_id)
                average = round(sum(x.rating for x in ratings) / len(ratings), 1)
                uow.materials.replace(material.with_rating(average, len(ratings)))
            self._log(
                effects,
                principal.id,
                "feedback_add",
                f"Rated {borrow.book_title} {rating}/5",
            )
            return r

        return self._transaction("rate_material", work)
