"""
circdesk: borrow/reserve lifecycle and inventory consistency for a library backend.

Exports key modules for convenient imports.
"""

from .domain import (
    Role,
    Principal,
    Material,
    MaterialStatus,
    BorrowRecord,
    BorrowStatus,
    ReserveRecord,
    ReserveStatus,
    PaymentStatus,
    Rating,
    compute_fine,
)

from .errors import (
    LibraryError,
    NotFound,
    OutOfStock,
    InvalidStateTransition,
    InvalidPickupWindow,
    InvalidStatus,
    ActiveTransactionsExist,
    Unauthorized,
    Forbidden,
    StorageConflict,
)

from .repositories import DocumentStore, UnitOfWork
from .ledger import InventoryLedger
from .coordinator import LifecycleCoordinator
from .sweeper import OverdueSweeper, SweepReport
from .reconciler import StatusReconciler
from .scheduler import SweepScheduler
from .services import CatalogService, RatingService
from .settings import Settings

from .api import LibrarySystem
from .seed import seed_demo_data

__all__ = [
    # domain
    "Role",
    "Principal",
    "Material",
    "MaterialStatus",
    "BorrowRecord",
    "BorrowStatus",
    "ReserveRecord",
    "ReserveStatus",
    "PaymentStatus",
    "Rating",
    "compute_fine",
    # errors
    "LibraryError",
    "NotFound",
    "OutOfStock",
    "InvalidStateTransition",
    "InvalidPickupWindow",
    "InvalidStatus",
    "ActiveTransactionsExist",
    "Unauthorized",
    "Forbidden",
    "StorageConflict",
    # storage + core
    "DocumentStore",
    "UnitOfWork",
    "InventoryLedger",
    "LifecycleCoordinator",
    "OverdueSweeper",
    "SweepReport",
    "StatusReconciler",
    "SweepScheduler",
    "CatalogService",
    "RatingService",
    "Settings",
    # api
    "LibrarySystem",
    # seed
    "seed_demo_data",
]
