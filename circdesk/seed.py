from __future__ import annotations

from datetime import timedelta

from .api import LibrarySystem
from .domain import Principal, Role, utcnow

ADMIN = Principal("usr_admin", Role.ADMIN)
ALICE = Principal("usr_alice")
BOB = Principal("usr_bob")


def seed_demo_data(sys: LibrarySystem) -> None:
    now = utcnow()

    # materials
    dune = sys.add_material(ADMIN, "Dune", "ACC-0001", "Frank Herbert", copies=2)
    hp1 = sys.add_material(
        ADMIN,
        "Harry Potter and the Sorcerer's Stone",
        "ACC-0002",
        "J.K. Rowling",
        copies=1,
    )
    clean_code = sys.add_material(
        ADMIN, "Clean Code", "ACC-0003", "Robert C. Martin", copies=3
    )

    # borrows
    sys.borrow(ALICE, dune.material_id, now + timedelta(days=7))
    sys.coordinator.admin_direct_borrow(ADMIN, clean_code.material_id, ALICE.id)
    # lent ten days ago and due three days ago: the next sweep marks it overdue
    sys.coordinator.admin_direct_borrow(
        ADMIN,
        hp1.material_id,
        BOB.id,
        due_date=now - timedelta(days=3),
        now=now - timedelta(days=10),
    )

    # reservations
    sys.reserve(BOB, dune.material_id, now + timedelta(days=2))

    print("[seed] materials:", [m.name for m in sys.catalog.list_all()])
    alice_borrows = sys.coordinator.list_user_borrows(ALICE)
    print("[seed] alice borrows:", [b.borrow_id for b in alice_borrows])
