from __future__ import annotations

from circdesk import LibrarySystem, OutOfStock, seed_demo_data
from circdesk.seed import ADMIN, ALICE, BOB
from circdesk.settings import configure_logging


def demo_flow() -> None:
    configure_logging("WARNING")
    sys = LibrarySystem()
    seed_demo_data(sys)

    # Search
    print("\n[demo] search 'clean':", [m.name for m in sys.search_materials("clean")])

    # Sweep: Bob's loan is three days late
    report = sys.sweep()
    print(f"\n[demo] sweep: overdue={report.overdue} expired={report.expired}")
    for b in sys.report_overdue(ADMIN):
        print(f"  - {b.book_title}: {b.days_overdue} day(s), due {b.amount_due:.2f}")

    # Report inventory
    print("\n[demo] inventory:")
    for material, held, expected in sys.report_inventory():
        print(
            f"  - {material.name}: total={material.total_copies}, "
            f"available={material.available_copies} (expected {expected}), "
            f"status={material.status.value}"
        )

    # Dune has two copies: Alice borrowed one, Bob reserved the other
    dune = sys.search_materials("dune")[0]
    try:
        next_year = dune.created_at.replace(year=dune.created_at.year + 1)
        sys.borrow(ALICE, dune.material_id, next_year)
    except OutOfStock as exc:
        print("\n[demo] Alice tries a second Dune copy: DENIED -", exc.message)

    # Convert Bob's reservation into a loan
    reservation = sys.coordinator.list_user_reservations(BOB)[0]
    converted = sys.coordinator.admin_set_status(
        ADMIN, reservation.reservation_id, "borrowed"
    )
    print("[demo] reservation converted, new borrow:", converted.borrow_id)

    # Return the overdue loan and rate it
    late = sys.report_overdue(ADMIN)[0]
    sys.coordinator.return_borrow(BOB, late.borrow_id)
    sys.rate(BOB, late.borrow_id, 5, "A classic.")
    still_late = [b.borrow_id for b in sys.report_overdue(ADMIN)]
    print("[demo] overdue loans after return:", still_late)

    print("\n[demo] reconciled materials:", sys.reconcile())
    bob_notes = sys.notifications.list_for_user(BOB.id)
    print("[demo] notifications for bob:", [n.type for n in bob_notes])


if __name__ == "__main__":
    demo_flow()
