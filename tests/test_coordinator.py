import pytest

from circdesk import LibrarySystem
from circdesk.domain import BorrowStatus, MaterialStatus, PaymentStatus, ReserveStatus
from circdesk.errors import (
    ActiveTransactionsExist,
    Forbidden,
    InvalidPickupWindow,
    InvalidStateTransition,
    InvalidStatus,
    NotFound,
    OutOfStock,
    StorageConflict,
    Unauthorized,
    Unexpected,
    ValidationError,
)
from circdesk.notifications import NotificationService
from circdesk.settings import Settings

from conftest import ADMIN, MEMBER, NOW, OTHER, days, invariant_holds, material


# =========================
# borrow
# =========================

def test_borrow_then_cancel_restores_the_copy(system, make_material):
    m = make_material(copies=1)

    record = system.coordinator.create_borrow(
        MEMBER, m.material_id, NOW + days(7), now=NOW
    )
    assert record.status == BorrowStatus.PENDING
    after_borrow = material(system, m.material_id)
    assert after_borrow.available_copies == 0
    assert after_borrow.status == MaterialStatus.BORROWED

    cancelled = system.coordinator.cancel_borrow(MEMBER, record.borrow_id, now=NOW)
    assert cancelled.status == BorrowStatus.CANCELLED
    assert cancelled.cancelled_at == NOW
    after_cancel = material(system, m.material_id)
    assert after_cancel.available_copies == 1
    assert after_cancel.status == MaterialStatus.AVAILABLE


def test_borrow_with_copies_left_reports_pending(system, make_material):
    m = make_material(copies=3)
    system.coordinator.create_borrow(MEMBER, m.material_id, NOW + days(7), now=NOW)
    current = material(system, m.material_id)
    assert current.available_copies == 2
    assert current.status == MaterialStatus.PENDING
    assert current.status != MaterialStatus.AVAILABLE


def test_last_copy_is_out_of_stock(system, make_material):
    m = make_material(copies=1)
    system.coordinator.create_borrow(MEMBER, m.material_id, NOW + days(7), now=NOW)
    with pytest.raises(OutOfStock) as exc:
        system.coordinator.create_borrow(OTHER, m.material_id, NOW + days(7), now=NOW)
    assert exc.value.details["available_copies"] == 0
    with system.store.unit_of_work() as uow:
        assert len(uow.borrows.list_for_material(m.material_id)) == 1


def test_unknown_material_is_not_found(system):
    with pytest.raises(NotFound):
        system.coordinator.create_borrow(MEMBER, "mat_missing", NOW + days(7), now=NOW)


def test_due_date_must_follow_borrow_date(system, make_material):
    m = make_material()
    with pytest.raises(ValidationError):
        system.coordinator.create_borrow(MEMBER, m.material_id, NOW - days(1), now=NOW)
    assert material(system, m.material_id).available_copies == 1


def test_member_cannot_borrow_for_someone_else(system, make_material):
    m = make_material()
    with pytest.raises(Forbidden):
        system.coordinator.create_borrow(
            MEMBER, m.material_id, NOW + days(7), user_id=OTHER.id, now=NOW
        )


def test_return_then_borrow_nets_zero(system, make_material):
    m = make_material(copies=2)
    first = system.coordinator.create_borrow(
        MEMBER, m.material_id, NOW + days(7), now=NOW
    )
    before = material(system, m.material_id).available_copies

    system.coordinator.return_borrow(MEMBER, first.borrow_id, now=NOW + days(1))
    system.coordinator.create_borrow(
        OTHER, m.material_id, NOW + days(8), now=NOW + days(1)
    )

    assert material(system, m.material_id).available_copies == before
    assert invariant_holds(system, m.material_id)


def test_return_clears_fine_and_marks_paid(system, make_material):
    m = make_material()
    record = system.coordinator.admin_direct_borrow(
        ADMIN, m.material_id, MEMBER.id, NOW - days(2), now=NOW - days(9)
    )
    system.sweep(NOW)

    returned = system.coordinator.return_borrow(MEMBER, record.borrow_id, now=NOW)
    assert returned.status == BorrowStatus.RETURNED
    assert returned.actual_return_date == NOW
    assert returned.days_overdue == 0
    assert returned.amount_due == 0.0
    assert returned.payment_status == PaymentStatus.PAID
    current = material(system, m.material_id)
    assert current.available_copies == 1
    assert current.status == MaterialStatus.AVAILABLE


def test_return_by_another_member_is_unauthorized(system, make_material):
    m = make_material()
    record = system.coordinator.create_borrow(
        MEMBER, m.material_id, NOW + days(7), now=NOW
    )
    with pytest.raises(Unauthorized):
        system.coordinator.return_borrow(OTHER, record.borrow_id)


def test_returning_twice_is_rejected(system, make_material):
    m = make_material(copies=2)
    record = system.coordinator.create_borrow(
        MEMBER, m.material_id, NOW + days(7), now=NOW
    )
    system.coordinator.return_borrow(MEMBER, record.borrow_id, now=NOW)
    with pytest.raises(InvalidStateTransition):
        system.coordinator.return_borrow(MEMBER, record.borrow_id, now=NOW)
    assert material(system, m.material_id).available_copies == 2


def test_confirmed_borrow_cannot_be_cancelled(system, make_material):
    m = make_material()
    record = system.coordinator.admin_direct_borrow(
        ADMIN, m.material_id, MEMBER.id, now=NOW
    )
    with pytest.raises(InvalidStateTransition):
        system.coordinator.cancel_borrow(MEMBER, record.borrow_id, now=NOW)


def test_idempotency_key_returns_original_borrow(system, make_material):
    m = make_material(copies=2)
    first = system.coordinator.create_borrow(
        MEMBER, m.material_id, NOW + days(7), idempotency_key="req-1", now=NOW
    )
    again = system.coordinator.create_borrow(
        MEMBER, m.material_id, NOW + days(7), idempotency_key="req-1", now=NOW
    )
    assert again.borrow_id == first.borrow_id
    assert material(system, m.material_id).available_copies == 1


def test_admin_direct_borrow_defaults_to_loan_period(system, make_material):
    m = make_material()
    record = system.coordinator.admin_direct_borrow(
        ADMIN, m.material_id, MEMBER.id, now=NOW
    )
    assert record.status == BorrowStatus.BORROWED
    assert record.return_date == NOW + days(system.settings.loan_days)
    assert material(system, m.material_id).status == MaterialStatus.BORROWED
    types = [n.type for n in system.notifications.list_for_user(MEMBER.id)]
    assert types == ["borrow_approved"]


def test_admin_direct_borrow_requires_admin(system, make_material):
    m = make_material()
    with pytest.raises(Forbidden):
        system.coordinator.admin_direct_borrow(
            MEMBER, m.material_id, MEMBER.id, now=NOW
        )


# =========================
# reservations
# =========================

def test_reservation_holds_a_copy(system, make_material):
    m = make_material(copies=1)
    record = system.coordinator.create_reservation(
        MEMBER, m.material_id, NOW + days(2), now=NOW
    )
    assert record.status == ReserveStatus.PENDING
    current = material(system, m.material_id)
    assert current.available_copies == 0
    assert current.status == MaterialStatus.RESERVED
    with pytest.raises(OutOfStock):
        system.coordinator.create_borrow(OTHER, m.material_id, NOW + days(7), now=NOW)


def test_pickup_window_is_enforced(system, make_material):
    m = make_material()
    with pytest.raises(InvalidPickupWindow):
        system.coordinator.create_reservation(
            MEMBER, m.material_id, NOW + days(4), now=NOW
        )
    assert material(system, m.material_id).available_copies == 1


def test_owner_cancels_reservation(system, make_material):
    m = make_material()
    record = system.coordinator.create_reservation(
        MEMBER, m.material_id, NOW + days(1), now=NOW
    )
    cancelled = system.coordinator.cancel_reservation(
        MEMBER, record.reservation_id, now=NOW
    )
    assert cancelled.status == ReserveStatus.CANCELLED
    assert material(system, m.material_id).available_copies == 1
    assert system.notifications.list_for_user(MEMBER.id) == []


def test_admin_cancel_notifies_owner(system, make_material):
    m = make_material()
    record = system.coordinator.create_reservation(
        MEMBER, m.material_id, NOW + days(1), now=NOW
    )
    system.coordinator.cancel_reservation(ADMIN, record.reservation_id, now=NOW)
    types = [n.type for n in system.notifications.list_for_user(MEMBER.id)]
    assert types == ["reservation_cancelled"]


def test_cancelled_reservation_cannot_be_cancelled_again(system, make_material):
    m = make_material()
    record = system.coordinator.create_reservation(
        MEMBER, m.material_id, NOW + days(1), now=NOW
    )
    system.coordinator.cancel_reservation(MEMBER, record.reservation_id, now=NOW)
    with pytest.raises(InvalidStateTransition):
        system.coordinator.cancel_reservation(MEMBER, record.reservation_id, now=NOW)
    assert material(system, m.material_id).available_copies == 1


def test_conversion_spawns_one_borrow_without_moving_copies(system, make_material):
    m = make_material(copies=2)
    reservation = system.coordinator.create_reservation(
        MEMBER, m.material_id, NOW + days(1), now=NOW
    )
    before = material(system, m.material_id).available_copies

    converted = system.coordinator.admin_set_status(
        ADMIN, reservation.reservation_id, "borrowed", now=NOW
    )

    assert converted.status == ReserveStatus.BORROWED
    with system.store.unit_of_work() as uow:
        borrows = uow.borrows.list_for_material(m.material_id)
    assert len(borrows) == 1
    assert borrows[0].status == BorrowStatus.BORROWED
    assert borrows[0].reservation_id == reservation.reservation_id
    assert converted.borrow_id == borrows[0].borrow_id
    assert material(system, m.material_id).available_copies == before
    assert material(system, m.material_id).status == MaterialStatus.BORROWED
    assert invariant_holds(system, m.material_id)


def test_rejecting_a_reservation_releases_the_copy(system, make_material):
    m = make_material()
    reservation = system.coordinator.create_reservation(
        MEMBER, m.material_id, NOW + days(1), now=NOW
    )
    system.coordinator.admin_set_reservation_status(
        ADMIN, reservation.reservation_id, "rejected", now=NOW
    )
    current = material(system, m.material_id)
    assert current.available_copies == 1
    assert current.status == MaterialStatus.AVAILABLE


def test_approving_a_reservation_notifies_and_marks_reserved(system, make_material):
    m = make_material(copies=2)
    reservation = system.coordinator.create_reservation(
        MEMBER, m.material_id, NOW + days(1), now=NOW
    )
    system.coordinator.admin_set_status(
        ADMIN, reservation.reservation_id, "approved", now=NOW
    )
    assert material(system, m.material_id).status == MaterialStatus.RESERVED
    types = [n.type for n in system.notifications.list_for_user(MEMBER.id)]
    assert types == ["reservation_approved"]


# =========================
# admin status changes
# =========================

def test_admin_status_requires_admin(system, make_material):
    m = make_material()
    record = system.coordinator.create_borrow(
        MEMBER, m.material_id, NOW + days(7), now=NOW
    )
    with pytest.raises(Forbidden):
        system.coordinator.admin_set_status(MEMBER, record.borrow_id, "borrowed")


def test_admin_status_rejects_unknown_status(system, make_material):
    m = make_material()
    record = system.coordinator.create_borrow(
        MEMBER, m.material_id, NOW + days(7), now=NOW
    )
    with pytest.raises(InvalidStatus):
        system.coordinator.admin_set_status(ADMIN, record.borrow_id, "lost")


def test_admin_status_unknown_transaction(system):
    with pytest.raises(NotFound):
        system.coordinator.admin_set_status(ADMIN, "brw_missing", "returned")


def test_approving_a_borrow_notifies_member(system, make_material):
    m = make_material(copies=2)
    record = system.coordinator.create_borrow(
        MEMBER, m.material_id, NOW + days(7), now=NOW
    )
    updated = system.coordinator.admin_set_status(
        ADMIN, record.borrow_id, "borrowed", now=NOW
    )
    assert updated.status == BorrowStatus.BORROWED
    assert material(system, m.material_id).status == MaterialStatus.BORROWED
    assert material(system, m.material_id).available_copies == 1
    types = [n.type for n in system.notifications.list_for_user(MEMBER.id)]
    assert types == ["borrow_approved"]


def test_admin_overdue_computes_fine(system, make_material):
    m = make_material()
    record = system.coordinator.admin_direct_borrow(
        ADMIN, m.material_id, MEMBER.id, NOW - days(4), now=NOW - days(10)
    )
    updated = system.coordinator.admin_set_borrow_status(
        ADMIN, record.borrow_id, "overdue", now=NOW
    )
    assert updated.days_overdue == 4
    assert updated.amount_due == 4 * system.settings.daily_fine_rate
    assert material(system, m.material_id).status == MaterialStatus.OVERDUE


def test_terminal_borrow_cannot_be_reopened(system, make_material):
    m = make_material()
    record = system.coordinator.create_borrow(
        MEMBER, m.material_id, NOW + days(7), now=NOW
    )
    system.coordinator.admin_set_status(ADMIN, record.borrow_id, "returned", now=NOW)
    with pytest.raises(InvalidStateTransition):
        system.coordinator.admin_set_status(
            ADMIN, record.borrow_id, "borrowed", now=NOW
        )
    assert material(system, m.material_id).available_copies == 1


def test_same_status_is_a_no_op(system, make_material):
    m = make_material()
    record = system.coordinator.admin_direct_borrow(
        ADMIN, m.material_id, MEMBER.id, now=NOW
    )
    unchanged = system.coordinator.admin_set_status(
        ADMIN, record.borrow_id, "borrowed", now=NOW
    )
    assert unchanged == record
    assert material(system, m.material_id).available_copies == 0


def test_material_cannot_be_forced_available_while_held(system, make_material):
    m = make_material()
    system.coordinator.create_borrow(MEMBER, m.material_id, NOW + days(7), now=NOW)
    with pytest.raises(ActiveTransactionsExist):
        system.coordinator.admin_set_material_status(ADMIN, m.material_id, "available")
    assert material(system, m.material_id).status == MaterialStatus.BORROWED


def test_payment_status_update(system, make_material):
    m = make_material()
    record = system.coordinator.create_borrow(
        MEMBER, m.material_id, NOW + days(7), now=NOW
    )
    updated = system.coordinator.update_payment_status(
        ADMIN, record.borrow_id, "pending"
    )
    assert updated.payment_status == PaymentStatus.PENDING
    with pytest.raises(Forbidden):
        system.coordinator.update_payment_status(MEMBER, record.borrow_id, "paid")


# =========================
# read paths
# =========================

def test_borrow_views_carry_live_fine(system, make_material):
    m = make_material()
    record = system.coordinator.admin_direct_borrow(
        ADMIN, m.material_id, MEMBER.id, NOW - days(2), now=NOW - days(5)
    )
    view = system.coordinator.get_borrow(MEMBER, record.borrow_id, now=NOW)
    assert view.days_overdue == 2
    assert view.amount_due == 2 * system.settings.daily_fine_rate
    with pytest.raises(Unauthorized):
        system.coordinator.get_borrow(OTHER, record.borrow_id, now=NOW)


def test_list_active_for_user(system, make_material):
    m = make_material(copies=3)
    kept = system.coordinator.create_borrow(
        MEMBER, m.material_id, NOW + days(7), now=NOW
    )
    done = system.coordinator.create_borrow(
        MEMBER, m.material_id, NOW + days(7), now=NOW
    )
    system.coordinator.return_borrow(MEMBER, done.borrow_id, now=NOW)
    reservation = system.coordinator.create_reservation(
        MEMBER, m.material_id, NOW + days(1), now=NOW
    )

    borrows, reserves = system.coordinator.list_active_for_user(MEMBER, now=NOW)
    assert [b.borrow_id for b in borrows] == [kept.borrow_id]
    assert [r.reservation_id for r in reserves] == [reservation.reservation_id]
    with pytest.raises(Forbidden):
        system.coordinator.list_active_for_user(OTHER, MEMBER.id)


def test_list_borrows_is_admin_only(system):
    with pytest.raises(Forbidden):
        system.coordinator.list_borrows(MEMBER)


# =========================
# transaction boundary
# =========================

class _BrokenNotifications(NotificationService):
    def notify(self, *args, **kwargs):
        raise RuntimeError("mail server down")


def test_side_effect_failure_does_not_fail_the_operation():
    system = LibrarySystem(notifications=_BrokenNotifications())
    m = system.add_material(ADMIN, "Dune", "ACC-9", copies=1)
    record = system.coordinator.admin_direct_borrow(
        ADMIN, m.material_id, MEMBER.id, now=NOW
    )
    fetched = system.coordinator.get_borrow(ADMIN, record.borrow_id)
    assert fetched.status == BorrowStatus.BORROWED
    assert system.get_material(m.material_id).available_copies == 0


def _conflict_once(system, material_id, calls):
    def work(uow, effects):
        calls.append(1)
        current = uow.materials.require(material_id)
        if len(calls) == 1:
            with system.store.unit_of_work() as other:
                other.materials.replace(
                    other.materials.require(material_id).take_copy()
                )
                other.commit()
        uow.materials.replace(current.with_rating(4.0, 1))
        return current

    return work


def test_conflicting_commit_is_retried_on_fresh_state(system, make_material):
    m = make_material(copies=2)
    calls = []
    system.coordinator._transaction(
        "touch_material", _conflict_once(system, m.material_id, calls)
    )
    assert len(calls) == 2
    current = material(system, m.material_id)
    assert current.available_copies == 1
    assert current.average_rating == 4.0


def test_conflict_surfaces_when_retries_run_out():
    system = LibrarySystem(Settings(commit_retries=1))
    m = system.add_material(ADMIN, "Dune", "ACC-9", copies=2)
    with pytest.raises(StorageConflict):
        system.coordinator._transaction(
            "touch_material", _conflict_once(system, m.material_id, [])
        )


def test_unexpected_errors_are_wrapped(system):
    def work(uow, effects):
        raise KeyError("missing")

    with pytest.raises(Unexpected):
        system.coordinator._transaction("broken_action", work)


def test_release_keeps_overdue_status_while_a_loan_is_late(system, make_material):
    m = make_material(copies=2)
    system.coordinator.admin_direct_borrow(
        ADMIN, m.material_id, MEMBER.id, NOW - days(1), now=NOW - days(5)
    )
    system.sweep(NOW)
    reservation = system.coordinator.create_reservation(
        OTHER, m.material_id, NOW + days(1), now=NOW
    )
    assert material(system, m.material_id).status == MaterialStatus.OVERDUE

    system.coordinator.cancel_reservation(OTHER, reservation.reservation_id, now=NOW)

    current = material(system, m.material_id)
    assert current.status == MaterialStatus.OVERDUE
    assert current.available_copies == 1
