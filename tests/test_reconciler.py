from dataclasses import replace

from circdesk.domain import MaterialStatus

from conftest import ADMIN, MEMBER, NOW, OTHER, days, material


def _force_status(system, material_id, status):
    with system.store.unit_of_work() as uow:
        uow.materials.replace(uow.materials.require(material_id).with_status(status))
        uow.commit()


def test_returned_plus_pending_reconciles_to_pending(system, make_material):
    m = make_material(copies=2)
    system.coordinator.create_borrow(MEMBER, m.material_id, NOW + days(7), now=NOW)
    done = system.coordinator.create_borrow(
        OTHER, m.material_id, NOW + days(7), now=NOW
    )
    system.coordinator.return_borrow(OTHER, done.borrow_id, now=NOW)
    _force_status(system, m.material_id, MaterialStatus.BORROWED)

    assert system.reconcile() == 1

    current = material(system, m.material_id)
    assert current.status == MaterialStatus.PENDING
    assert current.available_copies == 1


def test_no_active_transactions_forces_available(system, make_material):
    m = make_material()
    _force_status(system, m.material_id, MaterialStatus.RESERVED)

    system.reconcile()

    assert material(system, m.material_id).status == MaterialStatus.AVAILABLE


def test_copy_counts_are_never_touched(system, make_material):
    m = make_material(copies=3)
    with system.store.unit_of_work() as uow:
        drifted = replace(uow.materials.require(m.material_id), available_copies=1)
        uow.materials.replace(drifted)
        uow.commit()

    system.reconcile()

    assert material(system, m.material_id).available_copies == 1
    with system.store.unit_of_work() as uow:
        assert system.ledger.drifted_materials(uow) == [m.material_id]


def test_overdue_loan_reconciles_to_borrowed(system, make_material):
    m = make_material()
    system.coordinator.admin_direct_borrow(
        ADMIN, m.material_id, MEMBER.id, NOW - days(1), now=NOW - days(5)
    )
    system.sweep(NOW)
    assert material(system, m.material_id).status == MaterialStatus.OVERDUE

    system.reconcile()

    assert material(system, m.material_id).status == MaterialStatus.BORROWED


def test_second_pass_changes_nothing(system, make_material):
    m = make_material()
    system.coordinator.create_reservation(MEMBER, m.material_id, NOW + days(1), now=NOW)
    _force_status(system, m.material_id, MaterialStatus.AVAILABLE)

    assert system.reconcile() == 1
    assert system.reconcile() == 0
    assert material(system, m.material_id).status == MaterialStatus.PENDING


def test_exhausted_reservation_status_folds_back_to_pending(system, make_material):
    m = make_material()
    system.coordinator.create_reservation(MEMBER, m.material_id, NOW + days(1), now=NOW)
    assert material(system, m.material_id).status == MaterialStatus.RESERVED

    assert system.reconcile() == 1

    current = material(system, m.material_id)
    assert current.status == MaterialStatus.PENDING
    assert current.available_copies == 0
