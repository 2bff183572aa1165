from datetime import datetime, timedelta, timezone

import pytest

from circdesk import LibrarySystem, Principal, Role
from circdesk.settings import Settings

NOW = datetime(2026, 3, 2, 9, 0, tzinfo=timezone.utc)

ADMIN = Principal("admin_1", Role.ADMIN)
MEMBER = Principal("user_1")
OTHER = Principal("user_2")


def days(n: float) -> timedelta:
    return timedelta(days=n)


@pytest.fixture()
def settings():
    return Settings()


@pytest.fixture()
def system(settings):
    return LibrarySystem(settings)


@pytest.fixture()
def admin():
    return ADMIN


@pytest.fixture()
def member():
    return MEMBER


@pytest.fixture()
def other():
    return OTHER


@pytest.fixture()
def make_material(system):
    counter = {"n": 0}

    def _make(
        copies: int = 1, name: str = "Clean Code", author: str = "Robert C. Martin"
    ):
        counter["n"] += 1
        return system.add_material(
            ADMIN, name, f"ACC-{counter['n']:04d}", author, copies=copies
        )

    return _make


def material(system, material_id):
    return system.get_material(material_id)


def invariant_holds(system, material_id) -> bool:
    with system.store.unit_of_work() as uow:
        expected, stored = system.ledger.check_invariant(uow, material_id)
    return expected == stored
