"""Shared fixtures: a fresh SQLite-backed Database per test."""

from __future__ import annotations

import pytest

from authz_provision.storage.models import RoleDB
from authz_provision.storage.repository import Database


@pytest.fixture
def database(tmp_path):
    db = Database(f"sqlite:///{tmp_path / 'authz.db'}")
    db.initialize()
    yield db
    db.engine.dispose()


@pytest.fixture
def make_roles(database):
    """Create organization-less roles by name."""

    def _make(*names: str) -> None:
        with database.unit_of_work() as uow:
            uow.session.add_all([RoleDB(name=name) for name in names])

    return _make
