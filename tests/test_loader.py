"""
Tests for the permission loader against a real SQLite database.

Validates:
- The documented Invoice scenario and its idempotent re-run
- Change detection on label and context edits
- Identity stability (no duplicate records)
- Missing roles abort the load with storage unchanged
- Rejected permission or role batches roll the whole load back
- YAML file loading and merging
"""

from __future__ import annotations

import pytest
from sqlalchemy import func, select

from authz_provision.errors import MissingRoleError, PersistenceError, SchemaError
from authz_provision.permissions.loader import LoadResult, PermissionLoader, YamlPermissionLoader
from authz_provision.storage.models import PermissionDB, RoleDB
from authz_provision.storage.validation import EntityValidator

SCENARIO = {
    "permissions": {"view": ["admin"]},
    "permission_classes": {
        "Invoice": {
            "permissions": {
                "edit": {"attached_roles": ["admin"], "label": "Edit Invoice"},
            },
        },
    },
}


def _load(database, documents) -> LoadResult:
    with database.unit_of_work() as uow:
        loader = PermissionLoader(uow.domain(PermissionDB), uow.domain(RoleDB))
        return loader.load(documents)


def _snapshot(database):
    """Permission rows and role grants, comparable across loads."""
    with database.unit_of_work() as uow:
        permissions = sorted(
            (p.operation, p.class_name or "", p.field or "", p.label or "",
             p.detail_label or "", p.translation_domain or "", tuple(p.contexts),
             str(p.id), str(p.updated_at))
            for p in uow.domain(PermissionDB).find_all()
        )
        roles = sorted(
            (r.name, tuple(sorted(str(p.id) for p in r.permissions)), str(r.updated_at))
            for r in uow.domain(RoleDB).find_all()
        )
    return permissions, roles


def _permission_count(database) -> int:
    with database.unit_of_work() as uow:
        return uow.session.execute(select(func.count()).select_from(PermissionDB)).scalar()


class TestInvoiceScenario:

    def test_first_load(self, database, make_roles):
        make_roles("admin")
        result = _load(database, SCENARIO)

        assert result == LoadResult(
            has_new_permissions=True,
            has_updated_permissions=False,
            has_updated_roles=True,
        )
        assert result.changed is True

        with database.unit_of_work() as uow:
            permissions = {p.identity: p for p in uow.domain(PermissionDB).find_all()}
            assert set(permissions) == {("view", None, None), ("edit", "Invoice", None)}
            assert permissions[("edit", "Invoice", None)].label == "Edit Invoice"

            admin = uow.domain(RoleDB).find_by(name="admin")[0]
            assert {p.identity for p in admin.permissions} == set(permissions)

    def test_second_load_is_noop(self, database, make_roles):
        make_roles("admin")
        _load(database, SCENARIO)
        before = _snapshot(database)

        result = _load(database, SCENARIO)

        assert result == LoadResult()
        assert result.changed is False
        assert _snapshot(database) == before


class TestChangeDetection:

    def setup_method(self):
        self.config = {
            "permissions": {
                "view": {"label": "View", "contexts": ["organization"], "attached_roles": ["admin"]},
            },
        }

    def test_label_change_updates_single_record(self, database, make_roles):
        make_roles("admin")
        _load(database, self.config)

        self.config["permissions"]["view"]["label"] = "See"
        result = _load(database, self.config)

        assert result.has_updated_permissions is True
        assert result.has_new_permissions is False
        assert result.has_updated_roles is False
        assert _permission_count(database) == 1
        with database.unit_of_work() as uow:
            assert uow.domain(PermissionDB).find_all()[0].label == "See"

    def test_contexts_change(self, database, make_roles):
        make_roles("admin")
        _load(database, self.config)

        self.config["permissions"]["view"]["contexts"] = ["organization", "user"]
        result = _load(database, self.config)

        assert result.has_updated_permissions is True
        with database.unit_of_work() as uow:
            assert uow.domain(PermissionDB).find_all()[0].contexts == ["organization", "user"]

    def test_new_role_attachment_only(self, database, make_roles):
        make_roles("admin", "user")
        _load(database, self.config)

        self.config["permissions"]["view"]["attached_roles"] = ["admin", "user"]
        result = _load(database, self.config)

        assert result == LoadResult(has_updated_roles=True)
        with database.unit_of_work() as uow:
            user = uow.domain(RoleDB).find_by(name="user")[0]
            admin = uow.domain(RoleDB).find_by(name="admin")[0]
            assert [p.operation for p in user.permissions] == ["view"]
            assert [p.operation for p in admin.permissions] == ["view"]

    def test_removed_role_is_not_revoked(self, database, make_roles):
        make_roles("admin", "user")
        self.config["permissions"]["view"]["attached_roles"] = ["admin", "user"]
        _load(database, self.config)

        self.config["permissions"]["view"]["attached_roles"] = ["admin"]
        result = _load(database, self.config)

        assert result.has_updated_roles is False
        with database.unit_of_work() as uow:
            user = uow.domain(RoleDB).find_by(name="user")[0]
            assert [p.operation for p in user.permissions] == ["view"]


class TestTemplatesThroughLoader:

    def test_template_values_persisted(self, database, make_roles):
        make_roles("viewer")
        _load(database, {
            "permission_templates": {
                "view": {"label": "View", "translation_domain": "permissions", "attached_roles": ["viewer"]},
            },
            "permission_classes": {"Invoice": {"permissions": {"view": None}}},
        })
        with database.unit_of_work() as uow:
            record = uow.domain(PermissionDB).find_all()[0]
            assert record.identity == ("view", "Invoice", None)
            assert record.label == "View"
            assert record.translation_domain == "permissions"
            viewer = uow.domain(RoleDB).find_by(name="viewer")[0]
            assert viewer.permissions == [record]


class TestMissingRoles:

    def test_all_missing_roles_listed(self, database, make_roles):
        make_roles("admin")
        config = {
            "permissions": {"view": ["admin", "ghost"]},
            "permission_classes": {"Invoice": {"permissions": {"edit": ["phantom"]}}},
        }
        with pytest.raises(MissingRoleError) as exc_info:
            _load(database, config)

        assert exc_info.value.missing == ["ghost", "phantom"]
        assert '"ghost", "phantom"' in str(exc_info.value)
        assert _permission_count(database) == 0
        with database.unit_of_work() as uow:
            assert uow.domain(RoleDB).find_by(name="admin")[0].permissions == []

    def test_organization_roles_do_not_count(self, database):
        from authz_provision.storage.models import OrganizationDB

        with database.unit_of_work() as uow:
            organization = OrganizationDB(name="acme")
            uow.session.add_all([organization, RoleDB(name="admin", organization=organization)])

        with pytest.raises(MissingRoleError):
            _load(database, SCENARIO)
        assert _permission_count(database) == 0


class TestPersistenceFailures:

    def test_rejected_batch_rolls_back(self, tmp_path):
        from authz_provision.storage.repository import Database
        from authz_provision.storage.validation import PermissionRules

        class StrictPermissionRules(PermissionRules):
            label: str

        database = Database(
            f"sqlite:///{tmp_path / 'strict.db'}",
            validator=EntityValidator({PermissionDB: StrictPermissionRules}),
        )
        database.initialize()

        with pytest.raises(PersistenceError) as exc_info:
            _load(database, {"permissions": {"view": {"label": "View"}, "edit": None}})

        assert len(exc_info.value.errors) == 1
        assert exc_info.value.errors[0].entity.operation == "edit"
        assert _permission_count(database) == 0

    def test_rejected_role_batch_rolls_back_permissions(self, tmp_path):
        from authz_provision.storage.repository import Database
        from authz_provision.storage.validation import DEFAULT_RULES, RoleRules

        class StrictRoleRules(RoleRules):
            label: str

        database = Database(
            f"sqlite:///{tmp_path / 'strict.db'}",
            validator=EntityValidator({**DEFAULT_RULES, RoleDB: StrictRoleRules}),
        )
        database.initialize()
        with database.unit_of_work() as uow:
            uow.session.add(RoleDB(name="admin"))

        with pytest.raises(PersistenceError) as exc_info:
            _load(database, {"permissions": {"view": ["admin"]}})

        assert exc_info.value.errors[0].entity.name == "admin"
        assert _permission_count(database) == 0
        with database.unit_of_work() as uow:
            assert uow.domain(RoleDB).find_all()[0].permissions == []


class TestYamlLoader:

    def test_load_and_merge_files(self, database, make_roles, tmp_path):
        make_roles("admin", "user")
        first = tmp_path / "first.yaml"
        first.write_text("permissions:\n  view: [admin]\n", encoding="utf-8")
        second = tmp_path / "second.yaml"
        second.write_text(
            "permissions:\n"
            "  view: [user]\n"
            "permission_classes:\n"
            "  App\\Entity\\Invoice:\n"
            "    fields:\n"
            "      amount:\n"
            "        read: [admin]\n",
            encoding="utf-8",
        )

        with database.unit_of_work() as uow:
            loader = YamlPermissionLoader(uow.domain(PermissionDB), uow.domain(RoleDB))
            result = loader.load_file(first, second)

        assert result.has_new_permissions is True
        with database.unit_of_work() as uow:
            identities = {p.identity for p in uow.domain(PermissionDB).find_all()}
            assert identities == {
                ("view", None, None),
                ("read", "App\\Entity\\Invoice", "amount"),
            }
            user = uow.domain(RoleDB).find_by(name="user")[0]
            assert [p.operation for p in user.permissions] == ["view"]

    def test_missing_file(self, database, tmp_path):
        with database.unit_of_work() as uow:
            loader = YamlPermissionLoader(uow.domain(PermissionDB), uow.domain(RoleDB))
            with pytest.raises(SchemaError):
                loader.load_file(tmp_path / "absent.yaml")

    def test_malformed_yaml(self, database, tmp_path):
        path = tmp_path / "broken.yaml"
        path.write_text("permissions: [unclosed\n", encoding="utf-8")
        with pytest.raises(SchemaError):
            with database.unit_of_work() as uow:
                loader = YamlPermissionLoader(uow.domain(PermissionDB), uow.domain(RoleDB))
                loader.load_file(path)
