"""
Permission Loader — provision permissions and role grants from configuration.

Sequence of a load:
1. Normalize and merge the raw documents
2. Apply permission templates
3. Resolve the attached roles (fails before any write if one is missing)
4. Create/update permissions
5. Attach permissions to roles

The loader does not commit. Run it inside `Database.unit_of_work()` so a
failure at any step leaves storage unchanged.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Mapping, Sequence

import yaml

from authz_provision.errors import SchemaError
from authz_provision.permissions.reconciler import PermissionReconciler
from authz_provision.permissions.roles import RoleAttachmentReconciler
from authz_provision.permissions.schema import normalize_config
from authz_provision.permissions.templates import resolve_templates
from authz_provision.storage.repository import Domain

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class LoadResult:
    """What a permission load changed."""

    has_new_permissions: bool = False
    has_updated_permissions: bool = False
    has_updated_roles: bool = False

    @property
    def changed(self) -> bool:
        return self.has_new_permissions or self.has_updated_permissions or self.has_updated_roles


class PermissionLoader:
    """Loads already-parsed permission documents into the permission and role domains."""

    def __init__(self, permission_domain: Domain, role_domain: Domain) -> None:
        self.permissions = PermissionReconciler(permission_domain)
        self.roles = RoleAttachmentReconciler(role_domain)

    def load(self, documents: Mapping[str, Any] | Sequence[Any] | None) -> LoadResult:
        """
        Reconcile storage with the given permission documents.

        Raises:
            SchemaError: The documents do not match the permission schema.
            MissingRoleError: An attached role does not exist.
            PersistenceError: Storage rejected permissions or roles.
        """
        config = resolve_templates(normalize_config(documents))
        roles_by_name = self.roles.resolve_roles(config)

        permission_changes = self.permissions.reconcile(config)
        role_changes = self.roles.reconcile(
            config, permission_changes.permissions, roles_by_name
        )

        result = LoadResult(
            has_new_permissions=permission_changes.has_new,
            has_updated_permissions=permission_changes.has_updated,
            has_updated_roles=role_changes.has_updated,
        )
        logger.info(
            "Permission load finished: new=%s updated=%s roles_updated=%s",
            result.has_new_permissions, result.has_updated_permissions, result.has_updated_roles,
        )
        return result


def read_yaml(path: str | Path) -> Any:
    """Parse a YAML file, reporting unreadable or malformed files as SchemaError."""
    path = Path(path)
    try:
        with path.open(encoding="utf-8") as handle:
            return yaml.safe_load(handle)
    except OSError as exc:
        raise SchemaError(
            f"Cannot read configuration file: {exc.strerror or exc}", path=str(path)
        ) from exc
    except yaml.YAMLError as exc:
        raise SchemaError(f"Malformed YAML: {exc}", path=str(path)) from exc


class YamlPermissionLoader(PermissionLoader):
    """PermissionLoader reading its documents from YAML files."""

    def load_file(self, *paths: str | Path) -> LoadResult:
        """Load and merge the given YAML files, in order."""
        documents = [read_yaml(path) for path in paths]
        logger.debug("Loaded %d permission file(s)", len(documents))
        return self.load(documents)
