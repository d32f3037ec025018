"""
Role Attachment — grant configured permissions to the system roles.

Attachment only ever adds permissions to roles. A role is written back only
when it gained at least one permission during the load.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import Any

from authz_provision.errors import MissingRoleError, PersistenceError
from authz_provision.permissions.schema import NormalizedConfig, PermissionKey, iter_scopes
from authz_provision.storage.repository import Domain

logger = logging.getLogger(__name__)


@dataclass
class RoleChanges:
    """Roles touched by an attachment pass, in first-touch order."""

    updated_roles: dict[str, Any] = field(default_factory=dict)
    has_updated: bool = False


def find_used_roles(config: NormalizedConfig) -> list[str]:
    """Distinct role names attached anywhere in the configuration, in traversal order."""
    used: dict[str, None] = {}
    for _scope, permissions in iter_scopes(config):
        for spec in permissions.values():
            for role_name in spec.attached_roles:
                used.setdefault(role_name)
    return list(used)


def attach_roles(
    config: NormalizedConfig,
    permissions: dict[PermissionKey, Any],
    roles_by_name: dict[str, Any],
) -> RoleChanges:
    """
    Add every configured permission to its attached roles.

    Args:
        config: Normalized configuration with templates already applied.
        permissions: Identity → record map produced by the permission diff.
        roles_by_name: Every role referenced by the configuration.

    Returns:
        RoleChanges with the roles that gained permissions.
    """
    changes = RoleChanges()

    for scope, specs in iter_scopes(config):
        for operation, spec in specs.items():
            if not spec.attached_roles:
                continue

            permission = permissions[scope.key(operation)]
            for role_name in spec.attached_roles:
                role = roles_by_name[role_name]
                if role.has_permission(permission):
                    continue

                role.add_permission(permission)
                changes.updated_roles.setdefault(role.name, role)
                changes.has_updated = True
                logger.info("Permission %s (%s) attached to role %s", operation, scope, role_name)

    return changes


class RoleAttachmentReconciler:
    """Resolves the attached roles and writes back those that changed."""

    def __init__(self, domain: Domain) -> None:
        self.domain = domain

    def resolve_roles(self, config: NormalizedConfig) -> dict[str, Any]:
        """
        Load every organization-less role the configuration references.

        Raises:
            MissingRoleError: Listing every referenced name absent from storage.
        """
        used = find_used_roles(config)
        if not used:
            return {}

        roles = {
            role.name: role
            for role in self.domain.find_by(organization_id=None, name=used)
        }
        missing = [name for name in used if name not in roles]
        if missing:
            raise MissingRoleError(missing)
        return roles

    def reconcile(
        self,
        config: NormalizedConfig,
        permissions: dict[PermissionKey, Any],
        roles_by_name: dict[str, Any],
    ) -> RoleChanges:
        """
        Attach permissions and update the touched roles in one batch.

        Raises:
            PersistenceError: If the domain rejects any role of the batch.
        """
        changes = attach_roles(config, permissions, roles_by_name)

        if changes.updated_roles:
            result = self.domain.updates(list(changes.updated_roles.values()))
            if result.has_errors:
                raise PersistenceError(result, action="role update")

        logger.info("Roles reconciled: updated=%d", len(changes.updated_roles))
        return changes
