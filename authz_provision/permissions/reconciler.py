"""
Permission Reconciler — diff the declared permissions against storage.

The diff is a pure function over the configuration and the existing records:
it creates records for identities it has never seen, updates records whose
labels or contexts changed, and collects exactly those records into one
upsert batch. Records that already match are left untouched, so a second
load of the same configuration writes nothing.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import Any, Callable, Iterable

from authz_provision.errors import PersistenceError
from authz_provision.permissions.schema import (
    NormalizedConfig,
    PermissionKey,
    PermissionSpec,
    iter_scopes,
)
from authz_provision.storage.repository import Domain

logger = logging.getLogger(__name__)

# (class name, field name) → operation → record
PermissionIndex = dict[tuple[str | None, str | None], dict[str, Any]]


@dataclass
class PermissionChanges:
    """Accumulated result of diffing the configuration against storage."""

    permissions: dict[PermissionKey, Any] = field(default_factory=dict)
    upserts: list[Any] = field(default_factory=list)
    has_new: bool = False
    has_updated: bool = False


def index_permissions(existing: Iterable[Any]) -> PermissionIndex:
    """Index existing permission records by scope, then by operation."""
    index: PermissionIndex = {}
    for record in existing:
        index.setdefault((record.class_name, record.field), {})[record.operation] = record
    return index


def inject_values(record: Any, spec: PermissionSpec) -> bool:
    """
    Copy the mutable values of `spec` onto `record`.

    Returns:
        True if at least one value differed and was overwritten.
    """
    updated = False

    if record.contexts is None or list(record.contexts) != spec.contexts:
        record.contexts = list(spec.contexts)
        updated = True

    for name in ("label", "detail_label", "translation_domain"):
        if getattr(record, name) != getattr(spec, name):
            setattr(record, name, getattr(spec, name))
            updated = True

    return updated


def diff_permissions(
    config: NormalizedConfig,
    existing: Iterable[Any],
    new_instance: Callable[[], Any],
) -> PermissionChanges:
    """
    Decide which permission records must be created or updated.

    Args:
        config: Normalized configuration with templates already applied.
        existing: Every permission record currently in storage.
        new_instance: Factory returning a blank permission record.

    Returns:
        PermissionChanges mapping every configured identity to its record,
        with the created/updated records in `upserts`.
    """
    index = index_permissions(existing)
    changes = PermissionChanges()

    for scope, permissions in iter_scopes(config):
        scoped = index.get((scope.class_name, scope.field), {})

        for operation, spec in permissions.items():
            record = scoped.get(operation)

            if record is None:
                record = new_instance()
                record.operation = operation
                record.class_name = scope.class_name
                record.field = scope.field
                inject_values(record, spec)
                changes.upserts.append(record)
                changes.has_new = True
                logger.info("New permission: %s (%s)", operation, scope)
            elif inject_values(record, spec):
                changes.upserts.append(record)
                changes.has_updated = True
                logger.info("Updated permission: %s (%s)", operation, scope)

            changes.permissions[scope.key(operation)] = record

    return changes


class PermissionReconciler:
    """Applies the permission diff through a permission domain."""

    def __init__(self, domain: Domain) -> None:
        self.domain = domain

    def reconcile(self, config: NormalizedConfig) -> PermissionChanges:
        """
        Create or update the configured permissions in one batch.

        Raises:
            PersistenceError: If the domain rejects any record of the batch.
        """
        changes = diff_permissions(config, self.domain.find_all(), self.domain.new_instance)

        if changes.upserts:
            result = self.domain.upserts(changes.upserts)
            if result.has_errors:
                raise PersistenceError(result, action="permission upsert")

        logger.info(
            "Permissions reconciled: configured=%d written=%d",
            len(changes.permissions), len(changes.upserts),
        )
        return changes
