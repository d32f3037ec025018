"""
Permission Templates — inheritance of default values from named templates.

A template applies to every permission whose operation has the template's
name, in every scope. Only absent or empty values are filled in; a value set
explicitly on the permission always wins.
"""

from __future__ import annotations

import copy
import logging
from typing import Any

from authz_provision.permissions.schema import NormalizedConfig, PermissionSpec, iter_scopes

logger = logging.getLogger(__name__)

INHERITABLE_FIELDS = (
    "label",
    "detail_label",
    "translation_domain",
    "contexts",
    "attached_roles",
)


def _is_empty(value: Any) -> bool:
    return value is None or value == "" or value == []


def include_template_values(
    templates: dict[str, PermissionSpec],
    permissions: dict[str, PermissionSpec],
) -> int:
    """
    Fill empty fields of `permissions` from the template of the same name.

    Returns:
        The number of field values copied from templates.
    """
    copied = 0
    for operation, spec in permissions.items():
        template = templates.get(operation)
        if template is None:
            continue

        for name in INHERITABLE_FIELDS:
            value = getattr(template, name)
            if not _is_empty(value) and _is_empty(getattr(spec, name)):
                setattr(spec, name, copy.copy(value))
                copied += 1
    return copied


def resolve_templates(config: NormalizedConfig) -> NormalizedConfig:
    """Apply the configuration's templates to the global, class and field scopes in place."""
    if not config.templates:
        return config

    copied = 0
    for _scope, permissions in iter_scopes(config):
        copied += include_template_values(config.templates, permissions)

    logger.debug(
        "Permission templates applied: templates=%d values=%d",
        len(config.templates), copied,
    )
    return config
