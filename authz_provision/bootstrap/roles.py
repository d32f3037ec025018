"""
System Role Loader — idempotently create the organization-less roles.

Permissions can only be attached to roles that already exist, so the role
files are loaded before the permission file. Two document shapes are
accepted and may be mixed across files:

    ROLE_ADMIN: {label: Administrator}     # mapping name → values
    ROLE_USER: ~

    - ROLE_ADMIN                           # list of names or entries
    - {name: ROLE_USER, label: User}
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Mapping, Sequence

from pydantic import BaseModel, ConfigDict, Field, TypeAdapter, ValidationError, model_validator

from authz_provision.errors import PersistenceError, SchemaError
from authz_provision.permissions.loader import read_yaml
from authz_provision.storage.repository import Domain

logger = logging.getLogger(__name__)

ROLE_FILE_PATTERNS = ("security_roles.yaml", "security_roles_*.yaml")


class RoleSpec(BaseModel):
    """A system role as declared in a role file."""

    model_config = ConfigDict(extra="forbid")

    name: str = Field(default="", description="Role name, bound from the mapping key")
    label: str | None = None

    @model_validator(mode="before")
    @classmethod
    def _expand_shorthand(cls, value: Any) -> Any:
        if value is None:
            return {}
        if isinstance(value, str):
            return {"label": value}
        return value


_ROLE_MAP = TypeAdapter(dict[str, RoleSpec])


def _as_mapping(index: int, document: Any) -> Mapping[str, Any]:
    if isinstance(document, Mapping):
        return document
    if isinstance(document, list):
        entries: dict[str, Any] = {}
        for position, item in enumerate(document):
            if isinstance(item, str):
                entries[item] = None
            elif isinstance(item, Mapping) and isinstance(item.get("name"), str):
                entries[item["name"]] = {k: v for k, v in item.items() if k != "name"}
            else:
                raise SchemaError(
                    "Role entries must be a name or have a 'name' key",
                    path=f"{index}.{position}",
                )
        return entries
    raise SchemaError(
        f"Role document must be a mapping or a list, got {type(document).__name__}",
        path=str(index),
    )


def normalize_roles(documents: Sequence[Any]) -> dict[str, RoleSpec]:
    """Merge role documents in order and validate them. Later values win."""
    merged: dict[str, Any] = {}
    for index, document in enumerate(documents):
        if document is None:
            continue
        for name, value in _as_mapping(index, document).items():
            current = merged.get(name)
            if isinstance(current, Mapping) and isinstance(value, Mapping):
                merged[name] = {**current, **value}
            else:
                merged[name] = value

    try:
        roles = _ROLE_MAP.validate_python(merged)
    except ValidationError as exc:
        error = exc.errors()[0]
        raise SchemaError(error["msg"], path=".".join(str(p) for p in error["loc"])) from exc

    for name, spec in roles.items():
        spec.name = name
    return roles


def find_role_files(directory: str | Path) -> list[Path]:
    """`security_roles.yaml` first, then the `security_roles_*.yaml` files sorted by name."""
    directory = Path(directory)
    found: list[Path] = []
    for pattern in ROLE_FILE_PATTERNS:
        for path in sorted(directory.glob(pattern)):
            if path.is_file() and path not in found:
                found.append(path)
    return found


@dataclass(frozen=True)
class RoleLoadResult:
    """What a role load changed."""

    configured: int = 0
    has_new_roles: bool = False
    has_updated_roles: bool = False

    @property
    def changed(self) -> bool:
        return self.has_new_roles or self.has_updated_roles


class RoleLoader:
    """Creates missing system roles and keeps their labels in sync. Never deletes."""

    def __init__(self, domain: Domain) -> None:
        self.domain = domain

    def load(self, documents: Sequence[Any]) -> RoleLoadResult:
        """
        Reconcile the system roles with the given documents.

        Raises:
            SchemaError: A document has the wrong shape.
            PersistenceError: Storage rejected a role.
        """
        specs = normalize_roles(documents)
        existing = {role.name: role for role in self.domain.find_by(organization_id=None)}

        upserts = []
        has_new = has_updated = False
        for name, spec in specs.items():
            role = existing.get(name)
            if role is None:
                upserts.append(self.domain.new_instance(name=name, label=spec.label))
                has_new = True
                logger.info("New system role: %s", name)
            elif role.label != spec.label:
                role.label = spec.label
                upserts.append(role)
                has_updated = True
                logger.info("Updated system role: %s", name)

        if upserts:
            result = self.domain.upserts(upserts)
            if result.has_errors:
                raise PersistenceError(result, action="role upsert")

        return RoleLoadResult(
            configured=len(specs), has_new_roles=has_new, has_updated_roles=has_updated,
        )

    def load_files(self, paths: Sequence[str | Path]) -> RoleLoadResult:
        return self.load([read_yaml(path) for path in paths])
