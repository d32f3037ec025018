"""
Permission Configuration Schema — Pydantic models for the declarative
permission document and its normalization into canonical structures.

A permission document has three optional top-level nodes:

    permission_templates:      # defaults inherited by matching operations
      view: {label: "View", translation_domain: "permissions"}
    permissions:               # global scope
      view: [ROLE_USER]        # shorthand for {attached_roles: [...]}
    permission_classes:
      App\\Entity\\Invoice:    # class scope
        permissions:
          edit: {label: "Edit invoice", attached_roles: [ROLE_ADMIN]}
        fields:
          amount:              # field scope, shorthand for {permissions: {...}}
            read: [ROLE_ACCOUNTANT]

Several documents may be given; they are merged in order before validation.
"""

from __future__ import annotations

import copy
from dataclasses import dataclass
from typing import Any, Iterator, Mapping, Sequence

from pydantic import (
    BaseModel,
    ConfigDict,
    Field,
    ValidationError,
    field_validator,
    model_validator,
)

from authz_provision.errors import SchemaError

# (operation, class name, field name) — the identity of a permission record
PermissionKey = tuple[str, str | None, str | None]


def _at_least_one(value: Any) -> Any:
    if value is None or (isinstance(value, Mapping) and not value):
        raise ValueError("should contain at least one entry")
    return value


# ════════════════════════════════════════════════════════════════
# Models
# ════════════════════════════════════════════════════════════════


class PermissionSpec(BaseModel):
    """
    One permission entry, as declared under an operation key.

    Also used for templates, where every field may be empty.
    """

    model_config = ConfigDict(extra="forbid")

    operation: str = Field(default="", description="Operation name, bound from the mapping key")
    label: str | None = Field(default=None, description="Human-readable label")
    detail_label: str | None = Field(default=None, description="Longer description label")
    translation_domain: str | None = Field(
        default=None, description="Translation domain for the labels"
    )
    contexts: list[str] = Field(
        default_factory=list, description="Ordered contexts the permission applies to"
    )
    attached_roles: list[str] = Field(
        default_factory=list, description="Organization-less roles granted this permission"
    )

    @model_validator(mode="before")
    @classmethod
    def _expand_role_shorthand(cls, value: Any) -> Any:
        # `view: [ROLE_USER]` and `view: ~` are both valid entries
        if value is None:
            return {}
        if isinstance(value, (list, tuple)):
            return {"attached_roles": list(value)}
        return value

    @field_validator("contexts", "attached_roles", mode="before")
    @classmethod
    def _null_as_empty(cls, value: Any) -> Any:
        return [] if value is None else value

    @field_validator("attached_roles")
    @classmethod
    def _unique_roles(cls, value: list[str]) -> list[str]:
        return list(dict.fromkeys(value))


class _ScopeModel(BaseModel):
    """Common base of every node holding an operation → permission mapping."""

    model_config = ConfigDict(extra="forbid")

    permissions: dict[str, PermissionSpec] = Field(default_factory=dict)

    @field_validator("permissions", mode="before")
    @classmethod
    def _require_permissions(cls, value: Any) -> Any:
        return _at_least_one(value)

    @model_validator(mode="after")
    def _bind_operations(self) -> _ScopeModel:
        for operation, spec in self.permissions.items():
            spec.operation = operation
        return self


class FieldScope(_ScopeModel):
    """Permissions of a single field of a class."""

    @model_validator(mode="before")
    @classmethod
    def _expand_permissions_shorthand(cls, value: Any) -> Any:
        if not isinstance(value, Mapping) or "permissions" not in value:
            return {"permissions": value}
        return value


class ClassScope(_ScopeModel):
    """Permissions of a class, plus per-field overrides."""

    fields: dict[str, FieldScope] = Field(default_factory=dict)

    @model_validator(mode="before")
    @classmethod
    def _null_as_empty(cls, value: Any) -> Any:
        return {} if value is None else value

    @field_validator("fields", mode="before")
    @classmethod
    def _require_fields(cls, value: Any) -> Any:
        return _at_least_one(value)


class NormalizedConfig(_ScopeModel):
    """The canonical, fully-defaulted permission configuration."""

    templates: dict[str, PermissionSpec] = Field(
        default_factory=dict, alias="permission_templates"
    )
    classes: dict[str, ClassScope] = Field(default_factory=dict, alias="permission_classes")

    @field_validator("templates", "classes", mode="before")
    @classmethod
    def _require_entries(cls, value: Any) -> Any:
        return _at_least_one(value)

    @model_validator(mode="after")
    def _bind_template_operations(self) -> NormalizedConfig:
        for operation, template in self.templates.items():
            template.operation = operation
        return self


# ════════════════════════════════════════════════════════════════
# Scopes
# ════════════════════════════════════════════════════════════════


@dataclass(frozen=True)
class Scope:
    """Where a permission applies: global (no class), a class, or a class field."""

    class_name: str | None = None
    field: str | None = None

    def key(self, operation: str) -> PermissionKey:
        """Identity triple of `operation` declared in this scope."""
        return (operation, self.class_name, self.field)

    def __str__(self) -> str:
        if self.class_name is None:
            return "global"
        if self.field is None:
            return self.class_name
        return f"{self.class_name}::{self.field}"


GLOBAL_SCOPE = Scope()


def iter_scopes(config: NormalizedConfig) -> Iterator[tuple[Scope, dict[str, PermissionSpec]]]:
    """
    Walk every permission scope of a configuration in a deterministic order.

    Global first, then each class in document order, each class followed by
    its fields in document order.
    """
    yield GLOBAL_SCOPE, config.permissions
    for class_name, class_scope in config.classes.items():
        yield Scope(class_name), class_scope.permissions
        for field_name, field_scope in class_scope.fields.items():
            yield Scope(class_name, field_name), field_scope.permissions


# ════════════════════════════════════════════════════════════════
# Normalization
# ════════════════════════════════════════════════════════════════


def _expand_entry(value: Any, path: str) -> Any:
    if value is None:
        return {}
    if isinstance(value, (list, tuple)):
        return {"attached_roles": list(value)}
    if isinstance(value, Mapping) and "operation" in value:
        raise SchemaError("The operation is taken from the entry key", path=f"{path}.operation")
    return value


def _expand_entries(value: Any, path: str) -> Any:
    if not isinstance(value, Mapping):
        return value
    return {key: _expand_entry(entry, f"{path}.{key}") for key, entry in value.items()}


def _expand_scope(value: Any, path: str) -> Any:
    if not isinstance(value, Mapping) or "permissions" not in value:
        return value
    expanded = dict(value)
    expanded["permissions"] = _expand_entries(value["permissions"], f"{path}.permissions")
    return expanded


def _expand_class(value: Any, path: str) -> Any:
    if value is None:
        return {}
    expanded = _expand_scope(value, path)
    if not isinstance(expanded, Mapping) or not isinstance(expanded.get("fields"), Mapping):
        return expanded
    fields = {}
    for name, scope in expanded["fields"].items():
        if not isinstance(scope, Mapping) or "permissions" not in scope:
            scope = {"permissions": scope}
        fields[name] = _expand_scope(scope, f"{path}.fields.{name}")
    return {**expanded, "fields": fields}


def _expand_document(document: Mapping[str, Any]) -> dict[str, Any]:
    """Bring every entry of one document to its mapping form, so documents merge entry by entry."""
    expanded = dict(document)
    for node in ("permission_templates", "permissions"):
        if node in expanded:
            expanded[node] = _expand_entries(expanded[node], node)
    classes = expanded.get("permission_classes")
    if isinstance(classes, Mapping):
        expanded["permission_classes"] = {
            name: _expand_class(value, f"permission_classes.{name}")
            for name, value in classes.items()
        }
    return expanded


def _merge_into(target: dict[str, Any], source: Mapping[str, Any]) -> None:
    for key, value in source.items():
        current = target.get(key)
        if isinstance(current, dict) and isinstance(value, Mapping):
            _merge_into(current, value)
        elif isinstance(current, list) and isinstance(value, list):
            for item in value:
                if item not in current:
                    current.append(copy.deepcopy(item))
        elif isinstance(value, Mapping):
            target[key] = {}
            _merge_into(target[key], value)
        else:
            target[key] = copy.deepcopy(value)


def merge_documents(documents: Sequence[Any]) -> dict[str, Any]:
    """
    Merge raw configuration documents in order.

    Each document's shorthand entries are expanded first, so `view: [admin]`
    in one document and `view: {label: View}` in the next combine into one
    entry. Mappings merge recursively, later scalars win, and lists are
    concatenated without repeating items. Empty documents (``None``) are
    skipped.
    """
    merged: dict[str, Any] = {}
    for index, document in enumerate(documents):
        if document is None:
            continue
        if not isinstance(document, Mapping):
            raise SchemaError(
                f"Configuration document #{index} must be a mapping, "
                f"got {type(document).__name__}"
            )
        _merge_into(merged, _expand_document(document))
    return merged


def _format_loc(loc: tuple[Any, ...]) -> str:
    return ".".join(str(part) for part in loc)


def _schema_error(exc: ValidationError) -> SchemaError:
    errors = exc.errors()
    first = errors[0]
    message = first["msg"]
    if len(errors) > 1:
        message += f" (and {len(errors) - 1} more errors)"
    return SchemaError(message, path=_format_loc(first["loc"]))


def normalize_config(documents: Mapping[str, Any] | Sequence[Any] | None) -> NormalizedConfig:
    """
    Normalize one or more raw permission documents.

    Args:
        documents: A parsed YAML mapping, or a sequence of them to merge.

    Returns:
        The validated NormalizedConfig, templates not yet applied.

    Raises:
        SchemaError: If the merged document does not match the schema.
    """
    if isinstance(documents, (str, bytes)):
        raise SchemaError("Configuration must be parsed before normalization")
    if documents is None or isinstance(documents, Mapping):
        documents = [documents]

    raw = merge_documents(documents)
    try:
        return NormalizedConfig.model_validate(raw)
    except ValidationError as exc:
        raise _schema_error(exc) from exc
