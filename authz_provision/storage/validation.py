"""
Entity Validation — domain rules checked before anything is persisted.

Rules are declared as Pydantic models and read straight from the entity's
attributes. A failing entity yields a list of Violations; the caller decides
whether that becomes a ValidationError or a rejected batch entry.
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import Any

from pydantic import BaseModel, ConfigDict, Field, field_validator
from pydantic import ValidationError as PydanticValidationError

from authz_provision.storage.models import (
    OrganizationDB,
    OrganizationUserDB,
    PermissionDB,
    RoleDB,
    UserDB,
)

NAME_PATTERN = r"^[a-z0-9][a-z0-9_-]*$"
EMAIL_PATTERN = r"^[^@\s]+@[^@\s]+\.[^@\s]+$"


@dataclass(frozen=True)
class Violation:
    """A single broken rule on an entity attribute."""

    path: str
    message: str

    def __str__(self) -> str:
        return f"{self.path}: {self.message}" if self.path else self.message


# ════════════════════════════════════════════════════════════════
# Rules
# ════════════════════════════════════════════════════════════════


class _Rules(BaseModel):
    model_config = ConfigDict(from_attributes=True, extra="ignore")


class PermissionRules(_Rules):
    operation: str = Field(min_length=1, max_length=255)
    class_name: str | None = Field(default=None, min_length=1, max_length=255)
    field: str | None = Field(default=None, min_length=1, max_length=255)
    label: str | None = Field(default=None, max_length=255)
    detail_label: str | None = None
    translation_domain: str | None = Field(default=None, max_length=255)
    contexts: list[str] = Field(default_factory=list)


class RoleRules(_Rules):
    name: str = Field(min_length=1, max_length=255)
    label: str | None = Field(default=None, max_length=255)


class OrganizationRules(_Rules):
    name: str = Field(min_length=2, max_length=128, pattern=NAME_PATTERN)
    label: str | None = Field(default=None, max_length=255)


class UserRules(_Rules):
    username: str = Field(min_length=1, max_length=180)
    email: str | None = Field(default=None, max_length=255, pattern=EMAIL_PATTERN)
    password: str = Field(min_length=1, max_length=255)
    roles: list[str] = Field(default_factory=list)


class OrganizationUserRules(_Rules):
    organization: Any = None
    user: Any = None
    roles: list[str] = Field(default_factory=list)

    @field_validator("organization", "user")
    @classmethod
    def _required(cls, value: Any) -> Any:
        if value is None:
            raise ValueError("must be set")
        return value


DEFAULT_RULES: dict[type, type[_Rules]] = {
    PermissionDB: PermissionRules,
    RoleDB: RoleRules,
    OrganizationDB: OrganizationRules,
    UserDB: UserRules,
    OrganizationUserDB: OrganizationUserRules,
}


class EntityValidator:
    """Validates entities against the rules registered for their type."""

    def __init__(self, rules: dict[type, type[_Rules]] | None = None) -> None:
        self.rules = dict(DEFAULT_RULES if rules is None else rules)

    def validate(self, entity: Any) -> list[Violation]:
        """Return the violations of `entity`; an empty list means valid."""
        rules = self.rules.get(type(entity))
        if rules is None:
            return []
        try:
            rules.model_validate(entity)
        except PydanticValidationError as exc:
            return [
                Violation(".".join(str(part) for part in error["loc"]), error["msg"])
                for error in exc.errors()
            ]
        return []
