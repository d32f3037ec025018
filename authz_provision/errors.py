"""
Provisioning Errors — failure taxonomy shared by every loader and seeder.

All of these are fatal to the running load. The only non-fatal outcome of a
provisioning run is "nothing to do", which is a normal return value.
"""

from __future__ import annotations

from typing import Any


class AuthzError(Exception):
    """Base class for all provisioning failures."""
    pass


class SchemaError(AuthzError):
    """Raised when a configuration document has the wrong shape."""

    def __init__(self, message: str, path: str = "") -> None:
        self.path = path
        self.message = message
        super().__init__(f"{path}: {message}" if path else message)


class MissingRoleError(AuthzError):
    """Raised when permissions reference roles that do not exist in storage."""

    def __init__(self, missing: list[str]) -> None:
        self.missing = list(missing)
        names = '", "'.join(self.missing)
        super().__init__(f'The roles "{names}" are required, but do not exist in database')


class ValidationError(AuthzError):
    """Raised when a constructed entity fails its domain rules."""

    def __init__(self, entity: Any, violations: list[Any]) -> None:
        self.entity = entity
        self.violations = list(violations)
        details = "; ".join(str(v) for v in self.violations)
        super().__init__(f"Invalid {type(entity).__name__}: {details}")


class PersistenceError(AuthzError):
    """Raised when storage rejects an upsert or update batch."""

    def __init__(self, resource_list: Any, action: str = "upsert") -> None:
        self.resource_list = resource_list
        self.errors = list(resource_list.errors)
        details = "; ".join(str(e) for e in self.errors)
        super().__init__(f"The {action} batch was rejected: {details}")


class UnexpectedFault(AuthzError):
    """Raised for any other failure inside a unit of work, after rollback."""
    pass
