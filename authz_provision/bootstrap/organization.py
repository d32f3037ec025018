"""
Organization Bootstrap — seed the system organization and its super admin.

Runs once per database: as soon as any organization exists the seeder does
nothing. The organization, the admin user and their membership are created
together in one transaction, or not at all.
"""

from __future__ import annotations

import enum
import logging
from typing import Any

from authz_provision.bootstrap.passwords import BcryptPasswordHasher, PasswordHasher
from authz_provision.errors import PersistenceError, ValidationError
from authz_provision.storage.models import OrganizationDB, OrganizationUserDB, UserDB
from authz_provision.storage.repository import Database, UnitOfWork

logger = logging.getLogger(__name__)


# ════════════════════════════════════════════════════════════════
# Reserved bootstrap identifiers
# ════════════════════════════════════════════════════════════════

ORGANIZATION_NAME = "org-admin"
ORGANIZATION_LABEL = "Organization Admin"
USERNAME = "admin"
USER_EMAIL = "admin@example.tld"
USER_PASSWORD = "password"
SUPER_ADMIN_ROLE = "ROLE_SUPER_ADMIN"
ORGANIZATION_ADMIN_ROLE = "ROLE_ADMIN"


class SeedStatus(str, enum.Enum):
    """Outcome of a bootstrap run."""

    INITIALIZED = "initialized"
    ALREADY_INITIALIZED = "already_initialized"


class OrganizationSeeder:
    """
    Creates the system organization, the super admin user and their membership.

    Usage:
        seeder = OrganizationSeeder(database)
        if seeder.seed() is SeedStatus.INITIALIZED:
            ...
    """

    def __init__(self, database: Database, hasher: PasswordHasher | None = None) -> None:
        self.database = database
        self.hasher = hasher or BcryptPasswordHasher()

    def seed(self) -> SeedStatus:
        """
        Seed the bootstrap records unless an organization already exists.

        Raises:
            ValidationError: A constructed entity breaks its domain rules.
            PersistenceError: Storage rejected one of the entities.
        """
        with self.database.unit_of_work() as uow:
            organizations = uow.domain(OrganizationDB)
            if organizations.count() > 0:
                logger.info("Organization system already initialized")
                return SeedStatus.ALREADY_INITIALIZED

            organization = organizations.new_instance(
                name=ORGANIZATION_NAME, label=ORGANIZATION_LABEL,
            )
            self._validate(uow, organization)

            user = uow.domain(UserDB).new_instance(
                username=USERNAME, email=USER_EMAIL, roles=[SUPER_ADMIN_ROLE],
            )
            user.password = self.hasher.hash(user, USER_PASSWORD)
            self._validate(uow, user)

            membership = uow.domain(OrganizationUserDB).new_instance(
                organization=organization, user=user, roles=[ORGANIZATION_ADMIN_ROLE],
            )
            self._validate(uow, membership)

            for model, entity in (
                (OrganizationDB, organization),
                (UserDB, user),
                (OrganizationUserDB, membership),
            ):
                result = uow.domain(model).upserts([entity])
                if result.has_errors:
                    raise PersistenceError(result, action=f"{model.__name__} insert")

        logger.info(
            "Organization system initialized: organization=%s user=%s",
            ORGANIZATION_NAME, USERNAME,
        )
        return SeedStatus.INITIALIZED

    @staticmethod
    def _validate(uow: UnitOfWork, entity: Any) -> None:
        violations = uow.validator.validate(entity)
        if violations:
            raise ValidationError(entity, violations)
