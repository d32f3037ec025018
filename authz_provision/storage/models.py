"""
Security Storage — SQLAlchemy models for permissions, roles and the
bootstrap organization.

Permissions are identified by (operation, class, field); class and field are
NULL for global permissions. Roles without an organization are the system
roles that permission configuration may attach to.
"""

from __future__ import annotations

from uuid import uuid4

from sqlalchemy import (
    JSON,
    Column,
    DateTime,
    ForeignKey,
    Index,
    String,
    Table,
    Text,
    UniqueConstraint,
    Uuid,
    and_,
    func,
)
from sqlalchemy.orm import DeclarativeBase, relationship


class Base(DeclarativeBase):
    """SQLAlchemy declarative base for all security models."""
    pass


role_permissions = Table(
    "role_permissions",
    Base.metadata,
    Column("role_id", Uuid, ForeignKey("roles.id", ondelete="CASCADE"), primary_key=True),
    Column(
        "permission_id", Uuid, ForeignKey("permissions.id", ondelete="CASCADE"),
        primary_key=True,
    ),
)


class PermissionDB(Base):
    """
    A permission record — one operation, optionally bound to a class or field.

    The identity triple never changes after creation. Only the labels and
    contexts are updated by later loads.
    """

    __tablename__ = "permissions"

    id = Column(Uuid, primary_key=True, default=uuid4)
    operation = Column(String(255), nullable=False)
    class_name = Column(
        "class", String(255), nullable=True,
        comment="Fully-qualified class name, NULL for global permissions",
    )
    field = Column(
        String(255), nullable=True,
        comment="Field name within the class, NULL for class-level permissions",
    )
    label = Column(String(255), nullable=True)
    detail_label = Column(Text, nullable=True)
    translation_domain = Column(String(255), nullable=True)
    contexts = Column(JSON, nullable=False, default=list)

    created_at = Column(DateTime(timezone=True), nullable=False, default=func.now())
    updated_at = Column(
        DateTime(timezone=True), nullable=False, default=func.now(), onupdate=func.now(),
    )

    __table_args__ = (
        UniqueConstraint("operation", "class", "field", name="uq_permission_identity"),
        # NULLs are distinct in a unique constraint; global and class-level
        # identities need their own partial indexes
        Index(
            "uq_permission_global", "operation", unique=True,
            sqlite_where=and_(class_name.is_(None), field.is_(None)),
            postgresql_where=and_(class_name.is_(None), field.is_(None)),
        ),
        Index(
            "uq_permission_class", "operation", "class", unique=True,
            sqlite_where=and_(class_name.isnot(None), field.is_(None)),
            postgresql_where=and_(class_name.isnot(None), field.is_(None)),
        ),
        Index("ix_permission_class_field", "class", "field"),
    )

    @property
    def identity(self) -> tuple[str, str | None, str | None]:
        return (self.operation, self.class_name, self.field)

    def __repr__(self) -> str:
        return f"<Permission {self.operation}:{self.class_name or ''}:{self.field or ''}>"


class OrganizationDB(Base):
    """Organizations. The bootstrap seeder creates the first one."""

    __tablename__ = "organizations"

    id = Column(Uuid, primary_key=True, default=uuid4)
    name = Column(String(128), nullable=False, unique=True)
    label = Column(String(255), nullable=True)
    created_at = Column(DateTime(timezone=True), nullable=False, default=func.now())


class RoleDB(Base):
    """
    Roles, either system-wide (no organization) or owned by an organization.

    Role names are unique per organization; system role names are unique
    among the organization-less roles.
    """

    __tablename__ = "roles"

    id = Column(Uuid, primary_key=True, default=uuid4)
    name = Column(String(255), nullable=False)
    label = Column(String(255), nullable=True)
    organization_id = Column(
        Uuid, ForeignKey("organizations.id", ondelete="CASCADE"), nullable=True,
        comment="Owning organization, NULL for system roles",
    )

    created_at = Column(DateTime(timezone=True), nullable=False, default=func.now())
    updated_at = Column(
        DateTime(timezone=True), nullable=False, default=func.now(), onupdate=func.now(),
    )

    organization = relationship(OrganizationDB)
    permissions = relationship(PermissionDB, secondary=role_permissions, lazy="selectin")

    __table_args__ = (
        UniqueConstraint("name", "organization_id", name="uq_role_name_organization"),
        Index(
            "uq_role_system_name", "name", unique=True,
            sqlite_where=organization_id.is_(None),
            postgresql_where=organization_id.is_(None),
        ),
        Index("ix_role_name", "name"),
    )

    def has_permission(self, permission: PermissionDB) -> bool:
        return permission in self.permissions

    def add_permission(self, permission: PermissionDB) -> None:
        if not self.has_permission(permission):
            self.permissions.append(permission)

    def __repr__(self) -> str:
        return f"<Role {self.name} permissions={len(self.permissions)}>"


class UserDB(Base):
    """User accounts. `roles` holds global role markers such as ROLE_SUPER_ADMIN."""

    __tablename__ = "users"

    id = Column(Uuid, primary_key=True, default=uuid4)
    username = Column(String(180), nullable=False, unique=True)
    email = Column(String(255), nullable=True)
    password = Column(String(255), nullable=False, comment="Hashed credential")
    roles = Column(JSON, nullable=False, default=list)
    created_at = Column(DateTime(timezone=True), nullable=False, default=func.now())


class OrganizationUserDB(Base):
    """Membership of a user in an organization, with organization-level role markers."""

    __tablename__ = "organization_users"

    id = Column(Uuid, primary_key=True, default=uuid4)
    organization_id = Column(
        Uuid, ForeignKey("organizations.id", ondelete="CASCADE"), nullable=False,
    )
    user_id = Column(Uuid, ForeignKey("users.id", ondelete="CASCADE"), nullable=False)
    roles = Column(JSON, nullable=False, default=list)
    created_at = Column(DateTime(timezone=True), nullable=False, default=func.now())

    organization = relationship(OrganizationDB)
    user = relationship(UserDB)

    __table_args__ = (
        UniqueConstraint("organization_id", "user_id", name="uq_organization_user"),
    )
