"""
Storage Domains — the repository abstraction the loaders work against.

The loaders only see the `Domain` protocol. `SqlDomain` implements it on a
SQLAlchemy session; `Database.unit_of_work()` wraps a whole provisioning run
in one transaction that is committed on success and rolled back on failure.
"""

from __future__ import annotations

import logging
from contextlib import contextmanager
from dataclasses import dataclass, field
from typing import Any, Iterator, Protocol, Sequence

from sqlalchemy import create_engine, func, inspect, select
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session, sessionmaker

from authz_provision.errors import AuthzError, UnexpectedFault
from authz_provision.storage.models import Base
from authz_provision.storage.validation import EntityValidator, Violation

logger = logging.getLogger(__name__)


@dataclass
class ResourceError:
    """Why a single entity (or the whole batch, when `entity` is None) was rejected."""

    entity: Any
    message: str
    violations: list[Violation] = field(default_factory=list)

    def __str__(self) -> str:
        subject = repr(self.entity) if self.entity is not None else "batch"
        if self.violations:
            return f"{subject}: " + ", ".join(str(v) for v in self.violations)
        return f"{subject}: {self.message}"


@dataclass
class ResourceList:
    """Outcome of a batch write: the accepted entities and the errors."""

    items: list[Any] = field(default_factory=list)
    errors: list[ResourceError] = field(default_factory=list)

    @property
    def has_errors(self) -> bool:
        return bool(self.errors)


class Domain(Protocol):
    """Repository operations for one entity type."""

    def find_all(self) -> list[Any]: ...

    def find_by(self, **criteria: Any) -> list[Any]: ...

    def count(self) -> int: ...

    def new_instance(self, **values: Any) -> Any: ...

    def upserts(self, batch: Sequence[Any]) -> ResourceList: ...

    def updates(self, batch: Sequence[Any]) -> ResourceList: ...


class SqlDomain:
    """
    SQLAlchemy implementation of `Domain` for a single mapped model.

    Writes are flushed but never committed here; committing belongs to the
    enclosing unit of work.
    """

    def __init__(self, session: Session, model: type, validator: EntityValidator) -> None:
        self.session = session
        self.model = model
        self.validator = validator

    def find_all(self) -> list[Any]:
        return list(self.session.execute(select(self.model)).scalars().all())

    def find_by(self, **criteria: Any) -> list[Any]:
        """
        Find entities matching every criterion.

        A None value matches NULL, a list/tuple/set matches any of its items.
        """
        stmt = select(self.model)
        for name, value in criteria.items():
            column = getattr(self.model, name)
            if value is None:
                stmt = stmt.where(column.is_(None))
            elif isinstance(value, (list, tuple, set, frozenset)):
                stmt = stmt.where(column.in_(list(value)))
            else:
                stmt = stmt.where(column == value)
        return list(self.session.execute(stmt).scalars().all())

    def count(self) -> int:
        result = self.session.execute(select(func.count()).select_from(self.model))
        return result.scalar() or 0

    def new_instance(self, **values: Any) -> Any:
        return self.model(**values)

    def upserts(self, batch: Sequence[Any]) -> ResourceList:
        """Create new entities and update persisted ones, all or nothing."""
        return self._persist(batch, require_persisted=False)

    def updates(self, batch: Sequence[Any]) -> ResourceList:
        """Update already persisted entities, all or nothing."""
        return self._persist(batch, require_persisted=True)

    def _persist(self, batch: Sequence[Any], require_persisted: bool) -> ResourceList:
        result = ResourceList()
        for entity in batch:
            if require_persisted and not inspect(entity).persistent:
                result.errors.append(ResourceError(entity, "entity is not persisted yet"))
                continue
            violations = self.validator.validate(entity)
            if violations:
                result.errors.append(ResourceError(entity, "validation failed", violations))
            else:
                result.items.append(entity)

        if result.has_errors:
            return result

        self.session.add_all(result.items)
        try:
            self.session.flush()
        except SQLAlchemyError as exc:
            result.errors.append(ResourceError(None, str(getattr(exc, "orig", None) or exc)))
            return result

        logger.debug("Flushed %d %s entities", len(result.items), self.model.__name__)
        return result


class UnitOfWork:
    """One open transaction and the domains bound to it."""

    def __init__(self, session: Session, validator: EntityValidator) -> None:
        self.session = session
        self.validator = validator
        self._domains: dict[type, SqlDomain] = {}

    def domain(self, model: type) -> SqlDomain:
        if model not in self._domains:
            self._domains[model] = SqlDomain(self.session, model, self.validator)
        return self._domains[model]


class Database:
    """
    Storage entrypoint — owns the engine and hands out units of work.

    Usage:
        database = Database("sqlite:///authz.db")
        database.initialize()  # Create tables

        with database.unit_of_work() as uow:
            roles = uow.domain(RoleDB).find_by(organization_id=None)
    """

    def __init__(
        self,
        database_url: str,
        validator: EntityValidator | None = None,
        **engine_options: Any,
    ) -> None:
        """
        Initialize the storage layer.

        Args:
            database_url: SQLAlchemy connection string.
            validator: Entity rules used by every domain. Defaults to the built-in rules.
            engine_options: Extra keyword arguments for `create_engine`.
        """
        self.engine = create_engine(database_url, echo=False, **engine_options)
        self.SessionLocal = sessionmaker(bind=self.engine)
        self.validator = validator or EntityValidator()

    def initialize(self) -> None:
        """Create any missing tables."""
        Base.metadata.create_all(self.engine)

    @contextmanager
    def unit_of_work(self) -> Iterator[UnitOfWork]:
        """
        Run a block inside one transaction.

        Commits when the block completes. Any failure, including an
        interrupt, rolls back every change made in the block before the
        error propagates; failures that are not AuthzError are re-raised
        as UnexpectedFault.
        """
        session = self.SessionLocal()
        try:
            yield UnitOfWork(session, self.validator)
            session.commit()
        except AuthzError:
            session.rollback()
            logger.warning("Unit of work rolled back")
            raise
        except Exception as exc:
            session.rollback()
            logger.exception("Unit of work rolled back after unexpected failure")
            raise UnexpectedFault(f"Unexpected failure, all changes rolled back: {exc}") from exc
        except BaseException:
            session.rollback()
            raise
        finally:
            session.close()
