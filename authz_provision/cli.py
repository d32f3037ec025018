"""
Provisioning CLI — idempotent initialization of roles, permissions and the
bootstrap organization.

Every subcommand runs in its own transaction and prints a one-line status.
`all` runs the three in dependency order: roles, permissions, organization.

Usage:
    authz-provision roles
    authz-provision permissions --config-dir config/data
    authz-provision organization --database-url postgresql+psycopg2://...
    authz-provision all
"""

from __future__ import annotations

import argparse
import logging
import sys
from pathlib import Path
from typing import Callable

import structlog
from rich.console import Console
from rich.markup import escape

from authz_provision.bootstrap.organization import OrganizationSeeder, SeedStatus
from authz_provision.bootstrap.passwords import PasswordHasher
from authz_provision.bootstrap.roles import RoleLoader, find_role_files
from authz_provision.config import settings
from authz_provision.errors import AuthzError
from authz_provision.permissions.loader import YamlPermissionLoader
from authz_provision.storage.models import PermissionDB, RoleDB
from authz_provision.storage.repository import Database

console = Console()

ROLES_EMPTY = "No system roles are defined"
ROLES_INITIALIZED = "The system roles have been initialized"
ROLES_UP_TO_DATE = "The system roles are already up to date"
PERMISSIONS_INITIALIZED = "The system permissions have been initialized"
PERMISSIONS_UP_TO_DATE = "The system permissions are already up to date"
ORGANIZATION_CREATED = "The organization system and the super admin user are created"
ORGANIZATION_EXISTS = "The organization system and the super admin user are already created"


def configure_logging(log_level: str = "INFO", log_format: str = "console") -> None:
    """Configure structured logging on stderr, leaving stdout for status lines."""
    log_level = log_level.upper()
    logging.basicConfig(
        level=logging.getLevelName(log_level),
        format="%(levelname)s %(name)s: %(message)s",
        stream=sys.stderr,
    )
    structlog.configure(
        processors=[
            structlog.contextvars.merge_contextvars,
            structlog.processors.add_log_level,
            structlog.processors.StackInfoRenderer(),
            structlog.dev.set_exc_info,
            structlog.processors.TimeStamper(fmt="iso"),
            (
                structlog.dev.ConsoleRenderer()
                if log_format != "json"
                else structlog.processors.JSONRenderer()
            ),
        ],
        wrapper_class=structlog.make_filtering_bound_logger(
            logging.getLevelName(log_level)
        ),
        context_class=dict,
        logger_factory=structlog.PrintLoggerFactory(file=sys.stderr),
        cache_logger_on_first_use=True,
    )


# ════════════════════════════════════════════════════════════════
# Commands
# ════════════════════════════════════════════════════════════════


def init_roles(database: Database, config_dir: str | Path) -> str:
    """Load `security_roles.yaml` and `security_roles_*.yaml` from `config_dir`."""
    paths = find_role_files(config_dir)
    if not paths:
        return ROLES_EMPTY

    with database.unit_of_work() as uow:
        result = RoleLoader(uow.domain(RoleDB)).load_files(paths)

    if result.configured == 0:
        return ROLES_EMPTY
    return ROLES_INITIALIZED if result.changed else ROLES_UP_TO_DATE


def init_permissions(database: Database, permissions_path: str | Path) -> str:
    """Load the permission file. Requires the roles to be initialized first."""
    with database.unit_of_work() as uow:
        loader = YamlPermissionLoader(uow.domain(PermissionDB), uow.domain(RoleDB))
        result = loader.load_file(permissions_path)

    return PERMISSIONS_INITIALIZED if result.changed else PERMISSIONS_UP_TO_DATE


def init_organization(database: Database, hasher: PasswordHasher | None = None) -> str:
    """Seed the system organization and super admin user once."""
    status = OrganizationSeeder(database, hasher).seed()
    return ORGANIZATION_CREATED if status is SeedStatus.INITIALIZED else ORGANIZATION_EXISTS


def _build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="authz-provision",
        description="Initialize system roles, permissions and the bootstrap organization",
    )
    parser.add_argument(
        "command",
        choices=["roles", "permissions", "organization", "all"],
        help="What to initialize ('all' runs roles, permissions, organization)",
    )
    parser.add_argument(
        "--database-url",
        default=None,
        help="SQLAlchemy connection string (defaults to .env settings)",
    )
    parser.add_argument(
        "--config-dir",
        default=None,
        help="Directory holding the security_*.yaml files (defaults to .env settings)",
    )
    parser.add_argument(
        "--log-level",
        default=None,
        help="Logging level (defaults to .env settings)",
    )
    return parser


def main(argv: list[str] | None = None) -> int:
    args = _build_parser().parse_args(argv)
    configure_logging(args.log_level or settings.log_level, settings.log_format)
    log = structlog.get_logger()

    config_dir = Path(args.config_dir or settings.config_dir)
    database = Database(args.database_url or settings.database_url)
    database.initialize()

    steps: dict[str, Callable[[], str]] = {
        "roles": lambda: init_roles(database, config_dir),
        "permissions": lambda: init_permissions(
            database, config_dir / settings.permissions_file
        ),
        "organization": lambda: init_organization(database),
    }
    selected = list(steps) if args.command == "all" else [args.command]

    for name in selected:
        log.info("authz_provision.cli.step_started", step=name)
        try:
            message = steps[name]()
        except AuthzError as exc:
            log.error("authz_provision.cli.step_failed", step=name, error=str(exc))
            console.print(f"[bold red]✗ {escape(str(exc))}[/bold red]")
            return 1
        console.print(f"  {message}")
        log.info("authz_provision.cli.step_finished", step=name, status=message)

    return 0


if __name__ == "__main__":
    sys.exit(main())
