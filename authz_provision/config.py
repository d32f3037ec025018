"""Authz Provision — Application configuration via environment variables."""

from __future__ import annotations

from pydantic_settings import BaseSettings


class ProvisionSettings(BaseSettings):
    """Central configuration loaded from environment / .env file."""

    model_config = {"env_file": ".env", "env_file_encoding": "utf-8", "extra": "ignore"}

    # ── Storage ────────────────────────────────────────────────
    database_url: str = "sqlite:///authz.db"

    # ── Data files ─────────────────────────────────────────────
    config_dir: str = "config/data"
    permissions_file: str = "security_permissions.yaml"

    # ── Logging ────────────────────────────────────────────────
    log_level: str = "INFO"
    log_format: str = "console"


settings = ProvisionSettings()
