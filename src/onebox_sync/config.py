"""Configuration management for onebox-sync.

This module handles application configuration using Pydantic settings.
Configuration can be loaded from environment variables or .env files.
Mailbox accounts are loaded separately by :func:`load_accounts` because
they are a variable-length set rather than fixed fields.
"""

from __future__ import annotations

import json
import os
import re
from collections.abc import Mapping
from functools import lru_cache
from pathlib import Path
from typing import Any

import structlog
from pydantic import Field, ValidationError, model_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

from onebox_sync.exceptions import ConfigurationError
from onebox_sync.models import AccountConfig

logger = structlog.get_logger()

_ACCOUNT_ENV_RE = re.compile(r"^ONEBOX_IMAP_(USER|PASS|HOST|PORT|MAILBOX|ID)_(\d+)$", re.I)


class Settings(BaseSettings):
    """Application settings with environment variable support.

    All settings can be overridden via environment variables with
    the ONEBOX_ prefix (e.g., ONEBOX_BACKFILL_DAYS).
    """

    model_config = SettingsConfigDict(
        env_prefix="ONEBOX_",
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
        extra="ignore",
    )

    # Sync engine
    backfill_days: int = Field(
        default=30,
        ge=1,
        description="Size of the one-time historical catch-up window in days",
    )
    backfill_concurrency: int = Field(
        default=4,
        ge=1,
        le=16,
        description="Maximum messages in flight per account during backfill",
    )
    keepalive_interval_seconds: float = Field(
        default=29 * 60,
        gt=0,
        description="Interval at which the IDLE watch is re-issued",
    )
    server_idle_timeout_seconds: float = Field(
        default=30 * 60,
        gt=0,
        description="Idle timeout enforced by the remote server",
    )
    watch_poll_seconds: float = Field(
        default=30.0,
        gt=0,
        description="Upper bound on a single blocking IDLE check",
    )
    connect_timeout_seconds: float = Field(
        default=30.0,
        gt=0,
        description="Timeout for connect, login and mailbox selection",
    )
    backoff_base_seconds: float = Field(
        default=1.0,
        gt=0,
        description="Reconnect delay after the first failed attempt",
    )
    backoff_cap_seconds: float = Field(
        default=300.0,
        gt=0,
        description="Upper bound for reconnect delays",
    )
    backoff_jitter: float = Field(
        default=0.1,
        ge=0.0,
        le=0.5,
        description="Fraction of each reconnect delay that is randomized",
    )
    shutdown_timeout_seconds: float = Field(
        default=10.0,
        gt=0,
        description="Grace period for sessions to close before they are cancelled",
    )

    # Accounts
    accounts_file: Path | None = Field(
        default=None,
        description="Optional JSON file holding a list of account objects",
    )

    # Search index
    index_db_path: Path = Field(
        default=Path("onebox_index.sqlite3"),
        description="Path to the SQLite database backing the search index and cursors",
    )

    # Ollama classifier
    ollama_host: str = Field(
        default="http://localhost:11434",
        description="Ollama API host URL",
    )
    ollama_model: str = Field(
        default="llama3.1:8b",
        description="Ollama model used for email classification",
    )
    ollama_timeout: int = Field(
        default=30,
        description="Timeout for Ollama API requests in seconds",
    )
    classifier_max_retries: int = Field(
        default=2,
        ge=0,
        description="Retries for a failed classification request",
    )

    # Notifications
    slack_webhook_url: str | None = Field(
        default=None,
        description="Slack incoming webhook for interested leads",
    )
    webhook_url: str | None = Field(
        default=None,
        description="Generic webhook receiving interested lead events",
    )
    notify_timeout: float = Field(
        default=10.0,
        gt=0,
        description="Timeout for notification requests in seconds",
    )

    # Application Configuration
    log_level: str = Field(
        default="INFO",
        description="Logging level (DEBUG, INFO, WARNING, ERROR, CRITICAL)",
    )
    debug: bool = Field(
        default=False,
        description="Enable debug mode",
    )

    @model_validator(mode="after")
    def _keepalive_before_server_timeout(self) -> "Settings":
        if self.keepalive_interval_seconds >= self.server_idle_timeout_seconds:
            raise ValueError(
                "keepalive_interval_seconds must be shorter than server_idle_timeout_seconds"
            )
        if self.keepalive_interval_seconds + self.watch_poll_seconds >= self.server_idle_timeout_seconds:
            raise ValueError(
                "keepalive_interval_seconds plus watch_poll_seconds must stay under "
                "server_idle_timeout_seconds"
            )
        if self.backoff_cap_seconds < self.backoff_base_seconds:
            raise ValueError("backoff_cap_seconds must be >= backoff_base_seconds")
        return self


@lru_cache
def get_settings() -> Settings:
    """Get cached application settings.

    Returns:
        Settings: Application settings instance.
    """
    return Settings()


def _account_from_mapping(data: Mapping[str, Any], source: str) -> AccountConfig:
    user = data.get("user")
    password = data.get("password")
    host = data.get("host")
    missing = [name for name, value in (("user", user), ("password", password), ("host", host)) if not value]
    if missing:
        raise ConfigurationError(f"{source}: missing {', '.join(missing)}")

    fields: dict[str, Any] = {"user": user, "password": password, "host": host}
    for key in ("account_id", "port", "mailbox", "use_ssl"):
        value = data.get(key)
        if value not in (None, ""):
            fields[key] = value

    try:
        return AccountConfig(**fields)
    except ValidationError as exc:
        raise ConfigurationError(f"{source}: {exc.errors()[0]['msg']}") from exc


def _accounts_from_env(environ: Mapping[str, str]) -> list[tuple[str, dict[str, Any]]]:
    grouped: dict[int, dict[str, Any]] = {}
    for key, value in environ.items():
        match = _ACCOUNT_ENV_RE.match(key)
        if match is None:
            continue
        field, index = match.group(1).upper(), int(match.group(2))
        name = {
            "USER": "user",
            "PASS": "password",
            "HOST": "host",
            "PORT": "port",
            "MAILBOX": "mailbox",
            "ID": "account_id",
        }[field]
        grouped.setdefault(index, {})[name] = value

    return [(f"ONEBOX_IMAP_*_{index}", grouped[index]) for index in sorted(grouped)]


def _accounts_from_file(path: Path) -> list[tuple[str, dict[str, Any]]]:
    try:
        payload = json.loads(path.read_text(encoding="utf-8"))
    except (OSError, json.JSONDecodeError) as exc:
        raise ConfigurationError(f"Cannot read accounts file {path}: {exc}") from exc

    if not isinstance(payload, list):
        raise ConfigurationError(f"Accounts file {path} must contain a JSON list")

    entries: list[tuple[str, dict[str, Any]]] = []
    for i, item in enumerate(payload):
        source = f"{path}[{i}]"
        entries.append((source, item if isinstance(item, dict) else {}))
    return entries


def load_accounts(
    settings: Settings | None = None,
    environ: Mapping[str, str] | None = None,
) -> list[AccountConfig]:
    """Load every configured mailbox account.

    Accounts come from numbered environment variables
    (``ONEBOX_IMAP_USER_1``, ``ONEBOX_IMAP_PASS_1``, ``ONEBOX_IMAP_HOST_1``,
    ``ONEBOX_IMAP_PORT_1`` ...) and, if configured, from ``accounts_file``.
    An invalid entry is logged and skipped; the remaining accounts load
    normally.

    Args:
        settings: Application settings. If None, uses default settings.
        environ: Environment mapping. If None, uses ``os.environ``.

    Returns:
        Valid account configurations in declaration order.
    """
    settings = settings or get_settings()
    environ = os.environ if environ is None else environ

    entries = _accounts_from_env(environ)
    if settings.accounts_file is not None:
        try:
            entries.extend(_accounts_from_file(settings.accounts_file))
        except ConfigurationError as exc:
            logger.warning("accounts_file_skipped", path=str(settings.accounts_file), error=str(exc))

    accounts: list[AccountConfig] = []
    for source, data in entries:
        try:
            account = _account_from_mapping(data, source)
        except ConfigurationError as exc:
            logger.warning("account_config_skipped", source=source, error=str(exc))
            continue
        accounts.append(account)
        logger.info(
            "account_configured",
            account_id=account.account_id,
            host=account.host,
            port=account.port,
            mailbox=account.mailbox,
        )

    return accounts
