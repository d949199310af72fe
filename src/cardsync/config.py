"""cardsync configuration loading and validation.

Reads an optional ``cardsync.toml``, resolves ``${VAR}`` references, and
falls back to environment variables for anything the file leaves unset.
"""

from __future__ import annotations

import os
import re
import tomllib
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any

from cardsync.db import db_params_from_env

# Pattern matching ${VAR_NAME}: alphanumeric + underscore variable names.
_ENV_VAR_PATTERN = re.compile(r"\$\{([A-Za-z_][A-Za-z0-9_]*)\}")

CONFIG_FILENAME = "cardsync.toml"
DEFAULT_DB_NAME = "cardsync"


class ConfigError(Exception):
    """Raised when cardsync configuration is malformed or invalid."""


@dataclass
class DatabaseConfig:
    """Connection settings from the [database] section."""

    name: str = DEFAULT_DB_NAME
    host: str = "localhost"
    port: int = 5432
    user: str = "postgres"
    password: str = "postgres"
    ssl: str | None = None
    min_pool_size: int = 2
    max_pool_size: int = 10


@dataclass
class LoggingConfig:
    """Logging configuration from the [logging] section."""

    level: str = "INFO"
    format: str = "text"  # "text" or "json"
    log_root: str | None = None


@dataclass
class SyncConfig:
    """Scheduling knobs from the [sync] section."""

    sweep_delay_s: float = 0.2
    stale_lease_minutes: int = 30


@dataclass
class PhotosConfig:
    """Photo storage from the [photos] section; no ``storage_path`` means photos are not stored."""

    storage_path: str | None = None


@dataclass
class SecurityConfig:
    """Secrets from the [security] section."""

    encryption_secret: str | None = None


@dataclass
class CardSyncConfig:
    database: DatabaseConfig = field(default_factory=DatabaseConfig)
    logging: LoggingConfig = field(default_factory=LoggingConfig)
    sync: SyncConfig = field(default_factory=SyncConfig)
    photos: PhotosConfig = field(default_factory=PhotosConfig)
    security: SecurityConfig = field(default_factory=SecurityConfig)

    def require_encryption_secret(self) -> str:
        if not self.security.encryption_secret:
            raise ConfigError(
                "No encryption secret configured: set security.encryption_secret "
                "or CARDSYNC_ENCRYPTION_SECRET"
            )
        return self.security.encryption_secret


def resolve_env_vars(value: Any) -> Any:
    """Recursively resolve ``${VAR_NAME}`` references in config values.

    Walks dicts, lists, and strings.  Non-string leaf values (int, bool,
    float, None) are returned unchanged.

    Raises
    ------
    ConfigError
        If a referenced environment variable is not set.
    """
    if isinstance(value, dict):
        return {k: resolve_env_vars(v) for k, v in value.items()}
    if isinstance(value, list):
        return [resolve_env_vars(item) for item in value]
    if isinstance(value, str):
        return _resolve_string(value)
    return value


def _resolve_string(s: str) -> str:
    missing: list[str] = []

    def _replace(match: re.Match) -> str:
        var_name = match.group(1)
        env_value = os.environ.get(var_name)
        if env_value is None:
            missing.append(var_name)
            return match.group(0)
        return env_value

    result = _ENV_VAR_PATTERN.sub(_replace, s)
    if missing:
        raise ConfigError(
            f"Unresolved environment variable(s) in config value: {', '.join(missing)}"
        )
    return result


def _section(data: dict[str, Any], name: str) -> dict[str, Any]:
    section = data.get(name, {})
    if not isinstance(section, dict):
        raise ConfigError(f"[{name}] must be a table")
    return section


def _positive(value: Any, name: str, kind: type = int) -> Any:
    try:
        converted = kind(value)
    except (TypeError, ValueError) as exc:
        raise ConfigError(f"{name} must be a number, got {value!r}") from exc
    if converted < 0:
        raise ConfigError(f"{name} must not be negative")
    return converted


def _parse_database(section: dict[str, Any]) -> DatabaseConfig:
    env = db_params_from_env()
    name = str(section.get("name", os.environ.get("CARDSYNC_DB_NAME", DEFAULT_DB_NAME))).strip()
    if not name:
        raise ConfigError("database.name must be a non-empty string")
    ssl = section.get("ssl", env["ssl"])
    return DatabaseConfig(
        name=name,
        host=str(section.get("host", env["host"])),
        port=_positive(section.get("port", env["port"]), "database.port"),
        user=str(section.get("user", env["user"])),
        password=str(section.get("password", env["password"])),
        ssl=str(ssl) if ssl is not None else None,
        min_pool_size=_positive(section.get("min_pool_size", 2), "database.min_pool_size"),
        max_pool_size=_positive(section.get("max_pool_size", 10), "database.max_pool_size"),
    )


def _parse_logging(section: dict[str, Any]) -> LoggingConfig:
    level = str(section.get("level", os.environ.get("CARDSYNC_LOG_LEVEL", "INFO"))).upper()
    fmt = str(section.get("format", "text")).lower()
    if fmt not in ("text", "json"):
        raise ConfigError(f"Invalid logging.format: {fmt!r}. Expected 'text' or 'json'.")
    return LoggingConfig(level=level, format=fmt, log_root=section.get("log_root"))


def load_config(path: Path | None = None) -> CardSyncConfig:
    """Load configuration from *path* (a file or a directory holding ``cardsync.toml``).

    A missing file is not an error: every value then comes from the
    environment or its default.
    """
    data: dict[str, Any] = {}
    if path is not None:
        toml_path = path / CONFIG_FILENAME if path.is_dir() else path
        if not toml_path.exists():
            raise ConfigError(f"Config file not found: {toml_path}")
        try:
            data = tomllib.loads(toml_path.read_text(encoding="utf-8"))
        except tomllib.TOMLDecodeError as exc:
            raise ConfigError(f"Invalid TOML in {toml_path}: {exc}") from exc
        data = resolve_env_vars(data)

    sync_section = _section(data, "sync")
    photos_section = _section(data, "photos")
    security_section = _section(data, "security")

    return CardSyncConfig(
        database=_parse_database(_section(data, "database")),
        logging=_parse_logging(_section(data, "logging")),
        sync=SyncConfig(
            sweep_delay_s=_positive(
                sync_section.get("sweep_delay_s", 0.2), "sync.sweep_delay_s", float
            ),
            stale_lease_minutes=_positive(
                sync_section.get("stale_lease_minutes", 30), "sync.stale_lease_minutes"
            ),
        ),
        photos=PhotosConfig(
            storage_path=photos_section.get("storage_path", os.environ.get("PHOTO_STORAGE_PATH")),
        ),
        security=SecurityConfig(
            encryption_secret=security_section.get(
                "encryption_secret", os.environ.get("CARDSYNC_ENCRYPTION_SECRET")
            ),
        ),
    )
