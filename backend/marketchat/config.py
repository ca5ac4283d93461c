"""MarketChat application configuration.

Loads settings from two YAML files:
  * marketchat.settings.yaml: non-secret configuration
  * marketchat.secrets.yaml: secrets (never committed)

The secrets file is merged under the ``secrets`` key so that every part of
the service reads a single *AppConfig* object via :func:`get_config`.
"""
from __future__ import annotations

import logging
import os
from pathlib import Path
from typing import Any, Dict, List, Literal, Optional

import yaml
from pydantic import BaseModel, Field, field_validator

logger = logging.getLogger(__name__)

# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------

SETTINGS_FILE = Path(os.environ.get("MARKETCHAT_SETTINGS", "marketchat.settings.yaml"))
SECRETS_FILE  = Path(os.environ.get("MARKETCHAT_SECRETS", "marketchat.secrets.yaml"))


def _load_yaml(path: Path) -> Dict[str, Any]:
    if not path.exists():
        logger.warning("Config file not found: %s", path)
        return {}
    with path.open(encoding="utf-8") as fh:
        return yaml.safe_load(fh) or {}


# ---------------------------------------------------------------------------
# Secrets models
# ---------------------------------------------------------------------------


class JWTSecrets(BaseModel):
    secret_key: str = "change-me-in-production"
    algorithm:  str = "HS256"


class IntrospectionSecrets(BaseModel):
    client_id:     Optional[str] = None
    client_secret: Optional[str] = None


class Secrets(BaseModel):
    jwt:           JWTSecrets           = Field(default_factory=JWTSecrets)
    introspection: IntrospectionSecrets = Field(default_factory=IntrospectionSecrets)


# ---------------------------------------------------------------------------
# Settings models
# ---------------------------------------------------------------------------


class ServerSettings(BaseModel):
    host:            str       = "0.0.0.0"
    port:            int       = 8000
    reload:          bool      = False
    allowed_origins: List[str] = Field(default_factory=lambda: ["*"])


class LoggingSettings(BaseModel):
    level: str = "info"


class AuthSettings(BaseModel):
    """Identity bridge selection.

    ``jwt`` verifies HS256 tokens locally with the shared secret;
    ``remote`` posts the token to ``introspection_url``.
    """
    provider:              Literal["jwt", "remote"] = "jwt"
    introspection_url:     Optional[str]            = None
    request_timeout:       float                    = 5.0
    token_expire_minutes:  int                      = 60


class ChatSettings(BaseModel):
    typing_timeout_seconds:    float = 5.0
    presence_grace_seconds:    float = 3.0
    handshake_timeout_seconds: float = 10.0
    # Admins may join any room when true; otherwise only buyer/seller parties.
    admin_override:            bool  = False
    max_message_length:        int   = 5000
    dedup_cache_size:          int   = 10000
    retention_days:            int   = 90
    purge_interval_seconds:    float = 3600.0

    @field_validator("typing_timeout_seconds", "handshake_timeout_seconds")
    @classmethod
    def _positive(cls, value: float) -> float:
        if value <= 0:
            raise ValueError("timeout must be positive")
        return value

    @field_validator("presence_grace_seconds")
    @classmethod
    def _non_negative(cls, value: float) -> float:
        if value < 0:
            raise ValueError("grace delay cannot be negative")
        return value


class StorageSettings(BaseModel):
    db_path: str = "marketchat.duckdb"


class AppConfig(BaseModel):
    server:   ServerSettings  = Field(default_factory=ServerSettings)
    logging:  LoggingSettings = Field(default_factory=LoggingSettings)
    auth:     AuthSettings    = Field(default_factory=AuthSettings)
    chat:     ChatSettings    = Field(default_factory=ChatSettings)
    storage:  StorageSettings = Field(default_factory=StorageSettings)
    secrets:  Secrets         = Field(default_factory=Secrets)


# ---------------------------------------------------------------------------
# Path resolution
# ---------------------------------------------------------------------------


def _resolve_db_path(config: AppConfig, settings_path: Path) -> None:
    """Resolve a relative ``storage.db_path`` against the settings file directory.

    ``:memory:`` and absolute paths are left untouched.
    """
    db_path = config.storage.db_path
    if db_path == ":memory:" or Path(db_path).is_absolute():
        return
    config.storage.db_path = str(settings_path.parent.resolve() / db_path)


# ---------------------------------------------------------------------------
# Public loader
# ---------------------------------------------------------------------------


def load_config(
    settings_path: Optional[Path] = None,
    secrets_path: Optional[Path] = None,
) -> AppConfig:
    """Load and merge settings + secrets into a single *AppConfig* object."""
    settings_path = Path(settings_path) if settings_path else SETTINGS_FILE
    secrets_path = Path(secrets_path) if secrets_path else settings_path.with_name(SECRETS_FILE.name)

    settings_data = _load_yaml(settings_path)
    secrets_data  = _load_yaml(secrets_path)

    # Merge: secrets live under the "secrets" key in AppConfig
    settings_data["secrets"] = secrets_data

    config = AppConfig(**settings_data)
    _resolve_db_path(config, settings_path)
    logger.info(
        "Settings loaded (server=%s:%s, auth.provider=%s, storage=%s)",
        config.server.host,
        config.server.port,
        config.auth.provider,
        config.storage.db_path,
    )
    return config


_config: Optional[AppConfig] = None


def get_config() -> AppConfig:
    """Return the process-wide config, loading it on first use."""
    global _config
    if _config is None:
        _config = load_config()
    return _config


def set_config(config: Optional[AppConfig]) -> None:
    """Set (or clear) the process-wide config. Used by tests."""
    global _config
    _config = config
