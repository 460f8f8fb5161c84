"""Chat backend application configuration.

Loads settings from two YAML files:
  * chat.settings.yaml: non-secret configuration
  * chat.secrets.yaml:  secrets (never committed)

Both files are optional; missing files fall back to defaults.
"""
from __future__ import annotations

import logging
from pathlib import Path
from typing import Any, Dict, Literal, Optional

import yaml
from pydantic import BaseModel, Field, field_validator

logger = logging.getLogger(__name__)

# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------

SETTINGS_FILE = Path("chat.settings.yaml")
SECRETS_FILE  = Path("chat.secrets.yaml")


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


class Secrets(BaseModel):
    jwt: JWTSecrets = Field(default_factory=JWTSecrets)


# ---------------------------------------------------------------------------
# Settings models
# ---------------------------------------------------------------------------


class ServerSettings(BaseModel):
    host: str = "0.0.0.0"
    port: int = 8000


class LoggingSettings(BaseModel):
    level: str = "info"


class AuthSettings(BaseModel):
    """Socket authentication policy.

    allow_anonymous: resolve a missing/invalid credential to a guest identity
        instead of refusing the connection.
    """
    allow_anonymous:    bool = False
    algorithm:          str  = "HS256"
    guest_display_name: str  = "Guest"


class ChatSettings(BaseModel):
    max_message_length:    int  = 2000
    redaction_text:        str  = "[Message deleted]"
    banned_users_can_read: bool = True
    outbound_queue_size:   int  = 256
    history_page_size:     int  = 20
    max_history_page_size: int  = 100

    @field_validator("max_message_length", "outbound_queue_size", "history_page_size", "max_history_page_size")
    @classmethod
    def _positive(cls, value: int) -> int:
        if value < 1:
            raise ValueError("must be >= 1")
        return value


class StorageSettings(BaseModel):
    backend:     Literal["memory", "duckdb"] = "memory"
    duckdb_path: str = "chat.duckdb"


class AppConfig(BaseModel):
    server:  ServerSettings  = Field(default_factory=ServerSettings)
    logging: LoggingSettings = Field(default_factory=LoggingSettings)
    auth:    AuthSettings    = Field(default_factory=AuthSettings)
    chat:    ChatSettings    = Field(default_factory=ChatSettings)
    storage: StorageSettings = Field(default_factory=StorageSettings)
    secrets: Secrets         = Field(default_factory=Secrets)


# ---------------------------------------------------------------------------
# Public loader
# ---------------------------------------------------------------------------


def _resolve_storage_path(config: AppConfig, base_dir: Path) -> None:
    """Resolve a relative duckdb_path against the settings file directory."""
    path = Path(config.storage.duckdb_path)
    if path.is_absolute() or config.storage.duckdb_path == ":memory:":
        return
    config.storage.duckdb_path = str(base_dir / path)


def load_config(
    settings_path: Optional[Path] = None,
    secrets_path: Optional[Path] = None,
) -> AppConfig:
    """Load and merge settings + secrets into a single *AppConfig* object."""
    settings_path = Path(settings_path) if settings_path else SETTINGS_FILE
    if secrets_path is None:
        secrets_path = settings_path.with_name(SECRETS_FILE.name)
    secrets_path = Path(secrets_path)

    settings_data = _load_yaml(settings_path)
    secrets_data  = _load_yaml(secrets_path)

    # Merge: secrets live under the "secrets" key in AppConfig
    settings_data["secrets"] = secrets_data

    config = AppConfig(**settings_data)
    _resolve_storage_path(config, settings_path.resolve().parent)
    logger.info(
        "Settings loaded (server=%s:%s, storage=%s, allow_anonymous=%s)",
        config.server.host,
        config.server.port,
        config.storage.backend,
        config.auth.allow_anonymous,
    )
    return config


_config: Optional[AppConfig] = None


def get_config() -> AppConfig:
    """Return the process-wide configuration, loading it on first use."""
    global _config
    if _config is None:
        _config = load_config()
    return _config


def set_config(config: AppConfig) -> None:
    global _config
    _config = config


def reset_config() -> None:
    """Drop the cached configuration (used by tests)."""
    global _config
    _config = None
