"""Chat relay application configuration.

Loads settings from a single YAML file:
  * relay.settings.yaml: server, logging, storage and client settings

The file location can be overridden with the RELAY_SETTINGS environment
variable. A missing file is not an error; every section has defaults.
"""
from __future__ import annotations

import logging
import os
from functools import lru_cache
from pathlib import Path
from typing import Any, Dict, List, Literal, Optional

import yaml
from pydantic import BaseModel, Field, field_validator

logger = logging.getLogger(__name__)

# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------

SETTINGS_FILE = Path("relay.settings.yaml")
SETTINGS_ENV_VAR = "RELAY_SETTINGS"


def _load_yaml(path: Path) -> Dict[str, Any]:
    if not path.exists():
        logger.warning("Config file not found: %s", path)
        return {}
    with path.open(encoding="utf-8") as fh:
        return yaml.safe_load(fh) or {}


# ---------------------------------------------------------------------------
# Settings models
# ---------------------------------------------------------------------------


class ServerSettings(BaseModel):
    host:            str  = "0.0.0.0"
    port:            int  = 8000
    reload:          bool = False
    ws_path:         str  = "/ws"
    allowed_origins: List[str] = Field(default_factory=lambda: ["*"])

    @field_validator("ws_path")
    @classmethod
    def _leading_slash(cls, value: str) -> str:
        return value if value.startswith("/") else f"/{value}"


class LoggingSettings(BaseModel):
    level: str = "info"


class StorageSettings(BaseModel):
    """Which Message Store backs the relay."""
    backend: Literal["memory", "duckdb"] = "memory"
    db_path: str = "chat_messages.duckdb"


class ClientSettings(BaseModel):
    """Reconnect schedule used by ChatClient when no policy is passed."""
    reconnect_base_delay:   float = Field(default=1.0, ge=0)
    reconnect_max_delay:    float = Field(default=10.0, ge=0)
    reconnect_max_attempts: int   = Field(default=5, ge=0)


class AppConfig(BaseModel):
    server:  ServerSettings  = Field(default_factory=ServerSettings)
    logging: LoggingSettings = Field(default_factory=LoggingSettings)
    storage: StorageSettings = Field(default_factory=StorageSettings)
    client:  ClientSettings  = Field(default_factory=ClientSettings)


# ---------------------------------------------------------------------------
# Public loader
# ---------------------------------------------------------------------------


def _resolve_db_path(db_path: str, settings_dir: Path) -> str:
    # DuckDB treats ":memory:" as an in-process database, not a file
    if db_path == ":memory:" or Path(db_path).is_absolute():
        return db_path
    return str(settings_dir / db_path)


def load_config(settings_path: Optional[Path] = None) -> AppConfig:
    """Load *relay.settings.yaml* into an :class:`AppConfig`.

    Args:
        settings_path: Explicit file to read. Falls back to the
            RELAY_SETTINGS environment variable, then to
            ``relay.settings.yaml`` in the working directory.

    Returns:
        The parsed configuration. Relative ``storage.db_path`` values are
        resolved against the directory holding the settings file.
    """
    if settings_path is None:
        settings_path = Path(os.environ.get(SETTINGS_ENV_VAR, SETTINGS_FILE))
    settings_path = Path(settings_path)

    config = AppConfig(**_load_yaml(settings_path))
    if settings_path.exists():
        config.storage.db_path = _resolve_db_path(
            config.storage.db_path, settings_path.resolve().parent
        )

    logger.info(
        "Settings loaded (server=%s:%s, ws_path=%s, storage=%s)",
        config.server.host,
        config.server.port,
        config.server.ws_path,
        config.storage.backend,
    )
    return config


@lru_cache(maxsize=1)
def get_config() -> AppConfig:
    """Return the process-wide configuration, loading it on first use."""
    return load_config()
