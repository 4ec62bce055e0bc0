"""roomrelay application configuration.

Loads settings from a single YAML file:
  * relay.settings.yaml  : non-secret configuration

The file location can be overridden with the ``RELAY_SETTINGS`` environment
variable. ``PORT`` and ``CLIENT_URL`` override the listen port and the
allowed CORS origin.
"""
from __future__ import annotations

import logging
import os
from pathlib import Path
from typing import Any, Dict, List, Literal, Optional

import yaml
from pydantic import BaseModel, Field, field_validator, model_validator

logger = logging.getLogger(__name__)

# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------

SETTINGS_FILE = Path("relay.settings.yaml")
SETTINGS_ENV  = "RELAY_SETTINGS"


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
    host:            str       = "0.0.0.0"
    port:            int       = 5000
    allowed_origins: List[str] = Field(default_factory=lambda: ["http://localhost:5173"])


class ChatSettings(BaseModel):
    """Message log and pagination limits."""
    history_capacity:  int                            = 100
    eviction:          Literal["global", "per_room"]  = "global"
    default_page_size: int                            = 20
    max_page_size:     int                            = 100
    default_room:      str                            = "General"

    @field_validator("history_capacity", "default_page_size", "max_page_size")
    @classmethod
    def _positive(cls, value: int) -> int:
        if value < 1:
            raise ValueError("must be at least 1")
        return value

    @field_validator("default_room")
    @classmethod
    def _non_empty_room(cls, value: str) -> str:
        value = value.strip()
        if not value:
            raise ValueError("default_room must not be empty")
        return value

    @model_validator(mode="after")
    def _page_size_within_max(self) -> "ChatSettings":
        if self.default_page_size > self.max_page_size:
            raise ValueError("default_page_size cannot exceed max_page_size")
        return self


class ClientSettings(BaseModel):
    """Defaults for :class:`roomrelay.client.RelayClient`."""
    reconnect_attempts:  int   = 5
    reconnect_delay:     float = 1.0
    reconnect_delay_max: float = 5.0
    page_size:           int   = 20


class LoggingSettings(BaseModel):
    level: str = "info"


class ArchiveSettings(BaseModel):
    """Optional DuckDB copy of every stored message."""
    enabled: bool = False
    db_path: str  = "relay_archive.duckdb"


class AppConfig(BaseModel):
    server:  ServerSettings  = Field(default_factory=ServerSettings)
    chat:    ChatSettings    = Field(default_factory=ChatSettings)
    client:  ClientSettings  = Field(default_factory=ClientSettings)
    logging: LoggingSettings = Field(default_factory=LoggingSettings)
    archive: ArchiveSettings = Field(default_factory=ArchiveSettings)


# ---------------------------------------------------------------------------
# Environment overrides
# ---------------------------------------------------------------------------


def _apply_env_overrides(data: Dict[str, Any]) -> Dict[str, Any]:
    server = dict(data.get("server") or {})
    port = os.environ.get("PORT")
    if port:
        server["port"] = port
    client_url = os.environ.get("CLIENT_URL")
    if client_url:
        server["allowed_origins"] = [client_url]
    if server:
        data["server"] = server
    return data


# ---------------------------------------------------------------------------
# Public loader
# ---------------------------------------------------------------------------

_config: Optional[AppConfig] = None


def load_config(settings_path: Optional[Path] = None) -> AppConfig:
    """Load settings into a single *AppConfig* object."""
    if settings_path is None:
        settings_path = Path(os.environ.get(SETTINGS_ENV, SETTINGS_FILE))
    data = _apply_env_overrides(_load_yaml(Path(settings_path)))

    config = AppConfig(**data)
    logger.info(
        "Settings loaded (server=%s:%s, capacity=%d, eviction=%s, archive.enabled=%s)",
        config.server.host,
        config.server.port,
        config.chat.history_capacity,
        config.chat.eviction,
        config.archive.enabled,
    )
    return config


def get_config() -> AppConfig:
    """Return the process-wide config, loading it on first use."""
    global _config
    if _config is None:
        _config = load_config()
    return _config


def reset_config() -> None:
    """Drop the cached config (used by tests)."""
    global _config
    _config = None
