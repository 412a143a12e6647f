"""Unified configuration schema for davsync.

Defines Pydantic models for the YAML config structure with dedicated
sections for the WebDAV connection, sync behaviour, and logging, plus an
adapter that flattens a validated config into the fallback dict consumed
by ``load_config()``.

Usage:
    from davsync.config_schema import build_config, to_fallbacks

    raw = load_hierarchical_config()
    unified = build_config(raw)
    config = load_config(yaml_fallbacks=to_fallbacks(unified))
"""

from __future__ import annotations

import logging
from typing import Any

from pydantic import BaseModel, Field

logger = logging.getLogger(__name__)


# ---------------------------------------------------------------------------
# Section models
# ---------------------------------------------------------------------------


class WebDavConfig(BaseModel):
    """WebDAV server connection settings.

    All fields are optional to support zero-config: env vars and CLI args
    can supply them at runtime instead.
    """

    url: str | None = Field(default=None, description="WebDAV base URL")
    username: str | None = Field(
        default=None, description="Basic-auth username"
    )
    password: str | None = Field(
        default=None, description="Basic-auth password"
    )
    remote_folder: str | None = Field(
        default=None, description="Subfolder below the base URL to sync"
    )
    insecure: bool = Field(
        default=False,
        description="Disable SSL verification (development only)",
    )
    timeout: int = Field(
        default=300,
        ge=1,
        le=3600,
        description="Read timeout per request in seconds",
    )

    model_config = {"frozen": True}


class SyncConfig(BaseModel):
    """Sync behaviour settings."""

    local_root: str | None = Field(
        default=None, description="Local directory kept in sync"
    )
    auto_sync: bool = Field(
        default=False, description="Run passes on a timer"
    )
    interval_minutes: int = Field(
        default=15,
        ge=1,
        le=1440,
        description="Auto-sync interval in minutes (1-1440)",
    )
    state_file: str | None = Field(
        default=None, description="Override sync state file location"
    )
    directory_settle_seconds: float = Field(
        default=0.5,
        ge=0,
        le=30,
        description="Pause after creating remote collections",
    )
    debug: bool = Field(default=False, description="Enable debug mode")

    model_config = {"frozen": True}


class LoggingConfig(BaseModel):
    """Logging configuration.

    Attributes:
        level: Log level name (DEBUG, INFO, WARNING, ERROR, CRITICAL).
        file: Optional log file path.
    """

    level: str = Field(default="INFO", description="Log level")
    file: str | None = Field(default=None, description="Log file path")

    model_config = {"frozen": True}


# ---------------------------------------------------------------------------
# Top-level unified config
# ---------------------------------------------------------------------------


class UnifiedConfig(BaseModel):
    """Top-level unified configuration.

    Every section has sensible defaults, so ``UnifiedConfig()``
    (zero-config) is always valid.
    """

    webdav: WebDavConfig = Field(default_factory=WebDavConfig)
    sync: SyncConfig = Field(default_factory=SyncConfig)
    logging: LoggingConfig = Field(default_factory=LoggingConfig)

    model_config = {"frozen": True}


# ---------------------------------------------------------------------------
# Factory function
# ---------------------------------------------------------------------------


def build_config(raw_data: dict) -> UnifiedConfig:
    """Construct a ``UnifiedConfig`` from the raw dict returned by
    ``load_hierarchical_config()``.

    Handles missing sections gracefully -- anything absent gets defaults.
    """
    if not raw_data:
        return UnifiedConfig()

    return UnifiedConfig(**raw_data)


# ---------------------------------------------------------------------------
# Adapter: UnifiedConfig -> load_config fallbacks
# ---------------------------------------------------------------------------


def to_fallbacks(unified: UnifiedConfig) -> dict[str, Any]:
    """Flatten the ``webdav`` and ``sync`` sections into one dict.

    ``None`` values are dropped so that ``load_config()`` falls through
    to its own defaults for them.
    """
    merged = {
        **unified.webdav.model_dump(),
        **unified.sync.model_dump(),
    }
    return {k: v for k, v in merged.items() if v is not None}
