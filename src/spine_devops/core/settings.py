"""Process-wide settings for spine-devops.

Per-run operator input (service, env, hosts, buckets) lives on the pydantic
configs in :mod:`spine_devops.deploy.config`. This module holds the knobs
that apply to every run on a machine or CI runner: log level and format,
registry retention, where the SQL schema directory lives, and how often the
stability ticker looks for stopped tasks.

Examples:
    >>> from spine_devops.core.settings import get_settings
    >>> get_settings().stability_tick_seconds
    10.0

    CI sets ``SPINE_DEVOPS_LOG_FORMAT=json`` to get ECS-compatible output.

Tags:
    settings, configuration, pydantic-settings, environment
"""

from __future__ import annotations

from functools import lru_cache
from pathlib import Path
from typing import Literal

from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict


class DevopsSettings(BaseSettings):
    """Settings shared by every spine-devops command.

    Fields
    ──────
    log_level              : Root log level
    log_format             : ``json``, ``console`` or ``auto`` (JSON when not a TTY)
    default_max_images     : Registry retention when ``AWS_REPOSITORY_MAX_IMAGES`` is unset
    migrations_dir         : Directory holding ``*.sql`` schema migrations
    stability_tick_seconds : Interval of the stopped-task ticker
    docker_timeout_seconds : Timeout for a single docker build/push
    """

    model_config = SettingsConfigDict(
        env_prefix="SPINE_DEVOPS_",
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore",
    )

    # ── Observability ────────────────────────────────────────────
    log_level: str = "INFO"
    log_format: Literal["json", "console", "auto"] = "auto"

    # ── Registry ─────────────────────────────────────────────────
    default_max_images: int = Field(default=1000, ge=1)

    # ── Schema ───────────────────────────────────────────────────
    migrations_dir: Path = Field(
        default=Path("schema/migrations"),
        description="Directory with numbered .sql files, relative to the project root",
    )

    # ── Timing ───────────────────────────────────────────────────
    stability_tick_seconds: float = Field(default=10.0, gt=0)
    docker_timeout_seconds: int = Field(default=3600, gt=0)

    @property
    def json_logs(self) -> bool | None:
        """Tri-state flag for :func:`spine_devops.core.logging.configure_logging`."""
        if self.log_format == "auto":
            return None
        return self.log_format == "json"


@lru_cache(maxsize=1)
def get_settings() -> DevopsSettings:
    """Return the cached process settings."""
    return DevopsSettings()


__all__ = ["DevopsSettings", "get_settings"]
