"""Helpers for working with the project configuration file."""

from __future__ import annotations

import logging
from collections.abc import Mapping
from pathlib import Path
from typing import Any

import yaml
from pydantic import BaseModel, Field

CONFIG_PATH = Path("config.yaml")

DEFAULT_CONCURRENCY = 3
DEFAULT_STALL_TIMEOUT_S = 30.0
DEFAULT_MAX_DURATION_S = 300.0
DEFAULT_SERVICE_TIMEOUT_S = 120.0

logger = logging.getLogger(__name__)


class PipelineSettings(BaseModel):
    """Worker pool and commit policy."""

    concurrency: int = Field(default=DEFAULT_CONCURRENCY, ge=1)
    stall_timeout_s: float = Field(default=DEFAULT_STALL_TIMEOUT_S, gt=0)
    max_duration_s: float = Field(default=DEFAULT_MAX_DURATION_S, gt=0)
    progressive_commit: bool = True
    commit_unmatched: bool = False


class StorageSettings(BaseModel):
    """Where uploaded bytes and group/item records live."""

    root: Path = Path("data/blobs")
    base_url: str = "file://data/blobs"
    prefix: str = "bulk-import"
    records_path: Path = Path("data/records.json")
    # Remote object storage; leave endpoint empty to store blobs under ``root``.
    endpoint: str = ""
    bucket: str = "bulk-import"
    headers: dict[str, str] = Field(default_factory=dict)


class ConversionSettings(BaseModel):
    """Remote conversion endpoint; an empty URL selects the local converter."""

    service_url: str = ""
    timeout_s: float = Field(default=DEFAULT_SERVICE_TIMEOUT_S, gt=0)
    headers: dict[str, str] = Field(default_factory=dict)


class LoggingSettings(BaseModel):
    """Log level and file; unset values fall back to the BULK_IMPORT_LOG_* env vars."""

    level: str | None = None
    # An empty string disables the log file.
    file: str | None = None


class Settings(BaseModel):
    pipeline: PipelineSettings = Field(default_factory=PipelineSettings)
    storage: StorageSettings = Field(default_factory=StorageSettings)
    conversion: ConversionSettings = Field(default_factory=ConversionSettings)
    logging: LoggingSettings = Field(default_factory=LoggingSettings)


def load_config(path: Path | str = CONFIG_PATH) -> dict[str, Any]:
    """Load the YAML configuration."""
    with Path(path).open("r", encoding="utf-8") as handle:
        return yaml.safe_load(handle) or {}


def settings_from_mapping(raw: Mapping[str, Any] | None) -> Settings:
    """Validate the known configuration sections into a ``Settings`` object."""
    if raw is None:
        return Settings()
    if not isinstance(raw, Mapping):
        raise TypeError("Configuration root must be a mapping.")

    sections = {
        name: raw[name]
        for name in ("pipeline", "storage", "conversion", "logging")
        if raw.get(name) is not None
    }
    return Settings.model_validate(sections)


def load_settings(path: Path | str = CONFIG_PATH) -> Settings:
    """Read ``path`` and return validated settings, or defaults when it is absent."""
    config_path = Path(path)
    if not config_path.exists():
        logger.info("No configuration file at %s; using defaults", config_path)
        return Settings()

    settings = settings_from_mapping(load_config(config_path))
    logger.debug(
        "Loaded settings from %s (concurrency=%d, stall_timeout=%.1fs)",
        config_path,
        settings.pipeline.concurrency,
        settings.pipeline.stall_timeout_s,
    )
    return settings
