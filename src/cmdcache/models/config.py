"""Configuration model for cmdcache.

Captures config.yaml fields (stored next to the cache entries) with
defaults matching the command-line flags.
"""

from __future__ import annotations

import os
from pathlib import Path
from typing import Literal

from pydantic import BaseModel, Field

CONFIG_FILENAME = "config.yaml"


class CacheConfig(BaseModel):
    """Settings loaded from <cache_dir>/config.yaml."""

    model_config = {"extra": "forbid"}

    ttl: int = Field(default=-1, ge=-1)
    delay: bool = False
    keep_failures: bool = False
    strict_decode: bool = False
    clock: Literal["per_stream", "shared"] = "per_stream"
    queue_size: int = Field(default=64, ge=1)
    log_level: Literal["DEBUG", "INFO", "WARNING", "ERROR"] = "WARNING"


def default_cache_dir() -> Path:
    """Resolve the cache directory: $CMDCACHE_DIR, else ~/.cmdcache."""
    override = os.environ.get("CMDCACHE_DIR")
    if override:
        return Path(override).expanduser()
    return Path.home() / ".cmdcache"


def load_config(cache_dir: Path | None = None) -> CacheConfig:
    """Load CacheConfig from config.yaml. Returns defaults if not found.

    Args:
        cache_dir: Directory holding config.yaml. If None, uses
            default_cache_dir().

    Returns:
        Validated CacheConfig instance.

    Raises:
        pydantic.ValidationError: If the file holds unknown or invalid keys.
    """
    if cache_dir is None:
        cache_dir = default_cache_dir()
    config_path = cache_dir / CONFIG_FILENAME
    if not config_path.exists():
        return CacheConfig()
    import yaml

    raw = yaml.safe_load(config_path.read_text(encoding="utf-8"))
    if raw is None:
        return CacheConfig()
    return CacheConfig.model_validate(raw)
