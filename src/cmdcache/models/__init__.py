"""cmdcache data models - re-exports all public model classes."""

from cmdcache.models.config import CacheConfig, default_cache_dir, load_config

__all__ = [
    "CacheConfig",
    "default_cache_dir",
    "load_config",
]
