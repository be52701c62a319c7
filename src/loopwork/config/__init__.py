"""
Configuration module for loopwork.

Exports the main components for convenient imports.
"""

from .loader import deep_merge, load_config
from .schema import (
    AppConfig,
    ArchiveConfig,
    CatalogConfig,
    EngineConfig,
    LoggingConfig,
    MemoryConfig,
    RetryConfig,
)

__all__ = [
    "deep_merge",
    "load_config",
    "AppConfig",
    "ArchiveConfig",
    "CatalogConfig",
    "EngineConfig",
    "LoggingConfig",
    "MemoryConfig",
    "RetryConfig",
]
