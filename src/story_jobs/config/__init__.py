"""
Configuration system for story-jobs.

This package provides typed configuration classes with:
- Dataclass-based settings with validation
- Environment variable loading
- YAML/TOML file loading
- Sensible defaults with override capability
"""

from .base import LogFormat, LogLevel, StoreBackendType
from .sections import GatewayConfig, JobsConfig, LoggingConfig, PollingConfig, StoreConfig
from .settings import Settings, configure, get_settings, load_env

__all__ = [
    # Types
    "StoreBackendType",
    "LogLevel",
    "LogFormat",
    # Sections
    "PollingConfig",
    "StoreConfig",
    "GatewayConfig",
    "JobsConfig",
    "LoggingConfig",
    # Master config
    "Settings",
    # Global functions
    "get_settings",
    "configure",
    "load_env",
]
