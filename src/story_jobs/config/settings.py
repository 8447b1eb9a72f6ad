"""
Top-level Settings object, its loaders, and the process-wide instance.
"""

from __future__ import annotations

import dataclasses
import os
import tomllib
from collections.abc import Callable
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any

import jsonschema
from dotenv import find_dotenv, load_dotenv

from ..config_schema import CONFIG_SCHEMA
from ..errors import ConfigError
from .sections import GatewayConfig, JobsConfig, LoggingConfig, PollingConfig, StoreConfig


def _flag(value: str) -> bool:
    return value.strip().lower() in ("1", "true", "yes", "on")


# (env suffix, section, field, parser)
ENV_BINDINGS: tuple[tuple[str, str, str, Callable[[str], Any]], ...] = (
    ("POLL_BASE_INTERVAL", "polling", "base_interval", float),
    ("POLL_MULTIPLIER", "polling", "multiplier", float),
    ("POLL_MAX_INTERVAL", "polling", "max_interval", float),
    ("POLL_JITTER", "polling", "jitter", float),
    ("POLL_MAX_TRANSPORT_FAILURES", "polling", "max_transport_failures", int),
    ("POLL_HARD_TIMEOUT", "polling", "hard_timeout", float),
    ("STORE_BACKEND", "store", "backend", str.lower),
    ("STORE_PATH", "store", "path", Path),
    ("REDIS_URL", "store", "redis_url", str),
    ("REDIS_KEY_PREFIX", "store", "key_prefix", str),
    ("API_BASE_URL", "gateway", "base_url", str),
    ("API_TIMEOUT", "gateway", "timeout", float),
    ("API_TOKEN", "gateway", "auth_token", str),
    ("KEEP_FAILED_SUBMISSIONS", "jobs", "keep_failed_submissions", _flag),
    ("LOG_LEVEL", "logging", "level", str.upper),
    ("LOG_FORMAT", "logging", "format", str.lower),
)

SECTION_TYPES: dict[str, type] = {
    "polling": PollingConfig,
    "store": StoreConfig,
    "gateway": GatewayConfig,
    "jobs": JobsConfig,
    "logging": LoggingConfig,
}


@dataclass
class Settings:
    """
    Everything a JobManager deployment needs, grouped by concern.

    Build one programmatically, or load it with ``from_env``,
    ``from_file`` or ``from_dict``.
    """

    polling: PollingConfig = field(default_factory=PollingConfig)
    store: StoreConfig = field(default_factory=StoreConfig)
    gateway: GatewayConfig = field(default_factory=GatewayConfig)
    jobs: JobsConfig = field(default_factory=JobsConfig)
    logging: LoggingConfig = field(default_factory=LoggingConfig)

    @classmethod
    def _from_sections(cls, sections: dict[str, dict[str, Any]], source: str) -> Settings:
        built: dict[str, Any] = {}
        try:
            for name, section_cls in SECTION_TYPES.items():
                known = {f.name for f in dataclasses.fields(section_cls)}
                values = sections.get(name) or {}
                built[name] = section_cls(**{k: v for k, v in values.items() if k in known})
        except ValueError as exc:
            raise ConfigError(f"Invalid {source} configuration: {exc}", cause=exc) from exc
        return cls(**built)

    @classmethod
    def from_env(cls, prefix: str = "STORY_JOBS_") -> Settings:
        """
        Read ``{prefix}<NAME>`` variables listed in ENV_BINDINGS.

        Example:
            STORY_JOBS_STORE_BACKEND=fs
            STORY_JOBS_STORE_PATH=/var/lib/story-jobs
            STORY_JOBS_API_BASE_URL=https://api.example.com
        """
        sections: dict[str, dict[str, Any]] = {}
        for suffix, section, name, parse in ENV_BINDINGS:
            raw = os.getenv(f"{prefix}{suffix}")
            if not raw:
                continue
            try:
                sections.setdefault(section, {})[name] = parse(raw)
            except ValueError as exc:
                raise ConfigError(f"{prefix}{suffix}={raw!r} is not valid", cause=exc) from exc
        return cls._from_sections(sections, "environment")

    @classmethod
    def from_file(cls, path: str | Path) -> Settings:
        """
        Load a ``.toml``, ``.yaml`` or ``.yml`` file.

        YAML support needs the ``yaml`` extra (PyYAML).
        """
        path = Path(path)
        if not path.is_file():
            raise FileNotFoundError(f"No configuration file at {path}")

        suffix = path.suffix.lower()
        if suffix == ".toml":
            data = tomllib.loads(path.read_text(encoding="utf-8"))
        elif suffix in (".yaml", ".yml"):
            try:
                import yaml  # type: ignore[import-untyped]
            except ImportError as exc:
                raise ImportError("Reading YAML configuration requires PyYAML (pip install 'story-jobs[yaml]')") from exc
            data = yaml.safe_load(path.read_text(encoding="utf-8")) or {}
        else:
            raise ValueError(f"Unsupported config file format: {suffix}")
        return cls.from_dict(data)

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> Settings:
        """Validate ``data`` against CONFIG_SCHEMA, then build each section."""
        try:
            jsonschema.validate(instance=data, schema=CONFIG_SCHEMA)
        except jsonschema.ValidationError as exc:
            location = "/".join(str(p) for p in exc.absolute_path) or "<root>"
            raise ConfigError(f"Configuration validation failed at {location}: {exc.message}", cause=exc) from exc
        return cls._from_sections(data, "file")

    def to_dict(self) -> dict[str, Any]:
        """Plain-data view; paths become strings."""
        result: dict[str, Any] = {}
        for name in SECTION_TYPES:
            section = dataclasses.asdict(getattr(self, name))
            result[name] = {k: str(v) if isinstance(v, Path) else v for k, v in section.items()}
        return result


# =============================================================================
# Process-wide settings
# =============================================================================

_global_settings: Settings | None = None


def get_settings() -> Settings:
    """Process-wide Settings, read from the environment on first use."""
    global _global_settings
    if _global_settings is None:
        _global_settings = Settings.from_env()
    return _global_settings


def configure(settings: Settings | None = None, **sections) -> Settings:
    """
    Replace the process-wide Settings and/or individual sections.

    Example:
        configure(polling=PollingConfig(max_interval=30.0))
    """
    global _global_settings
    current = settings if settings is not None else get_settings()
    for name, value in sections.items():
        if name in SECTION_TYPES:
            setattr(current, name, value)
    _global_settings = current
    return current


def load_env(path: str | None = None, *, override: bool = False) -> bool:
    """
    Populate os.environ from a ``.env`` file (found upwards from cwd if no
    path is given). Returns False when there is nothing to load.
    """
    env_file = path or find_dotenv(usecwd=True)
    if not env_file:
        return False
    return load_dotenv(env_file, override=override)


__all__ = ["Settings", "get_settings", "configure", "load_env"]
