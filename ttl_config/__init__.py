"""
ttl_config -- configuration sources for the TTL expiration engine.

Responsibility:
    The scheduler never reads files or environment variables itself.  It
    asks a ``ConfigSource`` for a fresh ``SchedulerConfig`` at start and on
    every reload request, and keeps the previous snapshot if that fails.

Architecture position:
    Configuration -- above ``ttl_kernel`` (uses its exceptions and logging),
    below ``ttl_worker``.  The kernel MUST NEVER import from ``ttl_config``.

Failure modes:
    - ``FileNotFoundError`` / ``yaml.YAMLError`` from file sources.
    - ``InvalidSchedulerConfigError`` for malformed values.
"""

from __future__ import annotations

import os
from pathlib import Path
from typing import Mapping, Protocol, runtime_checkable

import yaml

from ttl_config.loader import (
    apply_env_overrides,
    compute_checksum,
    load_yaml_file,
    parse_engine_settings,
)
from ttl_config.schema import (
    DEFAULT_INTERVAL_SECONDS,
    DEFAULT_LOCK_NAME,
    EngineSettings,
    RunnerSettings,
    SchedulerConfig,
)
from ttl_kernel.exceptions import InvalidSchedulerConfigError
from ttl_kernel.logging_config import get_logger

__all__ = [
    "ConfigSource",
    "DEFAULT_INTERVAL_SECONDS",
    "DEFAULT_LOCK_NAME",
    "EngineSettings",
    "FileConfigSource",
    "RunnerSettings",
    "SchedulerConfig",
    "StaticConfigSource",
    "load_engine_settings",
]

logger = get_logger("config")


@runtime_checkable
class ConfigSource(Protocol):
    """Authoritative source of scheduler configuration."""

    def read_config(self) -> SchedulerConfig:
        """Return a validated snapshot.

        Raises:
            InvalidSchedulerConfigError: If the source holds bad values.
        """
        ...


class StaticConfigSource:
    """In-memory source; ``update()`` stands in for editing a config file."""

    def __init__(self, config: SchedulerConfig | None = None):
        self._config = config or SchedulerConfig()

    def update(self, config: SchedulerConfig) -> None:
        self._config = config

    def read_config(self) -> SchedulerConfig:
        return self._config


class FileConfigSource:
    """YAML file plus ``TTL_*`` environment overrides, re-read on every call."""

    def __init__(self, path: Path | str, environ: Mapping[str, str] | None = None):
        self._path = Path(path)
        self._environ = environ

    @property
    def path(self) -> Path:
        return self._path

    def read_settings(self) -> EngineSettings:
        environ = self._environ if self._environ is not None else os.environ
        data = apply_env_overrides(load_yaml_file(self._path), environ)
        settings = parse_engine_settings(data)
        logger.debug(
            "config_file_read",
            extra={
                "path": str(self._path),
                "checksum": compute_checksum(data),
            },
        )
        return settings

    def read_config(self) -> SchedulerConfig:
        try:
            return self.read_settings().scheduler
        except (OSError, yaml.YAMLError) as exc:
            raise InvalidSchedulerConfigError(
                "source", str(self._path), f"unreadable: {exc}",
            ) from exc


def load_engine_settings(
    path: Path | str | None = None,
    environ: Mapping[str, str] | None = None,
) -> EngineSettings:
    """Settings from ``path`` (if given) with environment overrides applied."""
    env = environ if environ is not None else os.environ
    if path is None:
        return parse_engine_settings(apply_env_overrides({}, env))
    return FileConfigSource(path, environ=env).read_settings()
