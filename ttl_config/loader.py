"""
Configuration Loader (``ttl_config.loader``).

Responsibility
--------------
Reads the engine's YAML file, applies ``TTL_*`` environment overrides and
parses the result into the frozen dataclasses of ``ttl_config.schema``.

File layout::

    database_url: postgresql+psycopg2://ttl@localhost/app
    scheduler:
      interval_seconds: 60
      enabled: true
    runner:
      lock_name: ttl_expiration_runner
      yield_seconds: 0.01
      lease_ttl_seconds: 3600

Environment overrides (applied after the file, before validation):
``TTL_DATABASE_URL``, ``TTL_INTERVAL_SECONDS``, ``TTL_ENABLED``.

Failure modes
-------------
* Missing YAML file  -> ``FileNotFoundError`` propagates.
* Malformed YAML  -> ``yaml.YAMLError`` propagates.
* Wrong shapes, types or ranges  -> ``InvalidSchedulerConfigError``.
"""

from __future__ import annotations

import hashlib
import json
from pathlib import Path
from typing import Any, Mapping

import yaml

from ttl_config.schema import (
    DEFAULT_INTERVAL_SECONDS,
    DEFAULT_LEASE_TTL_SECONDS,
    DEFAULT_LOCK_NAME,
    DEFAULT_YIELD_SECONDS,
    EngineSettings,
    RunnerSettings,
    SchedulerConfig,
)
from ttl_kernel.exceptions import InvalidSchedulerConfigError

ENV_DATABASE_URL = "TTL_DATABASE_URL"
ENV_INTERVAL_SECONDS = "TTL_INTERVAL_SECONDS"
ENV_ENABLED = "TTL_ENABLED"

_TRUE_WORDS = frozenset({"1", "true", "yes", "on"})
_FALSE_WORDS = frozenset({"0", "false", "no", "off"})


def load_yaml_file(path: Path) -> dict[str, Any]:
    """
    Load a single YAML file and return its contents as a dict.

    Raises:
        FileNotFoundError: if the file does not exist.
        yaml.YAMLError: if the file contains invalid YAML.
        InvalidSchedulerConfigError: if the document is not a mapping.
    """
    with open(path, encoding="utf-8") as f:
        data = yaml.safe_load(f)
    if data is None:
        return {}
    if not isinstance(data, dict):
        raise InvalidSchedulerConfigError(
            "document", type(data).__name__, "top level must be a mapping",
        )
    return data


def parse_bool(field: str, value: Any) -> bool:
    """Accept real bools and the usual on/off words from env vars."""
    if isinstance(value, bool):
        return value
    if isinstance(value, str):
        word = value.strip().lower()
        if word in _TRUE_WORDS:
            return True
        if word in _FALSE_WORDS:
            return False
    raise InvalidSchedulerConfigError(field, value, "must be a boolean")


def parse_int(field: str, value: Any) -> int:
    """Accept ints and integer strings; reject bools and floats."""
    if isinstance(value, bool):
        raise InvalidSchedulerConfigError(field, value, "must be an integer")
    if isinstance(value, int):
        return value
    if isinstance(value, str):
        try:
            return int(value.strip())
        except ValueError:
            pass
    raise InvalidSchedulerConfigError(field, value, "must be an integer")


def _section(data: Mapping[str, Any], name: str) -> Mapping[str, Any]:
    section = data.get(name) or {}
    if not isinstance(section, Mapping):
        raise InvalidSchedulerConfigError(name, section, "must be a mapping")
    return section


def parse_scheduler_config(data: Mapping[str, Any]) -> SchedulerConfig:
    """Parse the ``scheduler`` section (missing keys take defaults)."""
    section = _section(data, "scheduler")
    return SchedulerConfig(
        interval_seconds=parse_int(
            "interval_seconds",
            section.get("interval_seconds", DEFAULT_INTERVAL_SECONDS),
        ),
        enabled=parse_bool("enabled", section.get("enabled", True)),
    )


def parse_runner_settings(data: Mapping[str, Any]) -> RunnerSettings:
    """Parse the ``runner`` section (missing keys take defaults)."""
    section = _section(data, "runner")
    yield_seconds = section.get("yield_seconds", DEFAULT_YIELD_SECONDS)
    if isinstance(yield_seconds, int) and not isinstance(yield_seconds, bool):
        yield_seconds = float(yield_seconds)
    return RunnerSettings(
        lock_name=section.get("lock_name", DEFAULT_LOCK_NAME),
        yield_seconds=yield_seconds,
        lease_ttl_seconds=parse_int(
            "lease_ttl_seconds",
            section.get("lease_ttl_seconds", DEFAULT_LEASE_TTL_SECONDS),
        ),
    )


def apply_env_overrides(
    data: Mapping[str, Any],
    environ: Mapping[str, str],
) -> dict[str, Any]:
    """Return a copy of ``data`` with ``TTL_*`` variables applied."""
    merged: dict[str, Any] = dict(data)
    scheduler = dict(_section(data, "scheduler"))

    if environ.get(ENV_INTERVAL_SECONDS):
        scheduler["interval_seconds"] = environ[ENV_INTERVAL_SECONDS]
    if environ.get(ENV_ENABLED):
        scheduler["enabled"] = environ[ENV_ENABLED]
    if environ.get(ENV_DATABASE_URL):
        merged["database_url"] = environ[ENV_DATABASE_URL]

    merged["scheduler"] = scheduler
    return merged


def parse_engine_settings(data: Mapping[str, Any]) -> EngineSettings:
    database_url = data.get("database_url")
    if database_url is not None and not isinstance(database_url, str):
        raise InvalidSchedulerConfigError(
            "database_url", database_url, "must be a string",
        )
    return EngineSettings(
        database_url=database_url,
        scheduler=parse_scheduler_config(data),
        runner=parse_runner_settings(data),
    )


def compute_checksum(data: dict[str, Any]) -> str:
    """
    SHA-256 of the canonical JSON form of ``data``.

    Identical data always produces identical checksums, so reload logs show
    whether the effective configuration actually changed.
    """
    canonical = json.dumps(data, sort_keys=True, default=str)
    return hashlib.sha256(canonical.encode()).hexdigest()
