"""
Configuration schema (``ttl_config.schema``).

Frozen dataclasses for everything the engine reads from configuration.
Construction validates, so an instance in hand is always usable: a reload
either yields a new valid snapshot or raises, never a half-applied one.

Invariants enforced
-------------------
* ``interval_seconds >= 1`` (integers only; bools are rejected).
* ``enabled`` is a real bool.
* ``yield_seconds >= 0`` and ``lease_ttl_seconds >= 1``.
"""

from __future__ import annotations

from dataclasses import asdict, dataclass
from typing import Any

from ttl_kernel.exceptions import InvalidSchedulerConfigError

DEFAULT_INTERVAL_SECONDS = 60
MIN_INTERVAL_SECONDS = 1
DEFAULT_LOCK_NAME = "ttl_expiration_runner"
DEFAULT_YIELD_SECONDS = 0.01
DEFAULT_LEASE_TTL_SECONDS = 3600


@dataclass(frozen=True)
class SchedulerConfig:
    """Process-wide scheduler settings, reloadable at runtime."""

    interval_seconds: int = DEFAULT_INTERVAL_SECONDS
    enabled: bool = True

    def __post_init__(self) -> None:
        interval = self.interval_seconds
        if isinstance(interval, bool) or not isinstance(interval, int):
            raise InvalidSchedulerConfigError(
                "interval_seconds", interval, "must be an integer",
            )
        if interval < MIN_INTERVAL_SECONDS:
            raise InvalidSchedulerConfigError(
                "interval_seconds", interval, f"must be >= {MIN_INTERVAL_SECONDS}",
            )
        if not isinstance(self.enabled, bool):
            raise InvalidSchedulerConfigError(
                "enabled", self.enabled, "must be a boolean",
            )

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)


@dataclass(frozen=True)
class RunnerSettings:
    """Fixed-at-start settings for the cleanup runner.

    These are not reloadable: changing the lock name of a live worker
    would break single-flight against its peers.
    """

    lock_name: str = DEFAULT_LOCK_NAME
    yield_seconds: float = DEFAULT_YIELD_SECONDS
    lease_ttl_seconds: int = DEFAULT_LEASE_TTL_SECONDS

    def __post_init__(self) -> None:
        if not isinstance(self.lock_name, str) or not self.lock_name:
            raise InvalidSchedulerConfigError(
                "lock_name", self.lock_name, "must be a non-empty string",
            )
        if isinstance(self.yield_seconds, bool) or not isinstance(
            self.yield_seconds, (int, float)
        ) or self.yield_seconds < 0:
            raise InvalidSchedulerConfigError(
                "yield_seconds", self.yield_seconds, "must be a number >= 0",
            )
        if isinstance(self.lease_ttl_seconds, bool) or not isinstance(
            self.lease_ttl_seconds, int
        ) or self.lease_ttl_seconds < 1:
            raise InvalidSchedulerConfigError(
                "lease_ttl_seconds", self.lease_ttl_seconds, "must be an integer >= 1",
            )


@dataclass(frozen=True)
class EngineSettings:
    """Everything needed to build a TTLEngine from a configuration file."""

    database_url: str | None = None
    scheduler: SchedulerConfig = SchedulerConfig()
    runner: RunnerSettings = RunnerSettings()
