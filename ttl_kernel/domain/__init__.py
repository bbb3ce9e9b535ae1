"""Pure domain types shared by the TTL packages.  ZERO I/O."""

from ttl_kernel.domain.clock import Clock, DeterministicClock, SystemClock
from ttl_kernel.domain.rules import (
    DEFAULT_BATCH_SIZE,
    ExpirationRule,
    RuleKey,
    RuleSummary,
    validate_rule_limits,
)

__all__ = [
    "Clock",
    "DEFAULT_BATCH_SIZE",
    "DeterministicClock",
    "ExpirationRule",
    "RuleKey",
    "RuleSummary",
    "SystemClock",
    "validate_rule_limits",
]
