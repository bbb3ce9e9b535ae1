"""Kernel services."""

from ttl_kernel.services.rule_registry import RuleRegistry

__all__ = ["RuleRegistry"]
