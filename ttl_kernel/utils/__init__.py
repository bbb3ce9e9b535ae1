"""Kernel utilities."""

from ttl_kernel.utils.identifiers import derived_index_name, resolve_target

__all__ = ["derived_index_name", "resolve_target"]
