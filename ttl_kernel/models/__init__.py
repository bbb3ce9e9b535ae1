"""
ttl_kernel.models -- ORM models for the rule registry and runner leases.

Architecture: ttl_kernel/models. Imports from ttl_kernel.db.base only.
"""

from ttl_kernel.models.expiration_rule import ExpirationRuleModel
from ttl_kernel.models.runner_lease import RunnerLeaseModel

__all__ = [
    "ExpirationRuleModel",
    "RunnerLeaseModel",
]
