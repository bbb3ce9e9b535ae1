"""
Typed Exception Hierarchy for the TTL Kernel.

===============================================================================
WHY TYPED EXCEPTIONS
===============================================================================

The expiration engine runs unattended.  Operators read its failures from
structured logs and from per-rule outcome records, never from a console.
Generic exceptions like ValueError or RuntimeError force callers to parse
messages, so every error here:

  1. Has a TYPED exception class (catch by type, not message)
  2. Has a CODE attribute (machine-readable, copied into log records and
     ``RuleOutcome.error_code``)
  3. Carries structured DATA (rule key, lock name, offending field)

Example - WRONG way:
    try:
        registry.register_rule(...)
    except Exception as e:
        if "does not exist" in str(e):  # FRAGILE
            ...

Example - RIGHT way:
    try:
        registry.register_rule(...)
    except RuleTargetError as e:
        log.warning("bad target", extra={"collection": e.collection_id})

===============================================================================
EXCEPTION HIERARCHY
===============================================================================

All exceptions inherit from TTLError:

    TTLError (base)
    |
    +-- RuleError
    |   +-- RuleNotFoundError
    |   +-- InvalidRuleError
    |   +-- RuleTargetError
    |
    +-- StoreError
    |   +-- RuleEnumerationError
    |   +-- UnsupportedStoreError
    |
    +-- ConcurrencyError
    |   +-- GuardError
    |
    +-- ConfigurationError
        +-- InvalidSchedulerConfigError

===============================================================================
ERROR CODES - QUICK REFERENCE
===============================================================================

Category      | Code                      | When Raised
--------------|---------------------------|-------------------------------------
Rule          | RULE_NOT_FOUND            | No rule for (collection, field)
              | INVALID_RULE              | retention < 0, batch_size < 1, ...
              | RULE_TARGET_INVALID       | Collection/field missing or not temporal
--------------|---------------------------|-------------------------------------
Store         | RULE_ENUMERATION_FAILED   | Active rules could not be loaded
              | UNSUPPORTED_STORE         | No row locator for the dialect
--------------|---------------------------|-------------------------------------
Concurrency   | GUARD_FAILURE             | Lock acquire/release itself failed
--------------|---------------------------|-------------------------------------
Configuration | INVALID_SCHEDULER_CONFIG  | interval_seconds < 1, bad types

===============================================================================
HANDLING PATTERNS
===============================================================================

1. Per-rule failures never escape a cleanup pass.  The deleter converts them
   into ``RuleOutcome`` values carrying ``code``.

2. Pass-level failures (GuardError, RuleEnumerationError) abort the current
   pass only.  The scheduler loop logs them and retries on the next tick.

3. InvalidSchedulerConfigError is raised to whoever asked for the reload;
   the previous configuration stays in effect.
"""

from __future__ import annotations


class TTLError(Exception):
    """
    Base exception for all TTL engine errors.

    All subclasses must have a `code` class attribute for machine-readable
    error identification.
    """

    code: str = "TTL_ERROR"


# Rule-related exceptions


class RuleError(TTLError):
    """Base exception for expiration rule errors."""

    code: str = "RULE_ERROR"


class RuleNotFoundError(RuleError):
    """No expiration rule exists for the given key."""

    code: str = "RULE_NOT_FOUND"

    def __init__(self, collection_id: str, time_field: str):
        self.collection_id = collection_id
        self.time_field = time_field
        super().__init__(
            f"No expiration rule for {collection_id}.{time_field}"
        )


class InvalidRuleError(RuleError):
    """Rule attributes violate registry invariants."""

    code: str = "INVALID_RULE"

    def __init__(self, field: str, value: object, reason: str):
        self.field = field
        self.value = value
        self.reason = reason
        super().__init__(f"Invalid rule {field}={value!r}: {reason}")


class RuleTargetError(RuleError):
    """The rule's collection or time field cannot be used for expiration."""

    code: str = "RULE_TARGET_INVALID"

    def __init__(self, collection_id: str, time_field: str, reason: str):
        self.collection_id = collection_id
        self.time_field = time_field
        self.reason = reason
        super().__init__(
            f"Cannot expire {collection_id}.{time_field}: {reason}"
        )


# Store-related exceptions


class StoreError(TTLError):
    """Base exception for store adapter errors."""

    code: str = "STORE_ERROR"


class RuleEnumerationError(StoreError):
    """Active rules could not be loaded from the registry."""

    code: str = "RULE_ENUMERATION_FAILED"

    def __init__(self, detail: str):
        self.detail = detail
        super().__init__(f"Failed to enumerate active rules: {detail}")


class UnsupportedStoreError(StoreError):
    """The store dialect offers no usable row locator for batch deletes."""

    code: str = "UNSUPPORTED_STORE"

    def __init__(self, dialect: str, collection_id: str):
        self.dialect = dialect
        self.collection_id = collection_id
        super().__init__(
            f"Dialect {dialect!r} has no row locator for {collection_id}: "
            "expected ctid, rowid or a single-column primary key"
        )


# Concurrency-related exceptions


class ConcurrencyError(TTLError):
    """Base exception for concurrency-related errors."""

    code: str = "CONCURRENCY_ERROR"


class GuardError(ConcurrencyError):
    """Acquiring or releasing the single-flight guard failed."""

    code: str = "GUARD_FAILURE"

    def __init__(self, lock_name: str, operation: str, detail: str):
        self.lock_name = lock_name
        self.operation = operation
        self.detail = detail
        super().__init__(
            f"Single-flight guard {lock_name!r} {operation} failed: {detail}"
        )


# Configuration-related exceptions


class ConfigurationError(TTLError):
    """Base exception for configuration errors."""

    code: str = "CONFIGURATION_ERROR"


class InvalidSchedulerConfigError(ConfigurationError):
    """Scheduler configuration input is malformed or out of range."""

    code: str = "INVALID_SCHEDULER_CONFIG"

    def __init__(self, field: str, value: object, reason: str):
        self.field = field
        self.value = value
        self.reason = reason
        super().__init__(f"Invalid scheduler config {field}={value!r}: {reason}")
