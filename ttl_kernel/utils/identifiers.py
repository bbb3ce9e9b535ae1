"""
Identifier resolution for rule targets.

Delete statements and derived indexes are always built from reflected
``Table`` / ``Column`` objects, so SQLAlchemy quotes every identifier and no
user-supplied name is ever interpolated into SQL text.

A collection id is either a bare table name (``orders``) or a schema
qualified one (``audit.events``).
"""

from __future__ import annotations

import hashlib

from sqlalchemy import Column, Date, DateTime, MetaData, Table
from sqlalchemy.engine import Connection, Engine
from sqlalchemy.exc import NoSuchTableError

from ttl_kernel.exceptions import RuleTargetError

# PostgreSQL truncates identifiers beyond 63 bytes.
MAX_IDENTIFIER_LENGTH = 63

INDEX_PREFIX = "idx_ttl_"


def split_collection_id(collection_id: str) -> tuple[str | None, str]:
    """Split ``schema.table`` into ``(schema, table)``; bare names get None."""
    if "." in collection_id:
        schema, _, table = collection_id.partition(".")
        return schema, table
    return None, collection_id


def check_identifier(value: str, what: str, collection_id: str, time_field: str) -> None:
    """Reject empty names and names containing NUL or surrounding whitespace."""
    if not isinstance(value, str) or not value:
        raise RuleTargetError(collection_id, time_field, f"{what} name is empty")
    if "\x00" in value or value != value.strip():
        raise RuleTargetError(
            collection_id, time_field, f"{what} name {value!r} is malformed",
        )


def reflect_collection(bind: Engine | Connection, collection_id: str) -> Table:
    """Reflect the collection's table.

    Raises:
        NoSuchTableError: If the table does not exist.
    """
    schema, name = split_collection_id(collection_id)
    return Table(name, MetaData(), schema=schema, autoload_with=bind)


def resolve_target(
    bind: Engine | Connection,
    collection_id: str,
    time_field: str,
) -> tuple[Table, Column]:
    """Reflect and validate a rule target.

    Returns the table and its time column.

    Raises:
        RuleTargetError: If the collection is missing, the field is missing,
            or the field is not a date/timestamp column.
    """
    check_identifier(collection_id, "collection", collection_id, time_field)
    check_identifier(time_field, "time field", collection_id, time_field)
    for part in split_collection_id(collection_id):
        if part is not None:
            check_identifier(part, "collection", collection_id, time_field)

    try:
        table = reflect_collection(bind, collection_id)
    except NoSuchTableError:
        raise RuleTargetError(
            collection_id, time_field, "collection does not exist",
        ) from None

    if time_field not in table.c:
        raise RuleTargetError(collection_id, time_field, "time field does not exist")

    column = table.c[time_field]
    if not isinstance(column.type, (DateTime, Date)):
        raise RuleTargetError(
            collection_id,
            time_field,
            f"time field has non-temporal type {column.type}",
        )
    return table, column


def derived_index_name(collection_id: str, time_field: str) -> str:
    """Name of the index created to accelerate expiry scans.

    Names longer than PostgreSQL's identifier limit are shortened with a
    stable hash suffix so two long rules never collide.
    """
    _, table = split_collection_id(collection_id)
    name = f"{INDEX_PREFIX}{table}_{time_field}"
    if len(name.encode("utf-8")) <= MAX_IDENTIFIER_LENGTH:
        return name
    digest = hashlib.sha256(f"{collection_id}\x00{time_field}".encode()).hexdigest()[:10]
    head = name.encode("utf-8")[: MAX_IDENTIFIER_LENGTH - 11].decode("utf-8", "ignore")
    return f"{head}_{digest}"
