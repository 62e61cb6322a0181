"""
Execution gateway contract shared by every relational backend.

A gateway performs the primitive store operations the copy engine needs.
Every call opens its own connection, applies its own timeout and closes the
connection before returning, so callers may retry any single operation.
"""
from __future__ import annotations

from abc import ABC, abstractmethod
from dataclasses import dataclass
from typing import Optional, Sequence

from datasync.models.copy_row import Row
from datasync.services.config_validator import is_safe_identifier, split_order_by
from datasync.services.connection_resolver import ConnectionDescriptor


# -------------------------
# Errors
# -------------------------

class GatewayError(Exception):
    pass


class TransientGatewayError(GatewayError):
    """Connectivity loss, timeout, deadlock: worth retrying later."""


class PermanentGatewayError(GatewayError):
    """Constraint violation or malformed data: tied to the rows themselves."""


class SchemaGatewayError(GatewayError):
    """The table itself cannot be copied safely (bad identifier, no stable order)."""


class UnsafeIdentifierError(SchemaGatewayError):
    pass


class OrderingKeyError(SchemaGatewayError):
    pass


# -------------------------
# Models
# -------------------------

@dataclass
class ProbeResult:
    success: bool
    error_message: Optional[str] = None


@dataclass(frozen=True)
class GatewayTimeouts:
    probe_seconds: int = 30
    bulk_seconds: int = 120


def require_identifier(name: str) -> str:
    name = (name or "").strip()
    if not is_safe_identifier(name):
        raise UnsafeIdentifierError(f"'{name}' is not a valid table identifier")
    return name


def require_columns(columns: Sequence[str]) -> list[str]:
    checked = []
    for column in columns:
        if not is_safe_identifier(column) or "." in column:
            raise UnsafeIdentifierError(f"'{column}' is not a valid column identifier")
        checked.append(column)
    return checked


def normalize_filter(row_filter: Optional[str]) -> Optional[str]:
    """Row filters are stored as predicates; a leading WHERE is tolerated."""
    if not row_filter or not row_filter.strip():
        return None
    predicate = row_filter.strip()
    if predicate[:6].upper() == "WHERE " or predicate.upper() == "WHERE":
        predicate = predicate[6:].strip()
    return predicate or None


class ExecutionGateway(ABC):
    def __init__(self, timeouts: GatewayTimeouts | None = None):
        self.timeouts = timeouts or GatewayTimeouts()

    @abstractmethod
    def count(self, conn: ConnectionDescriptor, table: str, row_filter: Optional[str]) -> int:
        ...

    @abstractmethod
    def read_page(
        self,
        conn: ConnectionDescriptor,
        table: str,
        row_filter: Optional[str],
        offset: int,
        limit: int,
        order_by: Optional[str] = None,
    ) -> list[Row]:
        """Read one page ordered by ``order_by`` followed by the primary key.

        Raises OrderingKeyError when neither gives a stable order: an
        unordered page set is not reproducible across calls, which breaks
        checkpoint-based resume.
        """

    @abstractmethod
    def primary_key(self, conn: ConnectionDescriptor, table: str) -> list[str]:
        ...

    @abstractmethod
    def has_duplicates(self, conn: ConnectionDescriptor, table: str, columns: Sequence[str]) -> bool:
        """Whether two rows of ``table`` share the same values for ``columns``."""

    def ordering_key(self, conn: ConnectionDescriptor, table: str, order_by: Optional[str] = None) -> list[str]:
        """Columns the pages of ``table`` will be ordered by.

        Primary-key columns trail any configured ones as tie-breakers. Without
        a primary key the configured columns must be unique on their own.
        """
        primary_key = self.primary_key(conn, table)
        columns = self.ordering_columns(order_by, primary_key)
        if not primary_key and self.has_duplicates(conn, table, columns):
            raise OrderingKeyError(
                f"Ordering columns ({', '.join(columns)}) are not unique and {table} has no primary key"
            )
        return columns

    @abstractmethod
    def write_batch(self, conn: ConnectionDescriptor, table: str, rows: Sequence[Row]) -> int:
        ...

    def write_row(self, conn: ConnectionDescriptor, table: str, row: Row) -> None:
        self.write_batch(conn, table, [row])

    @abstractmethod
    def truncate(self, conn: ConnectionDescriptor, table: str) -> None:
        ...

    @abstractmethod
    def table_exists(self, conn: ConnectionDescriptor, table: str) -> bool:
        ...

    @abstractmethod
    def test_connection(self, conn: ConnectionDescriptor) -> ProbeResult:
        ...

    @staticmethod
    def ordering_columns(order_by: Optional[str], primary_key: Sequence[str]) -> list[str]:
        explicit = split_order_by(order_by)
        listed = {c.lower() for c in explicit}
        columns = explicit + [c for c in primary_key if c.lower() not in listed]
        if not columns:
            raise OrderingKeyError(
                "No stable ordering key: the table has no primary key and no ordering column is configured"
            )
        return require_columns(columns)
