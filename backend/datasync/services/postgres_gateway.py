from __future__ import annotations

import logging
from contextlib import contextmanager
from typing import Any, Iterator, Optional, Sequence

import psycopg
from psycopg import errors as pg_errors
from psycopg import sql
from psycopg.pq import TransactionStatus
from psycopg.rows import dict_row

from datasync.models.copy_row import Row
from datasync.services.connection_resolver import ConnectionDescriptor
from datasync.services.gateway import (
    ExecutionGateway,
    GatewayError,
    PermanentGatewayError,
    ProbeResult,
    TransientGatewayError,
    normalize_filter,
    require_columns,
    require_identifier,
)

logger = logging.getLogger(__name__)

APPLICATION_NAME = "datasync-copy"


def _translate(exc: psycopg.Error, context: str) -> GatewayError:
    message = f"{context}: {exc}".strip()
    # QueryCanceled (statement timeout), DeadlockDetected and SerializationFailure
    # are all OperationalError subclasses in psycopg.
    if isinstance(exc, (psycopg.OperationalError, psycopg.InterfaceError)):
        return TransientGatewayError(message)
    if isinstance(exc, (psycopg.IntegrityError, psycopg.DataError)):
        return PermanentGatewayError(message)
    return GatewayError(message)


@contextmanager
def _translated(context: str) -> Iterator[None]:
    try:
        yield
    except GatewayError:
        raise
    except psycopg.Error as exc:
        raise _translate(exc, context) from exc


def _table_identifier(table: str) -> sql.Identifier:
    return sql.Identifier(*require_identifier(table).split("."))


def _split_table(table: str) -> tuple[Optional[str], str]:
    parts = require_identifier(table).split(".")
    if len(parts) == 2:
        return parts[0], parts[1]
    return None, parts[0]


def _where(row_filter: Optional[str]) -> sql.Composable:
    predicate = normalize_filter(row_filter)
    if predicate is None:
        return sql.SQL("")
    # Predicate text was screened by the configuration validator; it cannot be bound.
    return sql.SQL(" WHERE ") + sql.SQL(predicate)


class PostgresGateway(ExecutionGateway):
    def _connect(self, conn: ConnectionDescriptor, timeout_seconds: int) -> psycopg.Connection:
        kwargs: dict[str, Any] = {
            "host": conn.server,
            "dbname": conn.database,
            "connect_timeout": self.timeouts.probe_seconds,
            "options": f"-c statement_timeout={int(timeout_seconds * 1000)}",
            "application_name": APPLICATION_NAME,
        }
        if conn.port:
            kwargs["port"] = conn.port
        if not conn.integrated_auth:
            kwargs["user"] = conn.username
            kwargs["password"] = conn.password

        try:
            return psycopg.connect(**kwargs)
        except psycopg.Error as exc:
            raise TransientGatewayError(
                f"Unable to connect to {conn.server}/{conn.database}: {exc}"
            ) from exc

    # -------------------------
    # Probes
    # -------------------------

    def test_connection(self, conn: ConnectionDescriptor) -> ProbeResult:
        try:
            with self._connect(conn, self.timeouts.probe_seconds) as pg:
                with pg.cursor() as cur:
                    cur.execute("SELECT 1")
                    cur.fetchone()
            return ProbeResult(success=True)
        except (GatewayError, psycopg.Error) as exc:
            return ProbeResult(success=False, error_message=str(exc))

    def table_exists(self, conn: ConnectionDescriptor, table: str) -> bool:
        try:
            schema, name = _split_table(table)
            with self._connect(conn, self.timeouts.probe_seconds) as pg:
                with pg.cursor() as cur:
                    cur.execute(
                        """
                        SELECT EXISTS (
                            SELECT 1
                            FROM information_schema.tables
                            WHERE table_schema = COALESCE(%s, current_schema())
                              AND table_name = %s
                        )
                        """,
                        (schema, name),
                    )
                    return bool(cur.fetchone()[0])
        except (GatewayError, psycopg.Error) as exc:
            logger.warning("Table existence probe failed for %s on %s: %s", table, conn, exc)
            return False

    def primary_key(self, conn: ConnectionDescriptor, table: str) -> list[str]:
        with _translated(f"Primary key lookup on {table} failed"), self._connect(conn, self.timeouts.probe_seconds) as pg:
            return self._fetch_primary_key(pg, table)

    @staticmethod
    def _fetch_primary_key(pg: psycopg.Connection, table: str) -> list[str]:
        schema, name = _split_table(table)
        with pg.cursor() as cur:
            cur.execute(
                """
                SELECT kcu.column_name
                FROM information_schema.table_constraints tc
                JOIN information_schema.key_column_usage kcu
                  ON tc.constraint_name = kcu.constraint_name
                 AND tc.table_schema = kcu.table_schema
                WHERE tc.constraint_type = 'PRIMARY KEY'
                  AND tc.table_schema = COALESCE(%s, current_schema())
                  AND tc.table_name = %s
                ORDER BY kcu.ordinal_position
                """,
                (schema, name),
            )
            return [r[0] for r in cur.fetchall()]

    def has_duplicates(self, conn: ConnectionDescriptor, table: str, columns: Sequence[str]) -> bool:
        stmt = sql.SQL("SELECT 1 FROM {} GROUP BY {} HAVING COUNT(*) > 1 LIMIT 1").format(
            _table_identifier(table),
            sql.SQL(", ").join(sql.Identifier(c) for c in require_columns(columns)),
        )
        with _translated(f"Uniqueness check on {table} failed"), self._connect(conn, self.timeouts.bulk_seconds) as pg:
            with pg.cursor() as cur:
                cur.execute(stmt)
                return cur.fetchone() is not None

    # -------------------------
    # Reads
    # -------------------------

    def count(self, conn: ConnectionDescriptor, table: str, row_filter: Optional[str]) -> int:
        stmt = sql.SQL("SELECT COUNT(*) FROM {}").format(_table_identifier(table)) + _where(row_filter)
        with _translated(f"Count on {table} failed"), self._connect(conn, self.timeouts.probe_seconds) as pg:
            with pg.cursor() as cur:
                cur.execute(stmt)
                return int(cur.fetchone()[0])

    def read_page(
        self,
        conn: ConnectionDescriptor,
        table: str,
        row_filter: Optional[str],
        offset: int,
        limit: int,
        order_by: Optional[str] = None,
    ) -> list[Row]:
        table_ident = _table_identifier(table)
        with _translated(f"Read of {table} at offset {offset} failed"), self._connect(conn, self.timeouts.bulk_seconds) as pg:
            with pg.cursor(row_factory=dict_row) as cur:
                primary_key = self._fetch_primary_key(pg, table)
                columns = self.ordering_columns(order_by, primary_key)
                # Offset and limit are ints composed as literals so that '%' in a
                # filter predicate is never taken for a placeholder.
                stmt = (
                    sql.SQL("SELECT * FROM {}").format(table_ident)
                    + _where(row_filter)
                    + sql.SQL(" ORDER BY {} LIMIT {} OFFSET {}").format(
                        sql.SQL(", ").join(sql.Identifier(c) for c in columns),
                        sql.Literal(int(limit)),
                        sql.Literal(int(offset)),
                    )
                )
                cur.execute(stmt)
                return list(cur.fetchall())

    # -------------------------
    # Writes
    # -------------------------

    def write_batch(self, conn: ConnectionDescriptor, table: str, rows: Sequence[Row]) -> int:
        if not rows:
            return 0
        columns = require_columns(list(rows[0].keys()))
        table_ident = _table_identifier(table)
        stmt = sql.SQL("INSERT INTO {} ({}) OVERRIDING SYSTEM VALUE VALUES ({})").format(
            table_ident,
            sql.SQL(", ").join(sql.Identifier(c) for c in columns),
            sql.SQL(", ").join(sql.Placeholder() for _ in columns),
        )
        data = [tuple(row.get(c) for c in columns) for row in rows]

        with _translated(f"Insert into {table} failed"), self._connect(conn, self.timeouts.bulk_seconds) as pg:
            with pg.cursor() as cur:
                with _foreign_keys_relaxed(cur, table):
                    cur.executemany(stmt, data)
                _advance_owned_sequences(cur, table, columns)
        return len(data)

    def truncate(self, conn: ConnectionDescriptor, table: str) -> None:
        stmt = sql.SQL("TRUNCATE TABLE {}").format(_table_identifier(table))
        with _translated(f"Truncate of {table} failed"), self._connect(conn, self.timeouts.probe_seconds) as pg:
            with pg.cursor() as cur:
                cur.execute(stmt)


@contextmanager
def _foreign_keys_relaxed(cur: psycopg.Cursor, table: str) -> Iterator[None]:
    """Skip FK triggers for the enclosed statements, restoring the previous role on exit.

    The role is set with SET LOCAL, so a failed insert that rolls the
    transaction back restores it as well.
    """
    cur.execute("SHOW session_replication_role")
    original = cur.fetchone()[0]
    relaxed = False
    try:
        with cur.connection.transaction():
            cur.execute("SET LOCAL session_replication_role = replica")
        relaxed = True
    except pg_errors.InsufficientPrivilege:
        logger.warning("Cannot relax foreign keys on %s (insufficient privilege); inserting with checks on", table)

    try:
        yield
    finally:
        if relaxed and cur.connection.info.transaction_status == TransactionStatus.INTRANS:
            cur.execute(
                sql.SQL("SET LOCAL session_replication_role = {}").format(sql.Literal(original))
            )


def _advance_owned_sequences(cur: psycopg.Cursor, table: str, columns: Sequence[str]) -> None:
    """Move serial/identity sequences past the copied values so later inserts do not collide."""
    qualified = _table_identifier(table).as_string(cur)
    for column in columns:
        cur.execute("SELECT pg_get_serial_sequence(%s, %s)", (qualified, column))
        found = cur.fetchone()
        sequence = found[0] if found else None
        if not sequence:
            continue
        try:
            with cur.connection.transaction():
                cur.execute(
                    sql.SQL("SELECT setval(%s, GREATEST((SELECT COALESCE(MAX({}), 0) FROM {}), 1))").format(
                        sql.Identifier(column),
                        _table_identifier(table),
                    ),
                    (sequence,),
                )
        except pg_errors.InsufficientPrivilege:
            logger.warning("Cannot advance sequence %s for %s.%s", sequence, table, column)
