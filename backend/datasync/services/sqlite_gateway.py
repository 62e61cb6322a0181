from __future__ import annotations

import logging
import sqlite3
import time
from contextlib import closing, contextmanager
from pathlib import Path
from typing import Iterator, Optional, Sequence

from datasync.models.copy_row import Row
from datasync.services.connection_resolver import ConnectionDescriptor
from datasync.services.gateway import (
    ExecutionGateway,
    GatewayError,
    PermanentGatewayError,
    ProbeResult,
    SchemaGatewayError,
    TransientGatewayError,
    normalize_filter,
    require_columns,
    require_identifier,
)

logger = logging.getLogger(__name__)

# Progress handler granularity, in SQLite VM instructions
_PROGRESS_STEPS = 10_000

_SCHEMA_MESSAGES = ("no such table", "no such column", "has no column named", "syntax error")


def _translate(exc: sqlite3.Error, context: str) -> GatewayError:
    message = f"{context}: {exc}"
    if isinstance(exc, sqlite3.IntegrityError):
        return PermanentGatewayError(message)
    if isinstance(exc, (sqlite3.DataError, sqlite3.InterfaceError)):
        return PermanentGatewayError(message)
    if isinstance(exc, sqlite3.OperationalError):
        lowered = str(exc).lower()
        if any(m in lowered for m in _SCHEMA_MESSAGES):
            return SchemaGatewayError(message)
        # locked, busy, interrupted by the deadline, disk I/O
        return TransientGatewayError(message)
    return GatewayError(message)


@contextmanager
def _translated(context: str) -> Iterator[None]:
    try:
        yield
    except GatewayError:
        raise
    except sqlite3.Error as exc:
        raise _translate(exc, context) from exc


def _quote(table: str) -> str:
    return ".".join(f'"{part}"' for part in require_identifier(table).split("."))


def _split_table(table: str) -> tuple[str, str]:
    parts = require_identifier(table).split(".")
    if len(parts) == 2:
        return parts[0], parts[1]
    return "main", parts[0]


def _dict_factory(cursor: sqlite3.Cursor, row: tuple) -> Row:
    return {column[0]: value for column, value in zip(cursor.description, row)}


@contextmanager
def _foreign_keys_relaxed(db: sqlite3.Connection) -> Iterator[None]:
    # PRAGMA foreign_keys is ignored inside a transaction, so this wraps the transaction
    original = db.execute("PRAGMA foreign_keys").fetchone()[0]
    db.execute("PRAGMA foreign_keys = OFF")
    try:
        yield
    finally:
        db.execute(f"PRAGMA foreign_keys = {'ON' if original else 'OFF'}")


class SqliteGateway(ExecutionGateway):
    """Gateway over SQLite files. The server part of a descriptor is ignored;
    the database name is the file path."""

    def _connect(self, conn: ConnectionDescriptor, timeout_seconds: int) -> sqlite3.Connection:
        path = Path(conn.database).expanduser().resolve()
        try:
            db = sqlite3.connect(f"{path.as_uri()}?mode=rw", uri=True, timeout=self.timeouts.probe_seconds)
        except sqlite3.Error as exc:
            raise TransientGatewayError(f"Unable to open {conn.database}: {exc}") from exc

        deadline = time.monotonic() + timeout_seconds
        db.set_progress_handler(lambda: 1 if time.monotonic() > deadline else 0, _PROGRESS_STEPS)
        return db

    # -------------------------
    # Probes
    # -------------------------

    def test_connection(self, conn: ConnectionDescriptor) -> ProbeResult:
        try:
            with closing(self._connect(conn, self.timeouts.probe_seconds)) as db:
                db.execute("SELECT 1").fetchone()
            return ProbeResult(success=True)
        except (GatewayError, sqlite3.Error) as exc:
            return ProbeResult(success=False, error_message=str(exc))

    def table_exists(self, conn: ConnectionDescriptor, table: str) -> bool:
        try:
            schema, name = _split_table(table)
            with closing(self._connect(conn, self.timeouts.probe_seconds)) as db:
                row = db.execute(
                    f'SELECT 1 FROM "{schema}".sqlite_master WHERE type = \'table\' AND name = ?',
                    (name,),
                ).fetchone()
                return row is not None
        except (GatewayError, sqlite3.Error) as exc:
            logger.warning("Table existence probe failed for %s on %s: %s", table, conn, exc)
            return False

    def primary_key(self, conn: ConnectionDescriptor, table: str) -> list[str]:
        with _translated(f"Primary key lookup on {table} failed"):
            with closing(self._connect(conn, self.timeouts.probe_seconds)) as db:
                return self._fetch_primary_key(db, table)

    @staticmethod
    def _fetch_primary_key(db: sqlite3.Connection, table: str) -> list[str]:
        schema, name = _split_table(table)
        rows = db.execute(f'PRAGMA "{schema}".table_info("{name}")').fetchall()
        # column 5 is the 1-based position within the primary key, 0 otherwise
        keyed = sorted((r for r in rows if r[5]), key=lambda r: r[5])
        return [r[1] for r in keyed]

    def has_duplicates(self, conn: ConnectionDescriptor, table: str, columns: Sequence[str]) -> bool:
        grouped = ", ".join(f'"{c}"' for c in require_columns(columns))
        stmt = f"SELECT 1 FROM {_quote(table)} GROUP BY {grouped} HAVING COUNT(*) > 1 LIMIT 1"
        with _translated(f"Uniqueness check on {table} failed"):
            with closing(self._connect(conn, self.timeouts.bulk_seconds)) as db:
                return db.execute(stmt).fetchone() is not None

    # -------------------------
    # Reads
    # -------------------------

    def count(self, conn: ConnectionDescriptor, table: str, row_filter: Optional[str]) -> int:
        stmt = f"SELECT COUNT(*) FROM {_quote(table)}"
        predicate = normalize_filter(row_filter)
        if predicate:
            stmt += f" WHERE {predicate}"
        with _translated(f"Count on {table} failed"):
            with closing(self._connect(conn, self.timeouts.probe_seconds)) as db:
                return int(db.execute(stmt).fetchone()[0])

    def read_page(
        self,
        conn: ConnectionDescriptor,
        table: str,
        row_filter: Optional[str],
        offset: int,
        limit: int,
        order_by: Optional[str] = None,
    ) -> list[Row]:
        quoted = _quote(table)
        predicate = normalize_filter(row_filter)
        with _translated(f"Read of {table} at offset {offset} failed"):
            with closing(self._connect(conn, self.timeouts.bulk_seconds)) as db:
                primary_key = self._fetch_primary_key(db, table)
                columns = self.ordering_columns(order_by, primary_key)
                stmt = f"SELECT * FROM {quoted}"
                if predicate:
                    stmt += f" WHERE {predicate}"
                stmt += " ORDER BY " + ", ".join(f'"{c}"' for c in columns) + " LIMIT ? OFFSET ?"
                db.row_factory = _dict_factory
                return db.execute(stmt, (int(limit), int(offset))).fetchall()

    # -------------------------
    # Writes
    # -------------------------

    def write_batch(self, conn: ConnectionDescriptor, table: str, rows: Sequence[Row]) -> int:
        if not rows:
            return 0
        columns = require_columns(list(rows[0].keys()))
        stmt = "INSERT INTO {} ({}) VALUES ({})".format(
            _quote(table),
            ", ".join(f'"{c}"' for c in columns),
            ", ".join("?" for _ in columns),
        )
        data = [tuple(row.get(c) for c in columns) for row in rows]

        with _translated(f"Insert into {table} failed"):
            with closing(self._connect(conn, self.timeouts.bulk_seconds)) as db:
                with _foreign_keys_relaxed(db):
                    # commits on success, rolls back the whole batch on error
                    with db:
                        db.executemany(stmt, data)
        return len(data)

    def truncate(self, conn: ConnectionDescriptor, table: str) -> None:
        with _translated(f"Truncate of {table} failed"):
            with closing(self._connect(conn, self.timeouts.probe_seconds)) as db:
                with db:
                    db.execute(f"DELETE FROM {_quote(table)}")
