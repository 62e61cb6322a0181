from __future__ import annotations

import threading
from decimal import Decimal
from typing import Optional, Sequence

import pytest

from datasync import dependencies
from datasync.db import session
from datasync.models.copy_configuration import CopyConfiguration, DestinationEndpoint, SourceEndpoint
from datasync.models.copy_row import Row
from datasync.services import config_store
from datasync.services.connection_resolver import ConnectionDescriptor, ConnectionResolver
from datasync.services.copy_orchestrator import CopyOrchestrator
from datasync.services.gateway import (
    ExecutionGateway,
    PermanentGatewayError,
    ProbeResult,
    TransientGatewayError,
)

SOURCE_DB = "srcdb"
DEST_DB = "dstdb"
SOURCE_TABLE = "src_items"
DEST_TABLE = "dst_items"


class MemoryGateway(ExecutionGateway):
    """In-process gateway with switches for outages, rejected rows and blocked reads."""

    def __init__(self):
        super().__init__()
        self.tables: dict[str, list[Row]] = {}
        self.primary_keys: dict[str, list[str]] = {}
        self.unreachable: set[str] = set()
        # destination goes down once it holds this many rows
        self.outage_after_rows: Optional[int] = None
        self.rejected_ids: set = set()
        self.unreadable_offsets: set[int] = set()
        self.read_calls: list[tuple[int, int]] = []
        self.read_gate: Optional[threading.Event] = None
        self.read_started = threading.Event()

    def add_table(self, name: str, rows: Sequence[Row] = (), primary_key: Sequence[str] = ("id",)) -> None:
        self.tables[name] = [dict(r) for r in rows]
        self.primary_keys[name] = list(primary_key)

    def _check_reachable(self, conn: ConnectionDescriptor) -> None:
        if conn.database in self.unreachable:
            raise TransientGatewayError(f"could not connect to server: Connection refused ({conn.database})")

    def test_connection(self, conn):
        if conn.database in self.unreachable:
            return ProbeResult(success=False, error_message="Connection refused")
        return ProbeResult(success=True)

    def table_exists(self, conn, table):
        return conn.database not in self.unreachable and table in self.tables

    def primary_key(self, conn, table):
        self._check_reachable(conn)
        return list(self.primary_keys.get(table, []))

    def has_duplicates(self, conn, table, columns):
        self._check_reachable(conn)
        keys = [tuple(r[c] for c in columns) for r in self.tables[table]]
        return len(keys) != len(set(keys))

    def count(self, conn, table, row_filter):
        self._check_reachable(conn)
        return len(self.tables[table])

    def read_page(self, conn, table, row_filter, offset, limit, order_by=None):
        self._check_reachable(conn)
        self.read_calls.append((offset, limit))
        if self.read_gate is not None:
            self.read_started.set()
            self.read_gate.wait(timeout=5)
        if offset in self.unreadable_offsets:
            raise PermanentGatewayError(f"invalid input syntax for type numeric at offset {offset}")
        columns = self.ordering_columns(order_by, self.primary_keys.get(table, []))
        ordered = sorted(self.tables[table], key=lambda r: tuple(r[c] for c in columns))
        return [dict(r) for r in ordered[offset:offset + limit]]

    def write_batch(self, conn, table, rows):
        self._check_reachable(conn)
        target = self.tables[table]
        if self.outage_after_rows is not None and len(target) >= self.outage_after_rows:
            self.unreachable.add(conn.database)
            raise TransientGatewayError("server closed the connection unexpectedly")

        existing = {r["id"] for r in target}
        for row in rows:
            if row["id"] in self.rejected_ids:
                raise PermanentGatewayError(f'new row for relation "{table}" violates check constraint (id={row["id"]})')
            if row["id"] in existing:
                raise PermanentGatewayError(f'duplicate key value violates unique constraint (id={row["id"]})')
        target.extend(dict(r) for r in rows)
        return len(rows)

    def truncate(self, conn, table):
        self._check_reachable(conn)
        self.tables[table].clear()


def make_rows(count: int, start: int = 1) -> list[Row]:
    return [
        {"id": i, "name": f"item-{i}", "amount": Decimal(i) / Decimal(100)}
        for i in range(start, start + count)
    ]


@pytest.fixture(autouse=True)
def internal_db(tmp_path, monkeypatch):
    db_path = tmp_path / "internal.db"
    monkeypatch.setattr(session, "DB_PATH", db_path)
    session.init_db()
    dependencies.reset_instances()
    yield db_path
    dependencies.reset_instances()


@pytest.fixture
def memory_gateway() -> MemoryGateway:
    gateway = MemoryGateway()
    gateway.add_table(SOURCE_TABLE, make_rows(2500))
    gateway.add_table(DEST_TABLE)
    return gateway


@pytest.fixture
def orchestrator(memory_gateway) -> CopyOrchestrator:
    return CopyOrchestrator(gateway=memory_gateway, resolver=ConnectionResolver())


@pytest.fixture
def make_config():
    counter = {"n": 0}

    def _make(**overrides) -> CopyConfiguration:
        counter["n"] += 1
        config = CopyConfiguration(
            id=None,
            name=overrides.pop("name", f"items copy {counter['n']}"),
            source=overrides.pop("source", SourceEndpoint(server="mem", database=SOURCE_DB, table=SOURCE_TABLE)),
            destination=overrides.pop(
                "destination", DestinationEndpoint(server="mem", database=DEST_DB, table=DEST_TABLE)
            ),
            batch_size=1000,
            truncate_before_copy=True,
        )
        for key, value in overrides.items():
            setattr(config, key, value)
        return config_store.create_configuration(config)

    return _make
