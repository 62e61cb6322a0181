from __future__ import annotations

import sqlite3
from datetime import datetime, timezone

from datasync.db.session import get_connection
from datasync.models.copy_configuration import CopyConfiguration, DestinationEndpoint, SourceEndpoint


class ConfigStoreError(Exception):
    pass


class DuplicateConfigurationNameError(ConfigStoreError):
    pass


class ConfigurationNotFoundError(ConfigStoreError):
    pass


_CONFIG_COLUMNS = """
    id, name, source_server, source_database, source_table, source_filter, source_order_by,
    dest_server, dest_database, dest_table, truncate_before_copy, batch_size, is_scheduled,
    schedule_cron, enabled, max_retry_attempts, created_at, updated_at
"""


def _row_to_config(row: sqlite3.Row) -> CopyConfiguration:
    return CopyConfiguration(
        id=row["id"],
        name=row["name"],
        source=SourceEndpoint(
            server=row["source_server"],
            database=row["source_database"],
            table=row["source_table"],
            row_filter=row["source_filter"],
            order_by=row["source_order_by"],
        ),
        destination=DestinationEndpoint(
            server=row["dest_server"],
            database=row["dest_database"],
            table=row["dest_table"],
        ),
        truncate_before_copy=bool(row["truncate_before_copy"]),
        batch_size=row["batch_size"],
        is_scheduled=bool(row["is_scheduled"]),
        schedule_cron=row["schedule_cron"],
        enabled=bool(row["enabled"]),
        max_retry_attempts=row["max_retry_attempts"],
        created_at=datetime.fromisoformat(row["created_at"]),
        updated_at=datetime.fromisoformat(row["updated_at"]),
    )


def _params(config: CopyConfiguration) -> tuple:
    return (
        config.name.strip(),
        config.source.server,
        config.source.database,
        config.source.table.strip(),
        config.source.row_filter,
        config.source.order_by,
        config.destination.server,
        config.destination.database,
        config.destination.table.strip(),
        int(config.truncate_before_copy),
        config.batch_size,
        int(config.is_scheduled),
        config.schedule_cron,
        int(config.enabled),
        config.max_retry_attempts,
    )


def create_configuration(config: CopyConfiguration) -> CopyConfiguration:
    timestamp = datetime.now(tz=timezone.utc).isoformat()
    try:
        with get_connection() as connection:
            cursor = connection.execute(
                """
                INSERT INTO copy_configurations (
                    name, source_server, source_database, source_table, source_filter, source_order_by,
                    dest_server, dest_database, dest_table, truncate_before_copy, batch_size,
                    is_scheduled, schedule_cron, enabled, max_retry_attempts, created_at, updated_at
                )
                VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
                """,
                (*_params(config), timestamp, timestamp),
            )
            connection.commit()
            config_id = cursor.lastrowid
    except sqlite3.IntegrityError as exc:
        raise DuplicateConfigurationNameError(
            f"A configuration named '{config.name}' already exists."
        ) from exc

    return get_configuration(config_id)


def get_configuration(config_id: int) -> CopyConfiguration | None:
    with get_connection() as connection:
        row = connection.execute(
            f"SELECT {_CONFIG_COLUMNS} FROM copy_configurations WHERE id = ?",
            (config_id,),
        ).fetchone()

    if not row:
        return None
    return _row_to_config(row)


def list_configurations() -> list[CopyConfiguration]:
    with get_connection() as connection:
        rows = connection.execute(
            f"SELECT {_CONFIG_COLUMNS} FROM copy_configurations ORDER BY name ASC"
        ).fetchall()
    return [_row_to_config(r) for r in rows]


def list_scheduled_configurations() -> list[CopyConfiguration]:
    with get_connection() as connection:
        rows = connection.execute(
            f"""
            SELECT {_CONFIG_COLUMNS}
            FROM copy_configurations
            WHERE is_scheduled = 1 AND enabled = 1 AND schedule_cron IS NOT NULL
            ORDER BY id ASC
            """
        ).fetchall()
    return [_row_to_config(r) for r in rows]


def update_configuration(config: CopyConfiguration) -> CopyConfiguration:
    timestamp = datetime.now(tz=timezone.utc).isoformat()
    try:
        with get_connection() as connection:
            cursor = connection.execute(
                """
                UPDATE copy_configurations
                SET name = ?, source_server = ?, source_database = ?, source_table = ?,
                    source_filter = ?, source_order_by = ?, dest_server = ?, dest_database = ?,
                    dest_table = ?, truncate_before_copy = ?, batch_size = ?, is_scheduled = ?,
                    schedule_cron = ?, enabled = ?, max_retry_attempts = ?, updated_at = ?
                WHERE id = ?
                """,
                (*_params(config), timestamp, config.id),
            )
            connection.commit()
    except sqlite3.IntegrityError as exc:
        raise DuplicateConfigurationNameError(
            f"A configuration named '{config.name}' already exists."
        ) from exc

    if cursor.rowcount == 0:
        raise ConfigurationNotFoundError(f"Configuration {config.id} not found.")
    return get_configuration(config.id)


def delete_configuration(config_id: int) -> bool:
    """Delete a configuration together with its jobs, logs and dead letters."""
    with get_connection() as connection:
        cursor = connection.execute("DELETE FROM copy_configurations WHERE id = ?", (config_id,))
        connection.commit()
        return cursor.rowcount > 0
