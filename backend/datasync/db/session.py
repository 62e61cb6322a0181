from __future__ import annotations

import sqlite3
from pathlib import Path

from datasync.config import settings

DB_PATH: Path = settings.INTERNAL_DB_PATH


def get_connection() -> sqlite3.Connection:
    connection = sqlite3.connect(DB_PATH, timeout=30)
    connection.row_factory = sqlite3.Row
    connection.execute("PRAGMA foreign_keys = ON")
    return connection


def _column_exists(conn: sqlite3.Connection, table: str, column: str) -> bool:
    rows = conn.execute(f"PRAGMA table_info({table})").fetchall()
    return any(r["name"] == column for r in rows)


def init_db() -> None:
    Path(DB_PATH).parent.mkdir(parents=True, exist_ok=True)
    with get_connection() as connection:
        connection.execute("PRAGMA journal_mode = WAL")

        connection.execute(
            """
            CREATE TABLE IF NOT EXISTS copy_configurations (
                id INTEGER PRIMARY KEY AUTOINCREMENT,
                name TEXT NOT NULL UNIQUE,
                source_server TEXT NOT NULL,
                source_database TEXT NOT NULL,
                source_table TEXT NOT NULL,
                source_filter TEXT,
                source_order_by TEXT,
                dest_server TEXT NOT NULL,
                dest_database TEXT NOT NULL,
                dest_table TEXT NOT NULL,
                truncate_before_copy INTEGER NOT NULL DEFAULT 0,
                batch_size INTEGER NOT NULL DEFAULT 1000,
                is_scheduled INTEGER NOT NULL DEFAULT 0,
                schedule_cron TEXT,
                enabled INTEGER NOT NULL DEFAULT 1,
                max_retry_attempts INTEGER NOT NULL DEFAULT 3,
                created_at TEXT NOT NULL,
                updated_at TEXT NOT NULL
            )
            """
        )

        # Ordering column was added after the first schema (migration)
        if not _column_exists(connection, "copy_configurations", "source_order_by"):
            connection.execute("ALTER TABLE copy_configurations ADD COLUMN source_order_by TEXT")

        connection.execute(
            """
            CREATE TABLE IF NOT EXISTS copy_jobs (
                id INTEGER PRIMARY KEY AUTOINCREMENT,
                config_id INTEGER NOT NULL REFERENCES copy_configurations(id) ON DELETE CASCADE,
                status TEXT NOT NULL,
                trigger_type TEXT NOT NULL,
                total_records INTEGER,
                processed_records INTEGER NOT NULL DEFAULT 0,
                failed_records INTEGER NOT NULL DEFAULT 0,
                progress_percentage TEXT NOT NULL DEFAULT '0',
                start_time TEXT,
                end_time TEXT,
                duration_seconds INTEGER,
                error_message TEXT,
                last_successful_offset INTEGER NOT NULL DEFAULT 0,
                can_resume INTEGER NOT NULL DEFAULT 0,
                retry_count INTEGER NOT NULL DEFAULT 0,
                created_at TEXT NOT NULL
            )
            """
        )
        connection.execute("CREATE INDEX IF NOT EXISTS ix_copy_jobs_config ON copy_jobs (config_id, status)")

        connection.execute(
            """
            CREATE TABLE IF NOT EXISTS copy_job_logs (
                id INTEGER PRIMARY KEY AUTOINCREMENT,
                job_id INTEGER NOT NULL REFERENCES copy_jobs(id) ON DELETE CASCADE,
                level TEXT NOT NULL,
                message TEXT NOT NULL,
                logged_at TEXT NOT NULL
            )
            """
        )
        connection.execute("CREATE INDEX IF NOT EXISTS ix_copy_job_logs_job ON copy_job_logs (job_id)")

        connection.execute(
            """
            CREATE TABLE IF NOT EXISTS copy_failed_records (
                id INTEGER PRIMARY KEY AUTOINCREMENT,
                job_id INTEGER NOT NULL REFERENCES copy_jobs(id) ON DELETE CASCADE,
                record_data TEXT NOT NULL,
                error_message TEXT NOT NULL,
                retry_count INTEGER NOT NULL DEFAULT 0,
                failed_at TEXT NOT NULL,
                last_retry_at TEXT,
                resolved INTEGER NOT NULL DEFAULT 0
            )
            """
        )
        connection.execute("CREATE INDEX IF NOT EXISTS ix_copy_failed_records_job ON copy_failed_records (job_id)")
        connection.commit()
