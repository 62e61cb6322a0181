from __future__ import annotations

import sqlite3
from datetime import datetime, timezone

from datasync.db.session import get_connection
from datasync.models.copy_job import FailedRecord


def _row_to_record(row: sqlite3.Row) -> FailedRecord:
    return FailedRecord(
        id=row["id"],
        job_id=row["job_id"],
        record_data=row["record_data"],
        error_message=row["error_message"],
        retry_count=row["retry_count"],
        failed_at=datetime.fromisoformat(row["failed_at"]),
        last_retry_at=datetime.fromisoformat(row["last_retry_at"]) if row["last_retry_at"] else None,
        resolved=bool(row["resolved"]),
    )


def add_failed_record(job_id: int, record_data: str, error_message: str, retry_count: int = 0) -> FailedRecord:
    """Append one dead-letter entry. Entries are never updated except to mark them resolved."""
    failed_at = datetime.now(tz=timezone.utc)
    with get_connection() as connection:
        cursor = connection.execute(
            """
            INSERT INTO copy_failed_records (job_id, record_data, error_message, retry_count, failed_at, resolved)
            VALUES (?, ?, ?, ?, ?, 0)
            """,
            (job_id, record_data, error_message, retry_count, failed_at.isoformat()),
        )
        connection.commit()
        record_id = cursor.lastrowid

    return FailedRecord(
        id=record_id,
        job_id=job_id,
        record_data=record_data,
        error_message=error_message,
        retry_count=retry_count,
        failed_at=failed_at,
    )


def get_failed_records(job_id: int, include_resolved: bool = True) -> list[FailedRecord]:
    stmt = """
        SELECT id, job_id, record_data, error_message, retry_count, failed_at, last_retry_at, resolved
        FROM copy_failed_records
        WHERE job_id = ?
    """
    if not include_resolved:
        stmt += " AND resolved = 0"
    stmt += " ORDER BY id ASC"

    with get_connection() as connection:
        rows = connection.execute(stmt, (job_id,)).fetchall()
    return [_row_to_record(r) for r in rows]


def count_failed_records(job_id: int) -> int:
    with get_connection() as connection:
        row = connection.execute(
            "SELECT COUNT(*) AS n FROM copy_failed_records WHERE job_id = ?",
            (job_id,),
        ).fetchone()
    return int(row["n"])


def resolve_failed_record(record_id: int) -> bool:
    with get_connection() as connection:
        cursor = connection.execute(
            "UPDATE copy_failed_records SET resolved = 1 WHERE id = ?",
            (record_id,),
        )
        connection.commit()
        return cursor.rowcount > 0
