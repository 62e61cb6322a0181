from __future__ import annotations

import sqlite3
from datetime import datetime, timezone
from decimal import Decimal
from typing import Optional

from datasync.db.session import get_connection
from datasync.models.copy_job import (
    ACTIVE_STATUSES,
    CopyJob,
    JobLogEntry,
    JobStatus,
    LogLevel,
    TriggerType,
)

_JOB_COLUMNS = """
    id, config_id, status, trigger_type, total_records, processed_records, failed_records,
    progress_percentage, start_time, end_time, duration_seconds, error_message,
    last_successful_offset, can_resume, retry_count, created_at
"""


def utc_now() -> datetime:
    return datetime.now(tz=timezone.utc)


def _iso(value: Optional[datetime]) -> Optional[str]:
    return value.isoformat() if value else None


def _parse(value: Optional[str]) -> Optional[datetime]:
    return datetime.fromisoformat(value) if value else None


def _row_to_job(row: sqlite3.Row) -> CopyJob:
    return CopyJob(
        id=row["id"],
        config_id=row["config_id"],
        status=JobStatus(row["status"]),
        trigger_type=TriggerType(row["trigger_type"]),
        created_at=datetime.fromisoformat(row["created_at"]),
        total_records=row["total_records"],
        processed_records=row["processed_records"],
        failed_records=row["failed_records"],
        progress_percentage=Decimal(row["progress_percentage"] or "0"),
        start_time=_parse(row["start_time"]),
        end_time=_parse(row["end_time"]),
        duration_seconds=row["duration_seconds"],
        error_message=row["error_message"],
        last_successful_offset=row["last_successful_offset"],
        can_resume=bool(row["can_resume"]),
        retry_count=row["retry_count"],
    )


def create_job(config_id: int, trigger_type: TriggerType) -> CopyJob:
    timestamp = utc_now()
    with get_connection() as connection:
        cursor = connection.execute(
            """
            INSERT INTO copy_jobs (config_id, status, trigger_type, processed_records, failed_records,
                                   progress_percentage, last_successful_offset, can_resume, retry_count, created_at)
            VALUES (?, ?, ?, 0, 0, '0', 0, 0, 0, ?)
            """,
            (config_id, JobStatus.PENDING.value, trigger_type.value, timestamp.isoformat()),
        )
        connection.commit()
        job_id = cursor.lastrowid

    return CopyJob(
        id=job_id,
        config_id=config_id,
        status=JobStatus.PENDING,
        trigger_type=trigger_type,
        created_at=timestamp,
    )


def update_job(job: CopyJob, expected_status: Optional[JobStatus] = None) -> bool:
    """Persist every mutable field of ``job``.

    With ``expected_status`` the write only happens while the stored status
    still equals it, so a concurrent cancel is never overwritten. Returns
    whether the row was written.
    """
    params: list = [
        job.status.value,
        job.total_records,
        job.processed_records,
        job.failed_records,
        str(job.progress_percentage),
        _iso(job.start_time),
        _iso(job.end_time),
        job.duration_seconds,
        job.error_message,
        job.last_successful_offset,
        int(job.can_resume),
        job.retry_count,
        job.id,
    ]
    stmt = """
        UPDATE copy_jobs
        SET status = ?, total_records = ?, processed_records = ?, failed_records = ?,
            progress_percentage = ?, start_time = ?, end_time = ?, duration_seconds = ?,
            error_message = ?, last_successful_offset = ?, can_resume = ?, retry_count = ?
        WHERE id = ?
    """
    if expected_status is not None:
        stmt += " AND status = ?"
        params.append(expected_status.value)

    with get_connection() as connection:
        cursor = connection.execute(stmt, params)
        connection.commit()
        return cursor.rowcount > 0


def save_checkpoint(job: CopyJob) -> None:
    """Persist progress counters and the resume offset, leaving status untouched."""
    with get_connection() as connection:
        connection.execute(
            """
            UPDATE copy_jobs
            SET total_records = ?, processed_records = ?, failed_records = ?,
                progress_percentage = ?, last_successful_offset = ?
            WHERE id = ?
            """,
            (
                job.total_records,
                job.processed_records,
                job.failed_records,
                str(job.progress_percentage),
                job.last_successful_offset,
                job.id,
            ),
        )
        connection.commit()


def get_job(job_id: int) -> CopyJob | None:
    with get_connection() as connection:
        row = connection.execute(
            f"SELECT {_JOB_COLUMNS} FROM copy_jobs WHERE id = ?",
            (job_id,),
        ).fetchone()

    if not row:
        return None
    return _row_to_job(row)


def get_jobs_by_config(config_id: int) -> list[CopyJob]:
    with get_connection() as connection:
        rows = connection.execute(
            f"SELECT {_JOB_COLUMNS} FROM copy_jobs WHERE config_id = ? ORDER BY created_at DESC, id DESC",
            (config_id,),
        ).fetchall()
    return [_row_to_job(r) for r in rows]


def get_recent_jobs(limit: int = 50) -> list[CopyJob]:
    with get_connection() as connection:
        rows = connection.execute(
            f"SELECT {_JOB_COLUMNS} FROM copy_jobs ORDER BY created_at DESC, id DESC LIMIT ?",
            (limit,),
        ).fetchall()
    return [_row_to_job(r) for r in rows]


def get_active_jobs(config_id: Optional[int] = None) -> list[CopyJob]:
    statuses = [s.value for s in ACTIVE_STATUSES]
    stmt = f"SELECT {_JOB_COLUMNS} FROM copy_jobs WHERE status IN (?, ?)"
    params: list = list(statuses)
    if config_id is not None:
        stmt += " AND config_id = ?"
        params.append(config_id)
    stmt += " ORDER BY created_at DESC, id DESC"

    with get_connection() as connection:
        rows = connection.execute(stmt, params).fetchall()
    return [_row_to_job(r) for r in rows]


# -------------------------
# Job log
# -------------------------

def add_job_log(job_id: int, level: LogLevel, message: str) -> JobLogEntry:
    timestamp = utc_now()
    with get_connection() as connection:
        cursor = connection.execute(
            "INSERT INTO copy_job_logs (job_id, level, message, logged_at) VALUES (?, ?, ?, ?)",
            (job_id, level.value, message, timestamp.isoformat()),
        )
        connection.commit()
        log_id = cursor.lastrowid

    return JobLogEntry(id=log_id, job_id=job_id, level=level, message=message, logged_at=timestamp)


def get_job_logs(job_id: int) -> list[JobLogEntry]:
    with get_connection() as connection:
        rows = connection.execute(
            """
            SELECT id, job_id, level, message, logged_at
            FROM copy_job_logs
            WHERE job_id = ?
            ORDER BY id ASC
            """,
            (job_id,),
        ).fetchall()

    return [
        JobLogEntry(
            id=row["id"],
            job_id=row["job_id"],
            level=LogLevel(row["level"]),
            message=row["message"],
            logged_at=datetime.fromisoformat(row["logged_at"]),
        )
        for row in rows
    ]
