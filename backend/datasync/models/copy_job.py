from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime
from decimal import Decimal
from enum import Enum


class JobStatus(str, Enum):
    PENDING = "Pending"
    RUNNING = "Running"
    COMPLETED = "Completed"
    FAILED = "Failed"
    CANCELLED = "Cancelled"


ACTIVE_STATUSES = (JobStatus.PENDING, JobStatus.RUNNING)


class TriggerType(str, Enum):
    MANUAL = "Manual"
    SCHEDULED = "Scheduled"


class LogLevel(str, Enum):
    INFO = "Info"
    WARNING = "Warning"
    ERROR = "Error"


@dataclass
class CopyJob:
    id: int
    config_id: int
    status: JobStatus
    trigger_type: TriggerType
    created_at: datetime
    total_records: int | None = None
    processed_records: int = 0
    failed_records: int = 0
    progress_percentage: Decimal = Decimal("0")
    start_time: datetime | None = None
    end_time: datetime | None = None
    duration_seconds: int | None = None
    error_message: str | None = None
    last_successful_offset: int = 0
    can_resume: bool = False
    retry_count: int = 0

    @property
    def is_active(self) -> bool:
        return self.status in ACTIVE_STATUSES


@dataclass
class JobLogEntry:
    id: int
    job_id: int
    level: LogLevel
    message: str
    logged_at: datetime


@dataclass
class FailedRecord:
    id: int
    job_id: int
    record_data: str
    error_message: str
    retry_count: int
    failed_at: datetime
    last_retry_at: datetime | None = None
    resolved: bool = False
