from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime


@dataclass
class SourceEndpoint:
    server: str
    database: str
    table: str
    row_filter: str | None = None
    # Stable paging key; primary key of the table when not set
    order_by: str | None = None


@dataclass
class DestinationEndpoint:
    server: str
    database: str
    table: str


@dataclass
class CopyConfiguration:
    id: int | None
    name: str
    source: SourceEndpoint
    destination: DestinationEndpoint
    truncate_before_copy: bool = False
    batch_size: int = 1000
    is_scheduled: bool = False
    schedule_cron: str | None = None
    enabled: bool = True
    max_retry_attempts: int = 3
    created_at: datetime | None = None
    updated_at: datetime | None = None
