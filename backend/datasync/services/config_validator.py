from __future__ import annotations

import re
from dataclasses import dataclass

from apscheduler.triggers.cron import CronTrigger

from datasync.models.copy_configuration import CopyConfiguration

FORBIDDEN_FILTER_KEYWORDS = (
    "DELETE",
    "UPDATE",
    "INSERT",
    "DROP",
    "TRUNCATE",
    "ALTER",
    "CREATE",
    "GRANT",
    "REVOKE",
    "EXEC",
    "EXECUTE",
)

_KEYWORD_PATTERNS = [
    (keyword, re.compile(rf"\b{keyword}\b", re.IGNORECASE)) for keyword in FORBIDDEN_FILTER_KEYWORDS
]

# table, schema.table; same rule for ordering columns
_IDENTIFIER_RE = re.compile(r"^[A-Za-z_][A-Za-z0-9_$]*(\.[A-Za-z_][A-Za-z0-9_$]*)?$")
_COLUMN_RE = re.compile(r"^[A-Za-z_][A-Za-z0-9_$]*$")


@dataclass
class ConfigValidationResult:
    is_valid: bool
    message: str


def is_safe_identifier(name: str | None) -> bool:
    return bool(name) and bool(_IDENTIFIER_RE.match(name))


def split_order_by(order_by: str | None) -> list[str]:
    if not order_by:
        return []
    return [part.strip() for part in order_by.split(",") if part.strip()]


def check_row_filter(row_filter: str | None) -> str | None:
    """Return a rejection reason for an unsafe row filter, or None."""
    if not row_filter or not row_filter.strip():
        return None

    for keyword, pattern in _KEYWORD_PATTERNS:
        if pattern.search(row_filter):
            return f"Row filter contains forbidden keyword: {keyword}"

    if ";" in row_filter:
        return "Row filter cannot contain semicolons (statement chaining not allowed)."

    if "--" in row_filter or "/*" in row_filter:
        return "Row filter cannot contain SQL comments."

    return None


def _blank(value: str | None) -> bool:
    return value is None or not value.strip()


def _invalid(message: str) -> ConfigValidationResult:
    return ConfigValidationResult(is_valid=False, message=message)


def validate_configuration(config: CopyConfiguration) -> ConfigValidationResult:
    if _blank(config.name):
        return _invalid("Configuration name is required.")

    src = config.source
    if _blank(src.server) or _blank(src.database) or _blank(src.table):
        return _invalid("Source database configuration is incomplete.")

    dst = config.destination
    if _blank(dst.server) or _blank(dst.database) or _blank(dst.table):
        return _invalid("Destination database configuration is incomplete.")

    if config.batch_size is None or config.batch_size <= 0:
        return _invalid("Batch size must be greater than 0.")

    reason = check_row_filter(src.row_filter)
    if reason:
        return _invalid(reason)

    if not is_safe_identifier(src.table.strip()):
        return _invalid(f"Source table name '{src.table}' is not a valid identifier.")
    if not is_safe_identifier(dst.table.strip()):
        return _invalid(f"Destination table name '{dst.table}' is not a valid identifier.")

    for column in split_order_by(src.order_by):
        if not _COLUMN_RE.match(column):
            return _invalid(f"Ordering column '{column}' is not a valid identifier.")

    if config.max_retry_attempts is None or config.max_retry_attempts < 0:
        return _invalid("Max retry attempts cannot be negative.")

    if config.is_scheduled:
        if _blank(config.schedule_cron):
            return _invalid("Cron expression is required when scheduling is enabled.")
        try:
            CronTrigger.from_crontab(config.schedule_cron.strip())
        except ValueError as exc:
            return _invalid(f"Invalid cron expression: {exc}")

    return ConfigValidationResult(is_valid=True, message="Configuration is valid.")
