"""
Copy orchestrator: the job state machine and the batching loop.

    Pending -> Running -> Completed | Failed | Cancelled
    Failed (resumable) -> Pending -> Running -> ...

Each run executes as a supervised asyncio task. Blocking gateway calls run in
worker threads. The checkpoint for a page is persisted before the next page is
read, so a resume never re-reads below the last committed page.
"""
from __future__ import annotations

import asyncio
import json
import logging
from dataclasses import dataclass
from decimal import Decimal
from typing import Optional, Sequence

from datasync.models.copy_configuration import CopyConfiguration
from datasync.models.copy_job import CopyJob, FailedRecord, JobLogEntry, JobStatus, LogLevel, TriggerType
from datasync.models.copy_row import Row, row_to_payload
from datasync.services import config_store, dead_letter_store, job_store
from datasync.services.config_validator import validate_configuration as validate_config_fields
from datasync.services.connection_resolver import ConnectionDescriptor, ConnectionResolver
from datasync.services.error_policy import ErrorKind, classify_error
from datasync.services.gateway import ExecutionGateway, GatewayError
from datasync.services.job_supervisor import JobSupervisor

logger = logging.getLogger(__name__)

_PROCESS_LOG_LEVELS = {
    LogLevel.INFO: logging.INFO,
    LogLevel.WARNING: logging.WARNING,
    LogLevel.ERROR: logging.ERROR,
}

_HUNDRED = Decimal("100")
_CENT = Decimal("0.01")


class PreflightError(Exception):
    pass


@dataclass
class TriggerResult:
    success: bool
    message: str
    job_id: Optional[int] = None


@dataclass
class OperationResult:
    success: bool
    message: str


def _progress(processed: int, total: Optional[int]) -> Decimal:
    if not total:
        return Decimal("0")
    return (Decimal(processed) * _HUNDRED / Decimal(total)).quantize(_CENT)


def _stamp_end(job: CopyJob) -> None:
    job.end_time = job_store.utc_now()
    if job.start_time:
        job.duration_seconds = int((job.end_time - job.start_time).total_seconds())


class CopyOrchestrator:
    def __init__(
        self,
        gateway: ExecutionGateway,
        resolver: ConnectionResolver,
        supervisor: JobSupervisor | None = None,
    ):
        self.gateway = gateway
        self.resolver = resolver
        self.supervisor = supervisor or JobSupervisor()

    # -------------------------
    # Commands
    # -------------------------

    async def execute_copy_job(self, config_id: int, trigger_type: TriggerType = TriggerType.MANUAL) -> TriggerResult:
        config = config_store.get_configuration(config_id)
        if config is None:
            return TriggerResult(success=False, message="Configuration not found.")
        if not config.enabled:
            return TriggerResult(success=False, message="Configuration is disabled.")

        validation = validate_config_fields(config)
        if not validation.is_valid:
            return TriggerResult(success=False, message=validation.message)

        # No await between this check and launch: the guard and the
        # registration happen in one step of the event loop.
        if self._config_busy(config.id):
            return TriggerResult(success=False, message="Configuration already has an active job.")

        job = job_store.create_job(config.id, trigger_type)
        self._launch(job, config)
        logger.info("Copy job %s created for configuration '%s' (%s)", job.id, config.name, trigger_type.value)
        return TriggerResult(success=True, message="Copy job started successfully.", job_id=job.id)

    async def resume_job(self, job_id: int) -> OperationResult:
        job = job_store.get_job(job_id)
        if job is None:
            return OperationResult(success=False, message="Job not found.")
        if not job.can_resume:
            return OperationResult(success=False, message="Job cannot be resumed.")
        if job.status == JobStatus.RUNNING:
            return OperationResult(success=False, message="Job is currently running.")

        config = config_store.get_configuration(job.config_id)
        if config is None:
            return OperationResult(success=False, message="Configuration not found.")
        if not config.enabled:
            return OperationResult(success=False, message="Configuration is disabled.")
        if job.retry_count >= config.max_retry_attempts:
            return OperationResult(
                success=False,
                message=f"Maximum retry attempts ({config.max_retry_attempts}) reached.",
            )

        validation = validate_config_fields(config)
        if not validation.is_valid:
            return OperationResult(success=False, message=validation.message)

        if self._config_busy(config.id):
            return OperationResult(success=False, message="Configuration already has an active job.")

        previous_status = job.status
        job.retry_count += 1
        job.error_message = None
        job.status = JobStatus.PENDING
        job.end_time = None
        job.duration_seconds = None
        if not job_store.update_job(job, expected_status=previous_status):
            return OperationResult(success=False, message="Job state changed; try again.")

        self._log(job, LogLevel.INFO, f"Resume requested (retry #{job.retry_count}).")
        self._launch(job, config)
        return OperationResult(success=True, message="Job resumed successfully.")

    def cancel_job(self, job_id: int) -> bool:
        job = job_store.get_job(job_id)
        if job is None or not job.is_active:
            return False

        previous_status = job.status
        job.status = JobStatus.CANCELLED
        job.can_resume = False
        _stamp_end(job)
        if not job_store.update_job(job, expected_status=previous_status):
            return False

        self._log(job, LogLevel.WARNING, "Job cancelled by user")
        self.supervisor.signal_cancel(job_id)
        return True

    async def validate_configuration(self, config_id: int) -> OperationResult:
        config = config_store.get_configuration(config_id)
        if config is None:
            return OperationResult(success=False, message="Configuration not found.")

        validation = validate_config_fields(config)
        if not validation.is_valid:
            return OperationResult(success=False, message=validation.message)

        source, destination = self._resolve(config)
        try:
            await self._preflight(config, source, destination)
            await asyncio.to_thread(
                self.gateway.ordering_key, source, config.source.table, config.source.order_by
            )
        except (PreflightError, GatewayError) as exc:
            return OperationResult(success=False, message=str(exc))

        return OperationResult(success=True, message="Configuration is valid and ready to use.")

    def recover_interrupted_jobs(self) -> list[int]:
        """Fail jobs a previous process left Pending/Running so they can be resumed."""
        live = set(self.supervisor.active_job_ids())
        recovered = []
        for job in job_store.get_active_jobs():
            if job.id in live:
                continue
            previous_status = job.status
            job.status = JobStatus.FAILED
            job.error_message = "Job interrupted by service restart."
            job.can_resume = True
            _stamp_end(job)
            if job_store.update_job(job, expected_status=previous_status):
                self._log(job, LogLevel.WARNING,
                          f"Job interrupted by service restart. Resume is available from offset {job.last_successful_offset}.")
                recovered.append(job.id)
        return recovered

    async def shutdown(self, timeout: float | None = None) -> None:
        await self.supervisor.shutdown(timeout=timeout)

    # -------------------------
    # Queries
    # -------------------------

    def get_job_status(self, job_id: int) -> CopyJob | None:
        return job_store.get_job(job_id)

    def get_job_logs(self, job_id: int) -> list[JobLogEntry]:
        return job_store.get_job_logs(job_id)

    def get_recent_jobs(self, limit: int = 50) -> list[CopyJob]:
        return job_store.get_recent_jobs(limit)

    def get_active_jobs(self) -> list[CopyJob]:
        return job_store.get_active_jobs()

    def get_jobs_for_config(self, config_id: int) -> list[CopyJob]:
        return job_store.get_jobs_by_config(config_id)

    def get_failed_records(self, job_id: int, include_resolved: bool = True) -> list[FailedRecord]:
        return dead_letter_store.get_failed_records(job_id, include_resolved=include_resolved)

    def resolve_failed_record(self, record_id: int) -> bool:
        return dead_letter_store.resolve_failed_record(record_id)

    # -------------------------
    # Run
    # -------------------------

    def _config_busy(self, config_id: int) -> bool:
        return self.supervisor.is_config_active(config_id) or bool(job_store.get_active_jobs(config_id))

    def _launch(self, job: CopyJob, config: CopyConfiguration) -> None:
        self.supervisor.launch(job.id, config.id, lambda cancel_event: self._run_job(job, config, cancel_event))

    def _resolve(self, config: CopyConfiguration) -> tuple[ConnectionDescriptor, ConnectionDescriptor]:
        source = self.resolver.resolve(config.source.server, config.source.database)
        destination = self.resolver.resolve(config.destination.server, config.destination.database)
        return source, destination

    def _log(self, job: CopyJob, level: LogLevel, message: str) -> None:
        job_store.add_job_log(job.id, level, message)
        logger.log(_PROCESS_LOG_LEVELS[level], "Job %s: %s", job.id, message)

    async def _preflight(
        self,
        config: CopyConfiguration,
        source: ConnectionDescriptor,
        destination: ConnectionDescriptor,
        job: CopyJob | None = None,
    ) -> None:
        if job:
            self._log(job, LogLevel.INFO, "Testing source connection...")
        probe = await asyncio.to_thread(self.gateway.test_connection, source)
        if not probe.success:
            raise PreflightError(f"Cannot connect to source database: {probe.error_message}")

        if job:
            self._log(job, LogLevel.INFO, "Testing destination connection...")
        probe = await asyncio.to_thread(self.gateway.test_connection, destination)
        if not probe.success:
            raise PreflightError(f"Cannot connect to destination database: {probe.error_message}")

        if not await asyncio.to_thread(self.gateway.table_exists, source, config.source.table):
            raise PreflightError(f"Source table '{config.source.table}' does not exist.")
        if not await asyncio.to_thread(self.gateway.table_exists, destination, config.destination.table):
            raise PreflightError(f"Destination table '{config.destination.table}' does not exist.")

    async def _run_job(self, job: CopyJob, config: CopyConfiguration, cancel_event: asyncio.Event) -> None:
        job.status = JobStatus.RUNNING
        job.start_time = job_store.utc_now()
        job.end_time = None
        job.duration_seconds = None
        job.can_resume = True
        if not job_store.update_job(job, expected_status=JobStatus.PENDING):
            logger.info("Job %s left Pending before it started; not running", job.id)
            return

        if job.retry_count > 0:
            self._log(job, LogLevel.INFO,
                      f"Resuming copy job, retry #{job.retry_count}, from offset {job.last_successful_offset}")
        else:
            self._log(job, LogLevel.INFO, f"Starting copy job for configuration '{config.name}'")

        try:
            finished = await self._copy(job, config, cancel_event)
        except Exception as exc:
            self._fail(job, exc)
            return

        if finished:
            self._complete(job)

    async def _copy(self, job: CopyJob, config: CopyConfiguration, cancel_event: asyncio.Event) -> bool:
        """Drive the page loop. Returns False when the run stopped on a cancel signal."""
        src = config.source
        dst = config.destination
        source, destination = self._resolve(config)

        await self._preflight(config, source, destination, job=job)
        ordering = await asyncio.to_thread(self.gateway.ordering_key, source, src.table, src.order_by)
        self._log(job, LogLevel.INFO, f"Paging {src.table} by {', '.join(ordering)}")

        if config.truncate_before_copy and job.last_successful_offset == 0:
            self._log(job, LogLevel.INFO, f"Truncating destination table {dst.table}")
            await asyncio.to_thread(self.gateway.truncate, destination, dst.table)

        total = await asyncio.to_thread(self.gateway.count, source, src.table, src.row_filter)
        job.total_records = total
        job.progress_percentage = _progress(job.processed_records, total)
        job_store.save_checkpoint(job)
        self._log(job, LogLevel.INFO, f"Total records to copy: {total}")

        if total == 0:
            return True

        batch_size = config.batch_size
        offset = job.last_successful_offset
        while offset < total:
            if cancel_event.is_set():
                self._stop_on_signal(job)
                return False

            limit = min(batch_size, total - offset)
            self._log(job, LogLevel.INFO, f"Fetching batch: offset {offset}, size {limit}")
            try:
                rows = await asyncio.to_thread(
                    self.gateway.read_page, source, src.table, src.row_filter, offset, limit, src.order_by
                )
            except Exception as exc:
                if classify_error(exc) is not ErrorKind.PERMANENT:
                    raise
                self._dead_letter_page(job, config, offset, limit, exc)
            else:
                if not rows:
                    self._log(job, LogLevel.WARNING,
                              f"Source returned no rows at offset {offset}; it has fewer rows than counted")
                    break
                await self._write_page(job, config, destination, rows[:limit], offset)

            offset += batch_size
            job.last_successful_offset = offset
            job.progress_percentage = _progress(job.processed_records, total)
            job_store.save_checkpoint(job)

        return True

    async def _write_page(
        self,
        job: CopyJob,
        config: CopyConfiguration,
        destination: ConnectionDescriptor,
        rows: Sequence[Row],
        offset: int,
    ) -> None:
        table = config.destination.table
        try:
            inserted = await asyncio.to_thread(self.gateway.write_batch, destination, table, rows)
        except Exception as exc:
            kind = classify_error(exc)
            if kind is not ErrorKind.PERMANENT:
                self._log(job, LogLevel.ERROR, f"Batch write failed ({kind.value}): {exc}")
                raise
            self._log(job, LogLevel.WARNING, f"Batch write rejected, retrying {len(rows)} rows individually: {exc}")
            await self._salvage_rows(job, destination, table, rows, offset)
            return

        job.processed_records += inserted

    async def _salvage_rows(
        self,
        job: CopyJob,
        destination: ConnectionDescriptor,
        table: str,
        rows: Sequence[Row],
        offset: int,
    ) -> None:
        """Write ``rows`` one at a time, dead-lettering the ones the destination rejects.

        The checkpoint advances with every row, so a transient error part way
        through leaves the offset pointing at the first row not yet handled
        and a resume neither re-inserts nor dead-letters the rows before it.
        """
        failed = 0
        for position, row in enumerate(rows, start=1):
            try:
                await asyncio.to_thread(self.gateway.write_row, destination, table, row)
            except Exception as exc:
                if classify_error(exc) is not ErrorKind.PERMANENT:
                    self._log(job, LogLevel.ERROR, f"Row write failed at offset {offset + position - 1}: {exc}")
                    raise
                dead_letter_store.add_failed_record(job.id, row_to_payload(row), str(exc), retry_count=job.retry_count)
                job.failed_records += 1
                failed += 1
            else:
                job.processed_records += 1

            job.last_successful_offset = offset + position
            job.progress_percentage = _progress(job.processed_records, job.total_records)
            job_store.save_checkpoint(job)

        if failed:
            self._log(job, LogLevel.WARNING, f"{failed} of {len(rows)} rows moved to failed records")

    def _dead_letter_page(
        self,
        job: CopyJob,
        config: CopyConfiguration,
        offset: int,
        limit: int,
        exc: Exception,
    ) -> None:
        payload = json.dumps(
            {
                "sourceTable": config.source.table,
                "rowFilter": config.source.row_filter,
                "offset": offset,
                "limit": limit,
            }
        )
        dead_letter_store.add_failed_record(job.id, payload, str(exc), retry_count=job.retry_count)
        job.failed_records += limit
        self._log(job, LogLevel.ERROR, f"Could not read rows {offset}-{offset + limit - 1}: {exc}")

    # -------------------------
    # Terminal transitions
    # -------------------------

    def _complete(self, job: CopyJob) -> None:
        job.status = JobStatus.COMPLETED
        job.progress_percentage = _HUNDRED
        job.can_resume = False
        job.error_message = None
        _stamp_end(job)
        if job_store.update_job(job, expected_status=JobStatus.RUNNING):
            self._log(
                job,
                LogLevel.INFO,
                f"Copy completed. Processed: {job.processed_records}, Failed: {job.failed_records}",
            )
            if job.failed_records:
                entries = dead_letter_store.count_failed_records(job.id)
                self._log(job, LogLevel.WARNING, f"{entries} failed record entries stored for review")
        else:
            logger.info("Job %s finished its loop after leaving Running; status left as stored", job.id)

    def _fail(self, job: CopyJob, exc: Exception) -> None:
        message = str(exc) or exc.__class__.__name__
        job.status = JobStatus.FAILED
        job.error_message = message
        job.can_resume = True
        _stamp_end(job)
        if job_store.update_job(job, expected_status=JobStatus.RUNNING):
            self._log(
                job,
                LogLevel.ERROR,
                f"Copy failed: {message}. Resume is available from offset {job.last_successful_offset}.",
            )
        else:
            logger.warning("Job %s failed after leaving Running: %s", job.id, message)

    def _stop_on_signal(self, job: CopyJob) -> None:
        stored = job_store.get_job(job.id)
        if stored is not None and stored.status == JobStatus.CANCELLED:
            logger.info("Job %s stopped at offset %s after cancellation", job.id, job.last_successful_offset)
            return

        # Signalled without a user cancel: the service is shutting down
        job.status = JobStatus.FAILED
        job.error_message = "Job interrupted by service shutdown."
        job.can_resume = True
        _stamp_end(job)
        if job_store.update_job(job, expected_status=JobStatus.RUNNING):
            self._log(
                job,
                LogLevel.WARNING,
                f"Job interrupted by service shutdown. Resume is available from offset {job.last_successful_offset}.",
            )
