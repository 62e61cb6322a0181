from __future__ import annotations

from typing import Literal, Optional

from fastapi import APIRouter, Depends, HTTPException, Query, status
from pydantic import BaseModel

from datasync.dependencies import get_orchestrator
from datasync.models.copy_job import CopyJob, FailedRecord, JobLogEntry
from datasync.services.copy_orchestrator import CopyOrchestrator

router = APIRouter(prefix="/api/copy-jobs", tags=["copy-jobs"])


# -------------------------
# API models
# -------------------------

class CopyJobResponse(BaseModel):
    id: int
    configId: int
    status: Literal["Pending", "Running", "Completed", "Failed", "Cancelled"]
    triggerType: Literal["Manual", "Scheduled"]
    totalRecords: Optional[int] = None
    processedRecords: int = 0
    failedRecords: int = 0
    progressPercentage: float = 0.0
    startTime: Optional[str] = None
    endTime: Optional[str] = None
    durationSeconds: Optional[int] = None
    errorMessage: Optional[str] = None
    lastSuccessfulOffset: int = 0
    canResume: bool = False
    retryCount: int = 0
    createdAt: str


class JobLogResponse(BaseModel):
    id: int
    jobId: int
    level: Literal["Info", "Warning", "Error"]
    message: str
    loggedAt: str


class FailedRecordResponse(BaseModel):
    id: int
    jobId: int
    recordData: str
    errorMessage: str
    retryCount: int
    failedAt: str
    lastRetryAt: Optional[str] = None
    resolved: bool = False


class OperationResponse(BaseModel):
    success: bool
    message: str


# -------------------------
# Helpers
# -------------------------

def job_to_response(job: CopyJob) -> CopyJobResponse:
    return CopyJobResponse(
        id=job.id,
        configId=job.config_id,
        status=job.status.value,
        triggerType=job.trigger_type.value,
        totalRecords=job.total_records,
        processedRecords=job.processed_records,
        failedRecords=job.failed_records,
        progressPercentage=float(job.progress_percentage),
        startTime=job.start_time.isoformat() if job.start_time else None,
        endTime=job.end_time.isoformat() if job.end_time else None,
        durationSeconds=job.duration_seconds,
        errorMessage=job.error_message,
        lastSuccessfulOffset=job.last_successful_offset,
        canResume=job.can_resume,
        retryCount=job.retry_count,
        createdAt=job.created_at.isoformat(),
    )


def _log_to_response(entry: JobLogEntry) -> JobLogResponse:
    return JobLogResponse(
        id=entry.id,
        jobId=entry.job_id,
        level=entry.level.value,
        message=entry.message,
        loggedAt=entry.logged_at.isoformat(),
    )


def _record_to_response(record: FailedRecord) -> FailedRecordResponse:
    return FailedRecordResponse(
        id=record.id,
        jobId=record.job_id,
        recordData=record.record_data,
        errorMessage=record.error_message,
        retryCount=record.retry_count,
        failedAt=record.failed_at.isoformat(),
        lastRetryAt=record.last_retry_at.isoformat() if record.last_retry_at else None,
        resolved=record.resolved,
    )


def _require_job(orchestrator: CopyOrchestrator, job_id: int) -> CopyJob:
    job = orchestrator.get_job_status(job_id)
    if not job:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Copy job not found")
    return job


# -------------------------
# Routes
# -------------------------

@router.get("", response_model=list[CopyJobResponse])
def list_recent_jobs(
    limit: int = Query(default=50, ge=1, le=500),
    orchestrator: CopyOrchestrator = Depends(get_orchestrator),
) -> list[CopyJobResponse]:
    return [job_to_response(j) for j in orchestrator.get_recent_jobs(limit)]


@router.get("/active", response_model=list[CopyJobResponse])
def list_active_jobs(orchestrator: CopyOrchestrator = Depends(get_orchestrator)) -> list[CopyJobResponse]:
    return [job_to_response(j) for j in orchestrator.get_active_jobs()]


@router.get("/{job_id}", response_model=CopyJobResponse)
def get_job(job_id: int, orchestrator: CopyOrchestrator = Depends(get_orchestrator)) -> CopyJobResponse:
    return job_to_response(_require_job(orchestrator, job_id))


@router.get("/{job_id}/logs", response_model=list[JobLogResponse])
def get_job_logs(job_id: int, orchestrator: CopyOrchestrator = Depends(get_orchestrator)) -> list[JobLogResponse]:
    _require_job(orchestrator, job_id)
    return [_log_to_response(e) for e in orchestrator.get_job_logs(job_id)]


@router.post("/{job_id}/cancel", response_model=OperationResponse)
async def cancel_job(job_id: int, orchestrator: CopyOrchestrator = Depends(get_orchestrator)) -> OperationResponse:
    # async so the cancel signal is set on the event loop that owns it
    _require_job(orchestrator, job_id)
    if not orchestrator.cancel_job(job_id):
        raise HTTPException(
            status_code=status.HTTP_409_CONFLICT,
            detail="Only pending or running jobs can be cancelled.",
        )
    return OperationResponse(success=True, message="Job cancelled.")


@router.post("/{job_id}/resume", response_model=OperationResponse)
async def resume_job(job_id: int, orchestrator: CopyOrchestrator = Depends(get_orchestrator)) -> OperationResponse:
    _require_job(orchestrator, job_id)
    result = await orchestrator.resume_job(job_id)
    return OperationResponse(success=result.success, message=result.message)


@router.get("/{job_id}/failed-records", response_model=list[FailedRecordResponse])
def get_failed_records(
    job_id: int,
    includeResolved: bool = True,
    orchestrator: CopyOrchestrator = Depends(get_orchestrator),
) -> list[FailedRecordResponse]:
    _require_job(orchestrator, job_id)
    records = orchestrator.get_failed_records(job_id, include_resolved=includeResolved)
    return [_record_to_response(r) for r in records]


@router.post("/failed-records/{record_id}/resolve", response_model=OperationResponse)
def resolve_failed_record(
    record_id: int,
    orchestrator: CopyOrchestrator = Depends(get_orchestrator),
) -> OperationResponse:
    if not orchestrator.resolve_failed_record(record_id):
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Failed record not found")
    return OperationResponse(success=True, message="Failed record marked as resolved.")
