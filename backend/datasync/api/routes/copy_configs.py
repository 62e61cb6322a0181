from __future__ import annotations

from typing import Optional

from fastapi import APIRouter, Depends, HTTPException, status
from pydantic import BaseModel, Field

from datasync.api.routes.copy_jobs import CopyJobResponse, OperationResponse, job_to_response
from datasync.dependencies import get_orchestrator, get_scheduler
from datasync.models.copy_configuration import CopyConfiguration, DestinationEndpoint, SourceEndpoint
from datasync.models.copy_job import TriggerType
from datasync.services import config_store
from datasync.services.config_validator import validate_configuration
from datasync.services.copy_orchestrator import CopyOrchestrator
from datasync.services.copy_scheduler import CopyScheduler

router = APIRouter(prefix="/api/copy-configs", tags=["copy-configs"])


# -------------------------
# API models
# -------------------------

class CopyConfigurationPayload(BaseModel):
    name: str
    sourceServer: str
    sourceDatabase: str
    sourceTable: str
    sourceFilter: Optional[str] = None
    sourceOrderBy: Optional[str] = None
    destServer: str
    destDatabase: str
    destTable: str
    truncateBeforeCopy: bool = False
    batchSize: int = 1000
    isScheduled: bool = False
    scheduleCron: Optional[str] = None
    enabled: bool = True
    maxRetryAttempts: int = Field(default=3, ge=0)


class CopyConfigurationResponse(CopyConfigurationPayload):
    id: int
    createdAt: str
    updatedAt: str


class TriggerResponse(BaseModel):
    success: bool
    message: str
    jobId: Optional[int] = None


# -------------------------
# Helpers
# -------------------------

def _payload_to_config(payload: CopyConfigurationPayload, config_id: int | None = None) -> CopyConfiguration:
    return CopyConfiguration(
        id=config_id,
        name=payload.name,
        source=SourceEndpoint(
            server=payload.sourceServer,
            database=payload.sourceDatabase,
            table=payload.sourceTable,
            row_filter=payload.sourceFilter or None,
            order_by=payload.sourceOrderBy or None,
        ),
        destination=DestinationEndpoint(
            server=payload.destServer,
            database=payload.destDatabase,
            table=payload.destTable,
        ),
        truncate_before_copy=payload.truncateBeforeCopy,
        batch_size=payload.batchSize,
        is_scheduled=payload.isScheduled,
        schedule_cron=payload.scheduleCron or None,
        enabled=payload.enabled,
        max_retry_attempts=payload.maxRetryAttempts,
    )


def _config_to_response(config: CopyConfiguration) -> CopyConfigurationResponse:
    return CopyConfigurationResponse(
        id=config.id,
        name=config.name,
        sourceServer=config.source.server,
        sourceDatabase=config.source.database,
        sourceTable=config.source.table,
        sourceFilter=config.source.row_filter,
        sourceOrderBy=config.source.order_by,
        destServer=config.destination.server,
        destDatabase=config.destination.database,
        destTable=config.destination.table,
        truncateBeforeCopy=config.truncate_before_copy,
        batchSize=config.batch_size,
        isScheduled=config.is_scheduled,
        scheduleCron=config.schedule_cron,
        enabled=config.enabled,
        maxRetryAttempts=config.max_retry_attempts,
        createdAt=config.created_at.isoformat(),
        updatedAt=config.updated_at.isoformat(),
    )


def _require_config(config_id: int) -> CopyConfiguration:
    config = config_store.get_configuration(config_id)
    if not config:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Configuration not found")
    return config


def _ensure_valid(config: CopyConfiguration) -> None:
    result = validate_configuration(config)
    if not result.is_valid:
        raise HTTPException(status_code=status.HTTP_422_UNPROCESSABLE_ENTITY, detail=result.message)


# -------------------------
# Routes
# -------------------------

@router.post("", response_model=CopyConfigurationResponse, status_code=status.HTTP_201_CREATED)
async def create_configuration(
    payload: CopyConfigurationPayload,
    scheduler: CopyScheduler = Depends(get_scheduler),
) -> CopyConfigurationResponse:
    config = _payload_to_config(payload)
    _ensure_valid(config)
    try:
        created = config_store.create_configuration(config)
    except config_store.DuplicateConfigurationNameError as exc:
        raise HTTPException(status_code=status.HTTP_409_CONFLICT, detail=str(exc)) from exc

    scheduler.sync_configuration(created)
    return _config_to_response(created)


@router.get("", response_model=list[CopyConfigurationResponse])
def list_configurations() -> list[CopyConfigurationResponse]:
    return [_config_to_response(c) for c in config_store.list_configurations()]


@router.get("/{config_id}", response_model=CopyConfigurationResponse)
def get_configuration(config_id: int) -> CopyConfigurationResponse:
    return _config_to_response(_require_config(config_id))


@router.put("/{config_id}", response_model=CopyConfigurationResponse)
async def update_configuration(
    config_id: int,
    payload: CopyConfigurationPayload,
    scheduler: CopyScheduler = Depends(get_scheduler),
) -> CopyConfigurationResponse:
    _require_config(config_id)
    config = _payload_to_config(payload, config_id)
    _ensure_valid(config)
    try:
        updated = config_store.update_configuration(config)
    except config_store.DuplicateConfigurationNameError as exc:
        raise HTTPException(status_code=status.HTTP_409_CONFLICT, detail=str(exc)) from exc
    except config_store.ConfigurationNotFoundError as exc:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=str(exc)) from exc

    scheduler.sync_configuration(updated)
    return _config_to_response(updated)


@router.delete("/{config_id}", response_model=OperationResponse)
async def delete_configuration(
    config_id: int,
    orchestrator: CopyOrchestrator = Depends(get_orchestrator),
    scheduler: CopyScheduler = Depends(get_scheduler),
) -> OperationResponse:
    _require_config(config_id)
    if orchestrator.supervisor.is_config_active(config_id) or any(
        j.config_id == config_id for j in orchestrator.get_active_jobs()
    ):
        raise HTTPException(
            status_code=status.HTTP_409_CONFLICT,
            detail="Configuration has an active job; cancel it before deleting.",
        )

    scheduler.remove_configuration(config_id)
    config_store.delete_configuration(config_id)
    return OperationResponse(success=True, message="Configuration deleted.")


@router.post("/{config_id}/validate", response_model=OperationResponse)
async def validate_configuration_endpoint(
    config_id: int,
    orchestrator: CopyOrchestrator = Depends(get_orchestrator),
) -> OperationResponse:
    _require_config(config_id)
    result = await orchestrator.validate_configuration(config_id)
    return OperationResponse(success=result.success, message=result.message)


@router.post("/{config_id}/trigger", response_model=TriggerResponse)
async def trigger_copy(
    config_id: int,
    orchestrator: CopyOrchestrator = Depends(get_orchestrator),
) -> TriggerResponse:
    _require_config(config_id)
    result = await orchestrator.execute_copy_job(config_id, TriggerType.MANUAL)
    return TriggerResponse(success=result.success, message=result.message, jobId=result.job_id)


@router.get("/{config_id}/jobs", response_model=list[CopyJobResponse])
def list_configuration_jobs(
    config_id: int,
    orchestrator: CopyOrchestrator = Depends(get_orchestrator),
) -> list[CopyJobResponse]:
    _require_config(config_id)
    return [job_to_response(j) for j in orchestrator.get_jobs_for_config(config_id)]
