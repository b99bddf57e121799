# File: ingest_orchestrator/api/v1/endpoints/settings.py
import structlog
from fastapi import APIRouter, Depends, HTTPException, status

from ingest_orchestrator.api.v1.schemas import ConversionSettings
from ingest_orchestrator.application.use_cases.task_orchestrator import TaskOrchestrator
from ingest_orchestrator.core.exceptions import StorageError
from ingest_orchestrator.dependencies import get_owner_id, get_task_orchestrator

log = structlog.get_logger(__name__)
router = APIRouter()


@router.get("/settings/conversion", response_model=ConversionSettings, summary="Default conversion options of the caller.")
async def get_conversion_settings(
    owner_id: str = Depends(get_owner_id),
    orchestrator: TaskOrchestrator = Depends(get_task_orchestrator),
):
    try:
        options = await orchestrator.get_conversion_settings(owner_id)
    except StorageError as e:
        log.error("Failed to read conversion settings", owner_id=owner_id, error=str(e))
        raise HTTPException(status_code=status.HTTP_500_INTERNAL_SERVER_ERROR, detail="Failed to read settings.")
    return ConversionSettings(options=options)


@router.put("/settings/conversion", response_model=ConversionSettings, summary="Replace the caller's default conversion options.")
async def save_conversion_settings(
    body: ConversionSettings,
    owner_id: str = Depends(get_owner_id),
    orchestrator: TaskOrchestrator = Depends(get_task_orchestrator),
):
    try:
        saved = await orchestrator.save_conversion_settings(owner_id, body.options)
    except StorageError as e:
        log.error("Failed to save conversion settings", owner_id=owner_id, error=str(e))
        raise HTTPException(status_code=status.HTTP_500_INTERNAL_SERVER_ERROR, detail="Failed to save settings.")
    return ConversionSettings(options=saved)
