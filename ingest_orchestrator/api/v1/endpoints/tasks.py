# File: ingest_orchestrator/api/v1/endpoints/tasks.py
from typing import NoReturn, Optional

import structlog
from fastapi import APIRouter, Depends, HTTPException, Query, Response, status

from ingest_orchestrator.api.v1.schemas import (
    AdminActionResponse,
    ErrorDetail,
    ReconcileResponse,
    SubmitTaskRequest,
    TaskListResponse,
    TaskResponse,
)
from ingest_orchestrator.application.use_cases.task_orchestrator import TaskOrchestrator
from ingest_orchestrator.core.exceptions import (
    ObjectNotFoundError,
    StorageError,
    TaskNotFoundError,
    TransientWorkerError,
    WorkerRejectedError,
    WorkerServiceError,
)
from ingest_orchestrator.dependencies import get_owner_id, get_task_orchestrator

log = structlog.get_logger(__name__)
router = APIRouter()


def _raise_submission_error(e: Exception) -> NoReturn:
    if isinstance(e, ObjectNotFoundError):
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=f"File not found in storage: {e.message}")
    if isinstance(e, StorageError):
        raise HTTPException(status_code=status.HTTP_500_INTERNAL_SERVER_ERROR, detail="Storage error while submitting the task.")
    if isinstance(e, WorkerRejectedError):
        raise HTTPException(status_code=status.HTTP_422_UNPROCESSABLE_ENTITY, detail=f"Worker rejected the file: {e}")
    if isinstance(e, TransientWorkerError):
        raise HTTPException(status_code=status.HTTP_503_SERVICE_UNAVAILABLE, detail="Conversion worker is unavailable.")
    raise HTTPException(status_code=status.HTTP_502_BAD_GATEWAY, detail=f"Conversion worker error: {e}")


@router.post(
    "/tasks",
    response_model=TaskResponse,
    status_code=status.HTTP_202_ACCEPTED,
    summary="Create an ingestion task for a stored file and dispatch it to the worker.",
    responses={
        404: {"model": ErrorDetail},
        422: {"model": ErrorDetail},
        503: {"model": ErrorDetail},
    },
)
async def submit_task(
    body: SubmitTaskRequest,
    owner_id: str = Depends(get_owner_id),
    orchestrator: TaskOrchestrator = Depends(get_task_orchestrator),
):
    endpoint_log = log.bind(owner_id=owner_id, collection_id=body.collection_id, file_path=body.file_path)
    endpoint_log.info("Task submission request received.")
    try:
        task = await orchestrator.submit_task(body.collection_id, owner_id, body.file_path, body.options)
    except (StorageError, WorkerServiceError) as e:
        endpoint_log.warning("Task submission failed", error=str(e), error_type=type(e).__name__)
        _raise_submission_error(e)
    return TaskResponse.from_task(task)


@router.get("/tasks", response_model=TaskListResponse, summary="List the caller's tasks of a collection, newest first.")
async def list_tasks(
    collection_id: str = Query(..., min_length=1),
    owner_id: str = Depends(get_owner_id),
    orchestrator: TaskOrchestrator = Depends(get_task_orchestrator),
):
    try:
        tasks = await orchestrator.list_tasks(collection_id)
    except StorageError as e:
        log.error("Failed to list tasks", collection_id=collection_id, error=str(e))
        raise HTTPException(status_code=status.HTTP_500_INTERNAL_SERVER_ERROR, detail="Failed to list tasks.")
    items = [TaskResponse.from_task(t) for t in tasks if t.owner_id == owner_id]
    return TaskListResponse(tasks=items, total=len(items))


@router.post(
    "/tasks/reconcile",
    response_model=ReconcileResponse,
    status_code=status.HTTP_202_ACCEPTED,
    summary="Run a reconciliation pass now.",
)
async def reconcile_tasks(
    collection_id: Optional[str] = Query(None),
    owner_id: str = Depends(get_owner_id),
    orchestrator: TaskOrchestrator = Depends(get_task_orchestrator),
):
    log.info("Manual reconciliation requested", owner_id=owner_id, collection_id=collection_id)
    try:
        outcomes = await orchestrator.reconcile_now(collection_id)
    except StorageError as e:
        log.error("Manual reconciliation failed", error=str(e))
        raise HTTPException(status_code=status.HTTP_500_INTERNAL_SERVER_ERROR, detail="Reconciliation failed.")
    return ReconcileResponse(outcomes=outcomes)


@router.post("/tasks/admin/cancel-all", response_model=AdminActionResponse, summary="Ask the worker to cancel every running job.")
async def cancel_all_running(
    owner_id: str = Depends(get_owner_id),
    orchestrator: TaskOrchestrator = Depends(get_task_orchestrator),
):
    log.info("Cancel-all requested", owner_id=owner_id)
    ok = await orchestrator.cancel_all_running()
    message = "Worker accepted the cancellation." if ok else "Worker did not accept the cancellation."
    return AdminActionResponse(success=ok, message=message)


@router.post("/tasks/admin/clear-results", response_model=AdminActionResponse, summary="Ask the worker to purge its stored results.")
async def clear_all_results(
    owner_id: str = Depends(get_owner_id),
    orchestrator: TaskOrchestrator = Depends(get_task_orchestrator),
):
    log.info("Clear-results requested", owner_id=owner_id)
    ok = await orchestrator.clear_all_results()
    message = "Worker results cleared." if ok else "Worker did not clear its results."
    return AdminActionResponse(success=ok, message=message)


@router.get(
    "/tasks/{task_id}",
    response_model=TaskResponse,
    responses={404: {"model": ErrorDetail}},
)
async def get_task(
    task_id: str,
    owner_id: str = Depends(get_owner_id),
    orchestrator: TaskOrchestrator = Depends(get_task_orchestrator),
):
    try:
        task = await orchestrator.get_task(task_id, owner_id=owner_id)
    except TaskNotFoundError:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Task not found.")
    except StorageError as e:
        log.error("Failed to read task", task_id=task_id, error=str(e))
        raise HTTPException(status_code=status.HTTP_500_INTERNAL_SERVER_ERROR, detail="Failed to read task.")
    return TaskResponse.from_task(task)


@router.delete(
    "/tasks/{task_id}",
    status_code=status.HTTP_204_NO_CONTENT,
    response_class=Response,
    responses={404: {"model": ErrorDetail}},
    summary="Delete the task record. Ingested documents are kept.",
)
async def delete_task(
    task_id: str,
    owner_id: str = Depends(get_owner_id),
    orchestrator: TaskOrchestrator = Depends(get_task_orchestrator),
):
    try:
        await orchestrator.delete_task(task_id, owner_id=owner_id)
    except TaskNotFoundError:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Task not found.")
    except StorageError as e:
        log.error("Failed to delete task", task_id=task_id, error=str(e))
        raise HTTPException(status_code=status.HTTP_500_INTERNAL_SERVER_ERROR, detail="Failed to delete task.")
    return Response(status_code=status.HTTP_204_NO_CONTENT)
