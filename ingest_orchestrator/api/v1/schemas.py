# File: ingest_orchestrator/api/v1/schemas.py
from datetime import datetime
from typing import Any, Dict, List, Optional

from pydantic import BaseModel, Field

from ingest_orchestrator.domain.models import Task, TaskStatus


class ErrorDetail(BaseModel):
    """Schema for error details in responses."""
    detail: str


class SubmitTaskRequest(BaseModel):
    collection_id: str = Field(min_length=1)
    file_path: str = Field(min_length=1, description="Object store path of the uploaded file.")
    options: Dict[str, Any] = Field(
        default_factory=dict,
        description="Conversion options. Merged over the owner's stored defaults; keys outside the allowed prefixes are dropped.",
    )

    model_config = {
        "json_schema_extra": {
            "example": {
                "collection_id": "research-notes",
                "file_path": "user-42/research-notes/report.pdf",
                "options": {"convert_do_ocr": True, "chunking_max_tokens": 512},
            }
        }
    }


class TaskResponse(BaseModel):
    task_id: str
    collection_id: str
    owner_id: str
    file_path: str
    filename: str
    status: TaskStatus
    created_at: datetime
    updated_at: datetime
    worker_job_id: Optional[str] = None
    options: Dict[str, Any] = Field(default_factory=dict)
    ingested: bool = False
    ingest_summary: Optional[Dict[str, Any]] = None
    ingest_warning: Optional[str] = None
    last_sync: Optional[datetime] = None
    poll_error: Optional[str] = None
    error: Optional[str] = None

    @classmethod
    def from_task(cls, task: Task) -> "TaskResponse":
        meta = task.metadata
        return cls(
            task_id=task.task_id,
            collection_id=task.collection_id,
            owner_id=task.owner_id,
            file_path=task.file_path,
            filename=task.filename,
            status=task.status,
            created_at=task.created_at,
            updated_at=task.updated_at,
            worker_job_id=task.worker_job_id,
            options=meta.options,
            ingested=meta.ingested,
            ingest_summary=meta.ingest_summary,
            ingest_warning=meta.ingest_warning,
            last_sync=meta.last_sync,
            poll_error=meta.poll_error,
            error=meta.error,
        )


class TaskListResponse(BaseModel):
    tasks: List[TaskResponse]
    total: int


class ReconcileResponse(BaseModel):
    outcomes: Dict[str, int] = Field(default_factory=dict, description="Number of tasks per reconciliation outcome.")


class AdminActionResponse(BaseModel):
    success: bool
    message: str


class ConversionSettings(BaseModel):
    options: Dict[str, Any] = Field(default_factory=dict)


class HealthResponse(BaseModel):
    status: str
    service: str
    dependencies: Dict[str, str]
