# File: ingest_orchestrator/domain/models.py
import posixpath
import uuid
from datetime import datetime, timezone
from enum import Enum
from typing import Optional, Dict, Any, List

from pydantic import BaseModel, ConfigDict, Field, model_validator

from ingest_orchestrator.core.exceptions import PartialIngestionError


class TaskStatus(str, Enum):
    PENDING = "pending"
    PROCESSING = "processing"
    COMPLETED = "completed"
    FAILED = "failed"


class EmbeddingStatus(str, Enum):
    PENDING = "pending"
    COMPLETED = "completed"


TERMINAL_STATUSES = frozenset({TaskStatus.COMPLETED, TaskStatus.FAILED})

_STATUS_RANK = {
    TaskStatus.PENDING: 0,
    TaskStatus.PROCESSING: 1,
    TaskStatus.COMPLETED: 2,
    TaskStatus.FAILED: 2,
}

_WORKER_STATUS_MAP = {
    "pending": TaskStatus.PENDING,
    "queued": TaskStatus.PENDING,
    "submitted": TaskStatus.PENDING,
    "started": TaskStatus.PROCESSING,
    "running": TaskStatus.PROCESSING,
    "processing": TaskStatus.PROCESSING,
    "in_progress": TaskStatus.PROCESSING,
    "success": TaskStatus.COMPLETED,
    "succeeded": TaskStatus.COMPLETED,
    "completed": TaskStatus.COMPLETED,
    "done": TaskStatus.COMPLETED,
    "failure": TaskStatus.FAILED,
    "failed": TaskStatus.FAILED,
    "error": TaskStatus.FAILED,
    "revoked": TaskStatus.FAILED,
    "cancelled": TaskStatus.FAILED,
    "canceled": TaskStatus.FAILED,
}

# Namespace for deterministic document/chunk ids.
RECORD_NAMESPACE = uuid.UUID("6f1c2a1e-9d0b-4b7e-8a55-2f7d3c1e4b90")


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def is_terminal(status: TaskStatus) -> bool:
    return status in TERMINAL_STATUSES


def can_transition(current: TaskStatus, new: TaskStatus) -> bool:
    """
    Status only moves forward: pending -> processing -> {completed | failed}.
    Skipping processing is allowed; terminal states never change.
    """
    if current == new:
        return True
    if is_terminal(current):
        return False
    return _STATUS_RANK[new] > _STATUS_RANK[current]


def map_worker_status(raw_status: Optional[str]) -> Optional[TaskStatus]:
    """Maps the worker's vocabulary to TaskStatus. Unknown values map to None."""
    if not isinstance(raw_status, str):
        return None
    return _WORKER_STATUS_MAP.get(raw_status.strip().lower())


def document_id_for(task_id: str, filename: str) -> str:
    return str(uuid.uuid5(RECORD_NAMESPACE, f"{task_id}:{filename}"))


def chunk_id_for(document_id: str, chunk_index: int) -> str:
    return str(uuid.uuid5(RECORD_NAMESPACE, f"{document_id}:{chunk_index}"))


def _first_text(*candidates: Any) -> str:
    for value in candidates:
        if isinstance(value, str) and value:
            return value
    return ""


# --- Worker payloads ---

class WorkerJobRef(BaseModel):
    """Reference to a submitted worker job plus the submission echo."""
    job_id: str
    filename: str
    submitted_at: datetime = Field(default_factory=utcnow)
    options: Dict[str, Any] = Field(default_factory=dict)
    response: Dict[str, Any] = Field(default_factory=dict)


class WorkerStatus(BaseModel):
    job_id: str
    status: str
    message: Optional[str] = None
    raw: Dict[str, Any] = Field(default_factory=dict)


class WorkerDocument(BaseModel):
    """A converted document echoed by the worker. Filename may be nested under `content`."""
    filename: Optional[str] = None
    content: str = ""
    status: Optional[str] = None

    @model_validator(mode="before")
    @classmethod
    def _flatten(cls, data: Any) -> Any:
        if not isinstance(data, dict):
            return data
        nested = data.get("content") if isinstance(data.get("content"), dict) else {}
        return {
            "filename": data.get("filename") or nested.get("filename") or data.get("name"),
            "content": _first_text(
                data.get("md_content"), nested.get("md_content"),
                data.get("text_content"), nested.get("text_content"),
                data.get("text"), data.get("content"),
            ),
            "status": data.get("status"),
        }


class WorkerChunk(BaseModel):
    filename: Optional[str] = None
    text: str = ""
    chunk_index: Optional[int] = None
    num_tokens: Optional[int] = None
    headings: List[str] = Field(default_factory=list)
    captions: List[str] = Field(default_factory=list)
    page_numbers: List[int] = Field(default_factory=list)

    @model_validator(mode="before")
    @classmethod
    def _normalize(cls, data: Any) -> Any:
        if not isinstance(data, dict):
            return data
        meta = data.get("metadata") if isinstance(data.get("metadata"), dict) else {}
        num_tokens = data.get("num_tokens")
        if num_tokens is None:
            num_tokens = data.get("token_count")
        return {
            "filename": data.get("filename") or meta.get("filename"),
            "text": _first_text(data.get("text"), data.get("raw_text"), data.get("content")),
            "chunk_index": data.get("chunk_index"),
            "num_tokens": num_tokens,
            "headings": data.get("headings") or meta.get("headings") or [],
            "captions": data.get("captions") or meta.get("captions") or [],
            "page_numbers": data.get("page_numbers") or meta.get("page_numbers") or [],
        }


class WorkerResult(BaseModel):
    documents: List[WorkerDocument] = Field(default_factory=list)
    chunks: List[WorkerChunk] = Field(default_factory=list)
    processing_time: Optional[float] = None

    @model_validator(mode="before")
    @classmethod
    def _default_lists(cls, data: Any) -> Any:
        if isinstance(data, dict):
            data = dict(data)
            data["documents"] = data.get("documents") or []
            data["chunks"] = data.get("chunks") or []
        return data


# --- Task ---

class TaskMetadata(BaseModel):
    """
    Typed view of the task's metadata bag.

    `ingested`, `ingest_claim` and `ingest_claimed_at` are owned by the task
    store's claim/mark operations and are never part of a TaskMetadataPatch.
    `worker_confirmed_at` is the first successful poll reporting a
    non-terminal status; stall ages are measured from it.
    """
    model_config = ConfigDict(extra="ignore")

    options: Dict[str, Any] = Field(default_factory=dict)
    worker_job: Optional[WorkerJobRef] = None
    worker_status_snapshot: Optional[Dict[str, Any]] = None
    worker_result: Optional[WorkerResult] = None
    ingested: bool = False
    ingest_claim: Optional[str] = None
    ingest_claimed_at: Optional[float] = None
    ingest_summary: Optional[Dict[str, Any]] = None
    ingest_warning: Optional[str] = None
    last_sync: Optional[datetime] = None
    worker_confirmed_at: Optional[datetime] = None
    poll_error: Optional[str] = None
    error: Optional[str] = None


class TaskMetadataPatch(BaseModel):
    """Partial metadata update. Only fields explicitly set are merged."""
    model_config = ConfigDict(extra="forbid")

    options: Optional[Dict[str, Any]] = None
    worker_job: Optional[WorkerJobRef] = None
    worker_status_snapshot: Optional[Dict[str, Any]] = None
    worker_result: Optional[WorkerResult] = None
    ingest_warning: Optional[str] = None
    last_sync: Optional[datetime] = None
    worker_confirmed_at: Optional[datetime] = None
    poll_error: Optional[str] = None
    error: Optional[str] = None

    def as_json(self) -> Dict[str, Any]:
        return self.model_dump(mode="json", exclude_unset=True)


def merge_metadata(current: TaskMetadata, patch: TaskMetadataPatch) -> TaskMetadata:
    """The single merge function for task metadata: set fields win, the rest survive."""
    data = current.model_dump(mode="json")
    data.update(patch.as_json())
    return TaskMetadata.model_validate(data)


def can_claim_ingestion(metadata: TaskMetadata, now_ts: float, lease_seconds: float) -> bool:
    if metadata.ingested or metadata.worker_result is None:
        return False
    if metadata.ingest_claim is None:
        return True
    return metadata.ingest_claimed_at is None or metadata.ingest_claimed_at < now_ts - lease_seconds


class Task(BaseModel):
    task_id: str
    collection_id: str
    owner_id: str
    file_path: str
    status: TaskStatus = TaskStatus.PENDING
    created_at: datetime = Field(default_factory=utcnow)
    updated_at: datetime = Field(default_factory=utcnow)
    metadata: TaskMetadata = Field(default_factory=TaskMetadata)

    @property
    def filename(self) -> str:
        return posixpath.basename(self.file_path.rstrip("/"))

    @property
    def is_terminal(self) -> bool:
        return is_terminal(self.status)

    @property
    def worker_job_id(self) -> Optional[str]:
        return self.metadata.worker_job.job_id if self.metadata.worker_job else None


# --- Knowledge base records ---

class DocumentRecord(BaseModel):
    id: str
    collection_id: str
    owner_id: str
    title: str
    source: str
    content: str
    metadata: Dict[str, Any] = Field(default_factory=dict)


class ChunkRecord(BaseModel):
    id: str
    document_id: str
    content: str
    chunk_index: int
    token_count: int
    metadata: Dict[str, Any] = Field(default_factory=dict)


class IngestOutcome(BaseModel):
    document_ids: Dict[str, str] = Field(default_factory=dict)
    chunk_count: int = 0
    fallback_documents: List[str] = Field(default_factory=list)
    failed_documents: List[str] = Field(default_factory=list)
    failed_chunks: int = 0
    skipped_empty_chunks: int = 0

    @property
    def is_partial(self) -> bool:
        return bool(self.failed_documents) or self.failed_chunks > 0

    def check(self) -> "IngestOutcome":
        if self.is_partial:
            raise PartialIngestionError(self)
        return self

    def summary(self) -> Dict[str, Any]:
        return {
            "documents": len(self.document_ids),
            "chunks": self.chunk_count,
            "fallback_documents": len(self.fallback_documents),
            "failed_documents": len(self.failed_documents),
            "failed_chunks": self.failed_chunks,
            "skipped_empty_chunks": self.skipped_empty_chunks,
        }


class StorageItem(BaseModel):
    name: str
    path: str
    size: Optional[int] = None
    mimetype: Optional[str] = None
    is_folder: bool = False
