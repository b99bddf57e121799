import asyncio
import os
import time
import uuid
from typing import Any, Dict, List, Optional, Set, Tuple, Union

# Configure settings before importing package modules.
os.environ.setdefault("INGEST_ORCH_HTTP_CLIENT_MAX_RETRIES", "1")
os.environ.setdefault("INGEST_ORCH_HTTP_CLIENT_BACKOFF_FACTOR", "0")
os.environ.setdefault("INGEST_ORCH_DB_CREATE_SCHEMA_ON_STARTUP", "false")
os.environ.setdefault("INGEST_ORCH_RECONCILE_INTERVAL_SECONDS", "0.01")

import pytest

from ingest_orchestrator.application.ports import (
    EmbeddingTriggerPort,
    KnowledgeBasePort,
    ObjectStorePort,
    SettingsStorePort,
    TaskStorePort,
    WorkerPort,
)
from ingest_orchestrator.application.scheduler import ReconciliationScheduler
from ingest_orchestrator.application.use_cases.ingest_result_use_case import IngestResultUseCase
from ingest_orchestrator.application.use_cases.reconcile_task_use_case import ReconcileTaskUseCase
from ingest_orchestrator.application.use_cases.task_orchestrator import TaskOrchestrator
from ingest_orchestrator.core.exceptions import (
    EmbeddingTriggerError,
    IngestionClaimLostError,
    InvalidTransitionError,
    ObjectNotFoundError,
    StorageError,
    TaskNotFoundError,
    WorkerServiceError,
)
from ingest_orchestrator.domain.models import (
    ChunkRecord,
    DocumentRecord,
    StorageItem,
    Task,
    TaskMetadata,
    TaskMetadataPatch,
    TaskStatus,
    WorkerJobRef,
    WorkerResult,
    WorkerStatus,
    can_claim_ingestion,
    can_transition,
    merge_metadata,
    utcnow,
)


class FakeTaskStore(TaskStorePort):
    def __init__(self):
        self.tasks: Dict[str, Task] = {}
        self.updates: List[Tuple[str, Dict[str, Any], Optional[TaskStatus]]] = []
        self._lock = asyncio.Lock()

    def put(self, task: Task) -> Task:
        self.tasks[task.task_id] = task
        return task

    async def create(self, collection_id, owner_id, file_path, options):
        task = Task(
            task_id=str(uuid.uuid4()),
            collection_id=collection_id,
            owner_id=owner_id,
            file_path=file_path,
            metadata=TaskMetadata(options=dict(options)),
        )
        return self.put(task)

    async def get(self, task_id):
        await asyncio.sleep(0)
        if task_id not in self.tasks:
            raise TaskNotFoundError(task_id)
        return self.tasks[task_id].model_copy(deep=True)

    async def update(self, task_id, patch=None, status=None):
        async with self._lock:
            if task_id not in self.tasks:
                raise TaskNotFoundError(task_id)
            task = self.tasks[task_id]
            if status is not None and not can_transition(task.status, status):
                raise InvalidTransitionError(task_id, task.status.value, status.value)
            self.updates.append((task_id, patch.as_json() if patch else {}, status))
            changes: Dict[str, Any] = {"updated_at": utcnow()}
            if patch is not None:
                changes["metadata"] = merge_metadata(task.metadata, patch)
            if status is not None:
                changes["status"] = status
            self.tasks[task_id] = task.model_copy(update=changes)
            return self.tasks[task_id].model_copy(deep=True)

    async def list_by_collection(self, collection_id):
        tasks = [t for t in self.tasks.values() if t.collection_id == collection_id]
        return sorted(tasks, key=lambda t: t.created_at, reverse=True)

    async def list_non_terminal(self, limit, collection_id=None):
        tasks = [
            t for t in self.tasks.values()
            if not t.is_terminal and (collection_id is None or t.collection_id == collection_id)
        ]
        return sorted(tasks, key=lambda t: t.updated_at)[:limit]

    async def delete(self, task_id):
        return self.tasks.pop(task_id, None) is not None

    async def claim_ingestion(self, task_id, claim_token, lease_seconds):
        async with self._lock:
            task = self.tasks[task_id]
            now_ts = time.time()
            if not can_claim_ingestion(task.metadata, now_ts, lease_seconds):
                return False
            metadata = task.metadata.model_copy(update={"ingest_claim": claim_token, "ingest_claimed_at": now_ts})
            self.tasks[task_id] = task.model_copy(update={"metadata": metadata})
            return True

    async def release_ingestion_claim(self, task_id, claim_token):
        async with self._lock:
            task = self.tasks[task_id]
            if task.metadata.ingest_claim == claim_token:
                metadata = task.metadata.model_copy(update={"ingest_claim": None, "ingest_claimed_at": None})
                self.tasks[task_id] = task.model_copy(update={"metadata": metadata})

    async def mark_ingested(self, task_id, claim_token, summary, status, patch=None):
        async with self._lock:
            if task_id not in self.tasks:
                raise TaskNotFoundError(task_id)
            task = self.tasks[task_id]
            if task.metadata.ingest_claim != claim_token or task.metadata.worker_result is None:
                raise IngestionClaimLostError(task_id)
            if not can_transition(task.status, status):
                raise IngestionClaimLostError(task_id)
            metadata = merge_metadata(task.metadata, patch) if patch else task.metadata
            metadata = metadata.model_copy(update={
                "ingested": True,
                "ingest_summary": summary,
                "ingest_claim": None,
                "ingest_claimed_at": None,
            })
            self.tasks[task_id] = task.model_copy(update={"metadata": metadata, "status": status, "updated_at": utcnow()})
            return self.tasks[task_id].model_copy(deep=True)


class FakeKnowledgeBase(KnowledgeBasePort):
    def __init__(self):
        self.documents: Dict[str, DocumentRecord] = {}
        self.chunks: Dict[Tuple[str, int], ChunkRecord] = {}
        self.document_calls: List[str] = []
        self.batch_calls = 0
        self.single_calls = 0
        self.fail_documents: Set[str] = set()
        self.fail_batches = False
        self.fail_chunk_indexes: Set[int] = set()

    async def create_document(self, document):
        await asyncio.sleep(0)
        self.document_calls.append(document.title)
        if document.title in self.fail_documents:
            raise StorageError(f"cannot store {document.title}")
        self.documents.setdefault(document.id, document)
        return document.id

    def _store_chunk(self, chunk: ChunkRecord) -> bool:
        if chunk.document_id not in self.documents:
            raise StorageError(f"foreign key violation for document {chunk.document_id}")
        if not chunk.content.strip():
            raise StorageError("empty chunk content")
        key = (chunk.document_id, chunk.chunk_index)
        if key in self.chunks:
            return False
        self.chunks[key] = chunk
        return True

    async def insert_chunks(self, chunks):
        await asyncio.sleep(0)
        self.batch_calls += 1
        if self.fail_batches:
            raise StorageError("batch insert failed")
        return sum(1 for chunk in chunks if self._store_chunk(chunk))

    async def insert_chunk(self, chunk):
        self.single_calls += 1
        if chunk.chunk_index in self.fail_chunk_indexes:
            raise StorageError(f"chunk {chunk.chunk_index} rejected")
        self._store_chunk(chunk)

    def chunks_of(self, document_id: str) -> List[ChunkRecord]:
        return sorted(
            (c for (doc_id, _), c in self.chunks.items() if doc_id == document_id),
            key=lambda c: c.chunk_index,
        )


StatusStep = Union[str, Exception]


class FakeWorker(WorkerPort):
    """Scripted worker: each poll consumes the next step, the last step repeats."""

    def __init__(self):
        self.submissions: List[Dict[str, Any]] = []
        self.scripts: Dict[str, List[StatusStep]] = {}
        self.results: Dict[str, Union[WorkerResult, Exception]] = {}
        self.poll_calls: Dict[str, int] = {}
        self.fetch_calls: Dict[str, int] = {}
        self.submit_error: Optional[WorkerServiceError] = None
        self.admin_error: Optional[WorkerServiceError] = None
        self.cancel_calls = 0
        self.clear_calls = 0
        self.closed = False

    def script(self, job_id: str, *steps: StatusStep) -> None:
        self.scripts[job_id] = list(steps)

    async def submit(self, file_bytes, filename, options):
        if self.submit_error is not None:
            raise self.submit_error
        job_id = f"job-{len(self.submissions) + 1}"
        self.submissions.append({"job_id": job_id, "filename": filename, "options": dict(options), "size": len(file_bytes)})
        return WorkerJobRef(job_id=job_id, filename=filename, options=dict(options))

    async def poll(self, job_id):
        await asyncio.sleep(0)
        self.poll_calls[job_id] = self.poll_calls.get(job_id, 0) + 1
        steps = self.scripts.get(job_id) or ["pending"]
        step = steps.pop(0) if len(steps) > 1 else steps[0]
        if isinstance(step, Exception):
            raise step
        return WorkerStatus(job_id=job_id, status=step, raw={"status": step})

    async def fetch_result(self, job_id):
        await asyncio.sleep(0)
        self.fetch_calls[job_id] = self.fetch_calls.get(job_id, 0) + 1
        result = self.results[job_id]
        if isinstance(result, Exception):
            raise result
        return result

    async def cancel_all(self):
        self.cancel_calls += 1
        if self.admin_error is not None:
            raise self.admin_error

    async def clear_results(self):
        self.clear_calls += 1
        if self.admin_error is not None:
            raise self.admin_error

    async def close(self):
        self.closed = True

    async def health_check(self):
        return True


class FakeObjectStore(ObjectStorePort):
    def __init__(self):
        self.files: Dict[str, bytes] = {}

    async def download(self, path):
        if path not in self.files:
            raise ObjectNotFoundError(f"Object not found: {path}")
        return self.files[path]

    async def upload(self, path, data, content_type, overwrite=True):
        if not overwrite and path in self.files:
            raise StorageError(f"Object already exists: {path}")
        self.files[path] = data
        return path

    async def list(self, prefix):
        return [
            StorageItem(name=p.rsplit("/", 1)[-1], path=p, size=len(d))
            for p, d in sorted(self.files.items()) if p.startswith(prefix)
        ]

    async def delete(self, path):
        self.files.pop(path, None)


class FakeEmbeddingTrigger(EmbeddingTriggerPort):
    def __init__(self):
        self.triggered: List[Tuple[str, str]] = []
        self.fail = False

    async def trigger(self, document_id, collection_id):
        if self.fail:
            raise EmbeddingTriggerError("embedding service down")
        self.triggered.append((document_id, collection_id))

    async def close(self):
        pass


class FakeSettingsStore(SettingsStorePort):
    def __init__(self):
        self.values: Dict[Tuple[str, str], Dict[str, Any]] = {}

    async def get_setting(self, owner_id, key):
        return dict(self.values.get((owner_id, key), {}))

    async def save_setting(self, owner_id, key, value):
        self.values[(owner_id, key)] = dict(value)
        return dict(value)


def make_task(
    file_path: str = "owner-1/col-1/file.pdf",
    status: TaskStatus = TaskStatus.PENDING,
    job_id: Optional[str] = "job-1",
    **metadata: Any,
) -> Task:
    meta = TaskMetadata(**metadata)
    if job_id is not None:
        meta = meta.model_copy(update={"worker_job": WorkerJobRef(job_id=job_id, filename=file_path.rsplit("/", 1)[-1])})
    return Task(
        task_id=str(uuid.uuid4()),
        collection_id="col-1",
        owner_id="owner-1",
        file_path=file_path,
        status=status,
        metadata=meta,
    )


@pytest.fixture
def task_store():
    return FakeTaskStore()


@pytest.fixture
def knowledge_base():
    return FakeKnowledgeBase()


@pytest.fixture
def worker():
    return FakeWorker()


@pytest.fixture
def object_store():
    return FakeObjectStore()


@pytest.fixture
def embedding_trigger():
    return FakeEmbeddingTrigger()


@pytest.fixture
def settings_store():
    return FakeSettingsStore()


@pytest.fixture
def ingest_use_case(knowledge_base):
    return IngestResultUseCase(knowledge_base=knowledge_base)


def build_reconciler(task_store, worker, knowledge_base, embedding_trigger, **kwargs) -> ReconcileTaskUseCase:
    kwargs.setdefault("stall_warn_seconds", 0)
    kwargs.setdefault("stall_fail_seconds", 0)
    return ReconcileTaskUseCase(
        task_store=task_store,
        worker=worker,
        ingest_use_case=IngestResultUseCase(knowledge_base=knowledge_base),
        embedding_trigger=embedding_trigger,
        **kwargs,
    )


@pytest.fixture
def reconciler(task_store, worker, knowledge_base, embedding_trigger):
    return build_reconciler(task_store, worker, knowledge_base, embedding_trigger)


@pytest.fixture
def scheduler(task_store, reconciler):
    return ReconciliationScheduler(
        task_store=task_store,
        reconcile_use_case=reconciler,
        interval_seconds=0.01,
        max_concurrency=2,
        batch_limit=50,
    )


@pytest.fixture
def orchestrator(task_store, settings_store, object_store, worker, scheduler):
    return TaskOrchestrator(
        task_store=task_store,
        settings_store=settings_store,
        object_store=object_store,
        worker=worker,
        scheduler=scheduler,
        reconcile_on_list=False,
    )
