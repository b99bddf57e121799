import asyncio
import uuid
import weakref
from datetime import datetime
from enum import Enum
from typing import Optional, Set

import structlog

from ingest_orchestrator.application.ports.embedding_port import EmbeddingTriggerPort
from ingest_orchestrator.application.ports.task_store_port import TaskStorePort
from ingest_orchestrator.application.ports.worker_port import WorkerPort
from ingest_orchestrator.application.use_cases.ingest_result_use_case import IngestResultUseCase
from ingest_orchestrator.core.config import settings
from ingest_orchestrator.core.exceptions import (
    EmbeddingTriggerError,
    IngestionClaimLostError,
    InvalidTransitionError,
    PartialIngestionError,
    TaskNotFoundError,
    TransientWorkerError,
    WorkerJobNotFoundError,
    WorkerServiceError,
)
from ingest_orchestrator.core.metrics import (
    EMBEDDING_TRIGGERS_TOTAL,
    PARTIAL_INGESTIONS_TOTAL,
    RECONCILE_OUTCOMES_TOTAL,
    STALLED_TASKS_TOTAL,
    TASK_TRANSITIONS_TOTAL,
)
from ingest_orchestrator.domain.models import (
    IngestOutcome,
    Task,
    TaskMetadataPatch,
    TaskStatus,
    WorkerResult,
    WorkerStatus,
    can_transition,
    map_worker_status,
    utcnow,
)

log = structlog.get_logger(__name__)


class ReconcileOutcome(str, Enum):
    NOT_FOUND = "not_found"
    TERMINAL = "terminal"
    NO_JOB = "no_job"
    TRANSIENT = "transient"
    UNMAPPED = "unmapped"
    UNCHANGED = "unchanged"
    ADVANCED = "advanced"
    INGESTED = "ingested"
    CLAIM_LOST = "claim_lost"
    FAILED = "failed"


class ReconcileTaskUseCase:
    """
    Advances one task by polling the worker: poll -> map -> fetch result ->
    ingest -> persist.

    Safe to run concurrently for different tasks and redundantly for the same
    task. Within this process a per-task lock serializes passes; across
    processes the task store's ingestion claim makes ingestion exactly-once.
    """

    def __init__(
        self,
        task_store: TaskStorePort,
        worker: WorkerPort,
        ingest_use_case: IngestResultUseCase,
        embedding_trigger: EmbeddingTriggerPort,
        claim_lease_seconds: Optional[float] = None,
        stall_warn_seconds: Optional[float] = None,
        stall_fail_seconds: Optional[float] = None,
    ):
        self.task_store = task_store
        self.worker = worker
        self.ingest_use_case = ingest_use_case
        self.embedding_trigger = embedding_trigger
        self.claim_lease_seconds = claim_lease_seconds if claim_lease_seconds is not None else settings.INGEST_CLAIM_LEASE_SECONDS
        self.stall_warn_seconds = stall_warn_seconds if stall_warn_seconds is not None else settings.STALLED_TASK_WARN_SECONDS
        self.stall_fail_seconds = stall_fail_seconds if stall_fail_seconds is not None else settings.STALLED_TASK_FAIL_SECONDS
        self._locks: "weakref.WeakValueDictionary[str, asyncio.Lock]" = weakref.WeakValueDictionary()
        self._stall_warned: Set[str] = set()
        self.log = log.bind(component="ReconcileTaskUseCase")

    def _lock_for(self, task_id: str) -> asyncio.Lock:
        lock = self._locks.get(task_id)
        if lock is None:
            lock = asyncio.Lock()
            self._locks[task_id] = lock
        return lock

    async def execute(self, task_id: str) -> ReconcileOutcome:
        lock = self._lock_for(task_id)
        async with lock:
            try:
                task = await self.task_store.get(task_id)
                outcome = await self._reconcile(task)
            except TaskNotFoundError:
                self.log.info("Task deleted before or during reconciliation", task_id=task_id)
                self._stall_warned.discard(task_id)
                outcome = ReconcileOutcome.NOT_FOUND
        RECONCILE_OUTCOMES_TOTAL.labels(outcome=outcome.value).inc()
        return outcome

    async def _reconcile(self, task: Task) -> ReconcileOutcome:
        task_log = self.log.bind(task_id=task.task_id, status=task.status.value)
        if task.is_terminal:
            self._stall_warned.discard(task.task_id)
            return ReconcileOutcome.TERMINAL

        job_id = task.worker_job_id
        if job_id is None:
            return await self._check_undispatched(task)

        # 1. Poll
        try:
            status = await self.worker.poll(job_id)
        except TransientWorkerError as e:
            task_log.warning("Transient worker error while polling, will retry", job_id=job_id, error=str(e))
            return ReconcileOutcome.TRANSIENT
        except WorkerJobNotFoundError:
            return await self._fail(task, f"Worker job {job_id} no longer exists on the worker")
        except WorkerServiceError as e:
            # only a missing job or a reported failure status fails the task
            task_log.error("Worker poll failed, will retry", job_id=job_id, error=str(e))
            await self._persist(task, TaskMetadataPatch(poll_error=str(e)))
            return ReconcileOutcome.TRANSIENT

        # 2. Map
        now = utcnow()
        new_status = map_worker_status(status.status)
        if new_status is None:
            task_log.warning("Unmapped worker status, leaving task unchanged", worker_status=status.status)
            await self._persist(task, TaskMetadataPatch(worker_status_snapshot=status.raw, last_sync=now))
            return ReconcileOutcome.UNMAPPED

        if new_status == TaskStatus.FAILED:
            message = status.message or f"Worker reported status '{status.status}'"
            return await self._fail(task, message, status)

        if new_status != TaskStatus.COMPLETED:
            return await self._track_progress(task, new_status, status, now)

        # 3. Fetch and cache the result once
        result = task.metadata.worker_result
        if result is None:
            try:
                result = await self.worker.fetch_result(job_id)
            except TransientWorkerError as e:
                task_log.warning("Transient worker error while fetching result, will retry", job_id=job_id, error=str(e))
                return ReconcileOutcome.TRANSIENT
            except WorkerJobNotFoundError:
                return await self._fail(task, f"Result of worker job {job_id} no longer exists on the worker", status)
            except WorkerServiceError as e:
                return await self._fail(task, f"Worker result could not be fetched: {e}", status)
            task = await self.task_store.update(
                task.task_id,
                TaskMetadataPatch(worker_result=result, worker_status_snapshot=status.raw, last_sync=now),
            )
            task_log.info("Worker result cached", num_documents=len(result.documents), num_chunks=len(result.chunks))

        if task.metadata.ingested:
            return ReconcileOutcome.UNCHANGED

        # 4. Ingest under the storage-level claim
        return await self._ingest(task, result, status, now)

    async def _track_progress(
        self,
        task: Task,
        new_status: TaskStatus,
        status: WorkerStatus,
        now: datetime,
    ) -> ReconcileOutcome:
        # every successful poll is written; updated_at orders the scheduler batch
        since = task.metadata.worker_confirmed_at or now
        patch_fields = {"worker_status_snapshot": status.raw, "last_sync": now}
        if task.metadata.worker_confirmed_at is None:
            patch_fields["worker_confirmed_at"] = now
        if task.metadata.poll_error is not None:
            patch_fields["poll_error"] = None
        patch = TaskMetadataPatch(**patch_fields)

        outcome = ReconcileOutcome.UNCHANGED
        if new_status != task.status and can_transition(task.status, new_status):
            previous = task.status
            try:
                task = await self.task_store.update(task.task_id, patch, status=new_status)
            except InvalidTransitionError as e:
                self.log.info("Task moved concurrently, skipping", task_id=task.task_id, error=str(e))
                return ReconcileOutcome.UNCHANGED
            TASK_TRANSITIONS_TOTAL.labels(from_status=previous.value, to_status=new_status.value).inc()
            self.log.info("Task status advanced", task_id=task.task_id, to_status=new_status.value)
            outcome = ReconcileOutcome.ADVANCED
        else:
            await self._persist(task, patch)

        return await self._check_stalled(task, status, (now - since).total_seconds()) or outcome

    async def _check_undispatched(self, task: Task) -> ReconcileOutcome:
        """A task the worker never accepted ages from its creation."""
        age = (utcnow() - task.created_at).total_seconds()
        if self.stall_fail_seconds > 0 and age >= self.stall_fail_seconds:
            STALLED_TASKS_TOTAL.labels(action="failed").inc()
            self._stall_warned.discard(task.task_id)
            return await self._fail(task, f"Task was never dispatched to the worker after {int(age)}s")
        if self.stall_warn_seconds > 0 and age >= self.stall_warn_seconds and task.task_id not in self._stall_warned:
            self._stall_warned.add(task.task_id)
            STALLED_TASKS_TOTAL.labels(action="warned").inc()
            self.log.warning("Task has no worker job", task_id=task.task_id, age_seconds=int(age))
        else:
            self.log.debug("Task has no worker job yet", task_id=task.task_id)
        return ReconcileOutcome.NO_JOB

    async def _check_stalled(self, task: Task, status: WorkerStatus, age: float) -> Optional[ReconcileOutcome]:
        if self.stall_fail_seconds > 0 and age >= self.stall_fail_seconds:
            STALLED_TASKS_TOTAL.labels(action="failed").inc()
            self._stall_warned.discard(task.task_id)
            return await self._fail(
                task,
                f"Worker job stalled in status '{status.status}' for {int(age)}s",
                status,
            )
        if self.stall_warn_seconds > 0 and age >= self.stall_warn_seconds and task.task_id not in self._stall_warned:
            self._stall_warned.add(task.task_id)
            STALLED_TASKS_TOTAL.labels(action="warned").inc()
            self.log.warning(
                "Task is stalled on the worker",
                task_id=task.task_id,
                job_id=task.worker_job_id,
                worker_status=status.status,
                age_seconds=int(age),
            )
        return None

    async def _ingest(self, task: Task, result: WorkerResult, status: WorkerStatus, now: datetime) -> ReconcileOutcome:
        task_log = self.log.bind(task_id=task.task_id)
        claim_token = uuid.uuid4().hex
        if not await self.task_store.claim_ingestion(task.task_id, claim_token, self.claim_lease_seconds):
            task_log.info("Ingestion claimed elsewhere, skipping")
            await self._persist(task, TaskMetadataPatch(worker_status_snapshot=status.raw, last_sync=now))
            return ReconcileOutcome.CLAIM_LOST

        try:
            outcome = await self.ingest_use_case.execute(task, result)
        except Exception:
            task_log.exception("Ingestion aborted, releasing claim")
            await self.task_store.release_ingestion_claim(task.task_id, claim_token)
            raise

        patch_fields = {"worker_status_snapshot": status.raw, "last_sync": now}
        try:
            outcome.check()
        except PartialIngestionError as e:
            PARTIAL_INGESTIONS_TOTAL.inc()
            task_log.error(
                "Partial ingestion",
                failed_documents=e.outcome.failed_documents,
                failed_chunks=e.outcome.failed_chunks,
            )
            patch_fields["ingest_warning"] = str(e)

        try:
            await self.task_store.mark_ingested(
                task.task_id,
                claim_token,
                outcome.summary(),
                TaskStatus.COMPLETED,
                TaskMetadataPatch(**patch_fields),
            )
        except IngestionClaimLostError:
            task_log.error("Ingestion claim expired before completion; records are kept, another pass will finish")
            return ReconcileOutcome.CLAIM_LOST

        self._stall_warned.discard(task.task_id)
        TASK_TRANSITIONS_TOTAL.labels(from_status=task.status.value, to_status=TaskStatus.COMPLETED.value).inc()
        task_log.info("Task completed and ingested", **outcome.summary())
        await self._trigger_embeddings(task, outcome)
        return ReconcileOutcome.INGESTED

    async def _trigger_embeddings(self, task: Task, outcome: IngestOutcome) -> None:
        for filename, document_id in outcome.document_ids.items():
            try:
                await self.embedding_trigger.trigger(document_id, task.collection_id)
            except EmbeddingTriggerError as e:
                EMBEDDING_TRIGGERS_TOTAL.labels(status="failed").inc()
                self.log.warning(
                    "Embedding trigger failed; document stays pending",
                    task_id=task.task_id,
                    document_id=document_id,
                    filename=filename,
                    error=str(e),
                )
                continue
            EMBEDDING_TRIGGERS_TOTAL.labels(status="success").inc()

    async def _persist(self, task: Task, patch: TaskMetadataPatch) -> None:
        try:
            await self.task_store.update(task.task_id, patch)
        except TaskNotFoundError:
            self.log.info("Task deleted during reconciliation", task_id=task.task_id)

    async def _fail(self, task: Task, error: str, status: Optional[WorkerStatus] = None) -> ReconcileOutcome:
        patch_fields = {"error": error, "last_sync": utcnow()}
        if status is not None:
            patch_fields["worker_status_snapshot"] = status.raw
        try:
            await self.task_store.update(task.task_id, TaskMetadataPatch(**patch_fields), status=TaskStatus.FAILED)
        except InvalidTransitionError as e:
            self.log.info("Task reached a terminal state concurrently", task_id=task.task_id, error=str(e))
            return ReconcileOutcome.TERMINAL
        except TaskNotFoundError:
            return ReconcileOutcome.NOT_FOUND
        TASK_TRANSITIONS_TOTAL.labels(from_status=task.status.value, to_status=TaskStatus.FAILED.value).inc()
        self.log.warning("Task failed", task_id=task.task_id, error=error)
        return ReconcileOutcome.FAILED
