import asyncio
import posixpath
from typing import Any, Dict, List, Optional, Set

import structlog

from ingest_orchestrator.application.options import filter_worker_options, merge_conversion_options
from ingest_orchestrator.application.ports.object_store_port import ObjectStorePort
from ingest_orchestrator.application.ports.settings_store_port import SettingsStorePort
from ingest_orchestrator.application.ports.task_store_port import TaskStorePort
from ingest_orchestrator.application.ports.worker_port import WorkerPort
from ingest_orchestrator.application.scheduler import ReconciliationScheduler
from ingest_orchestrator.core.config import settings
from ingest_orchestrator.core.exceptions import StorageError, TaskNotFoundError, WorkerServiceError
from ingest_orchestrator.core.metrics import TASKS_SUBMITTED_TOTAL
from ingest_orchestrator.domain.models import Task, TaskMetadataPatch, TaskStatus, utcnow

log = structlog.get_logger(__name__)


class TaskOrchestrator:
    """Public operations on ingestion tasks."""

    def __init__(
        self,
        task_store: TaskStorePort,
        settings_store: SettingsStorePort,
        object_store: ObjectStorePort,
        worker: WorkerPort,
        scheduler: ReconciliationScheduler,
        reconcile_on_list: Optional[bool] = None,
    ):
        self.task_store = task_store
        self.settings_store = settings_store
        self.object_store = object_store
        self.worker = worker
        self.scheduler = scheduler
        self.reconcile_on_list = settings.RECONCILE_ON_LIST if reconcile_on_list is None else reconcile_on_list
        self._background: Set[asyncio.Task] = set()
        self.log = log.bind(component="TaskOrchestrator")

    async def submit_task(
        self,
        collection_id: str,
        owner_id: str,
        file_path: str,
        options: Optional[Dict[str, Any]] = None,
    ) -> Task:
        """
        Creates a task for `file_path` and dispatches it to the worker.

        The owner's stored conversion defaults are merged under `options`, and
        only whitelisted keys are kept. Object store errors propagate before any
        task exists. Worker errors leave a durable `failed` task and are re-raised.
        """
        submit_log = self.log.bind(collection_id=collection_id, owner_id=owner_id, file_path=file_path)

        defaults = await self.settings_store.get_setting(owner_id, settings.CONVERSION_SETTINGS_KEY)
        effective = filter_worker_options(
            merge_conversion_options(defaults, options),
            settings.WORKER_ALLOWED_OPTION_PREFIXES,
        )

        file_bytes = await self.object_store.download(file_path)
        filename = posixpath.basename(file_path.rstrip("/"))

        task = await self.task_store.create(collection_id, owner_id, file_path, effective)
        submit_log = submit_log.bind(task_id=task.task_id)

        try:
            job = await self.worker.submit(file_bytes, filename, effective)
        except WorkerServiceError as e:
            submit_log.error("Worker submission failed, task marked as failed", error=str(e))
            await self.task_store.update(
                task.task_id,
                TaskMetadataPatch(error=f"Submission failed: {e}", last_sync=utcnow()),
                status=TaskStatus.FAILED,
            )
            TASKS_SUBMITTED_TOTAL.labels(status="failed").inc()
            raise

        try:
            task = await self.task_store.update(task.task_id, TaskMetadataPatch(worker_job=job, last_sync=utcnow()))
        except StorageError as e:
            # the worker owns a job this task does not know about
            submit_log.error(
                "Worker accepted the job but it could not be recorded",
                job_id=job.job_id,
                filename=job.filename,
                error=str(e),
            )
            TASKS_SUBMITTED_TOTAL.labels(status="unrecorded").inc()
            raise
        TASKS_SUBMITTED_TOTAL.labels(status="submitted").inc()
        submit_log.info("Task submitted to worker", job_id=job.job_id)
        return task

    async def list_tasks(self, collection_id: str) -> List[Task]:
        tasks = await self.task_store.list_by_collection(collection_id)
        if self.reconcile_on_list and any(not t.is_terminal for t in tasks):
            # callers get the pre-reconciliation snapshot
            background = asyncio.create_task(self._reconcile_in_background(collection_id))
            self._background.add(background)
            background.add_done_callback(self._background.discard)
        return tasks

    async def _reconcile_in_background(self, collection_id: str) -> None:
        try:
            await self.scheduler.run_pass(collection_id=collection_id)
        except Exception:
            self.log.exception("Background reconciliation after list failed", collection_id=collection_id)

    async def get_task(self, task_id: str, owner_id: Optional[str] = None) -> Task:
        task = await self.task_store.get(task_id)
        if owner_id is not None and task.owner_id != owner_id:
            raise TaskNotFoundError(task_id)
        return task

    async def delete_task(self, task_id: str, owner_id: Optional[str] = None) -> None:
        """Deletes the task row only; ingested documents and chunks are kept."""
        await self.get_task(task_id, owner_id)
        if not await self.task_store.delete(task_id):
            raise TaskNotFoundError(task_id)
        self.log.info("Task deleted", task_id=task_id)

    async def cancel_all_running(self) -> bool:
        try:
            await self.worker.cancel_all()
        except WorkerServiceError as e:
            self.log.error("Worker did not accept cancel-all", error=str(e))
            return False
        return True

    async def clear_all_results(self) -> bool:
        try:
            await self.worker.clear_results()
        except WorkerServiceError as e:
            self.log.error("Worker did not accept clear-results", error=str(e))
            return False
        return True

    async def get_conversion_settings(self, owner_id: str) -> Dict[str, Any]:
        return await self.settings_store.get_setting(owner_id, settings.CONVERSION_SETTINGS_KEY)

    async def save_conversion_settings(self, owner_id: str, options: Dict[str, Any]) -> Dict[str, Any]:
        return await self.settings_store.save_setting(owner_id, settings.CONVERSION_SETTINGS_KEY, options)

    async def reconcile_now(self, collection_id: Optional[str] = None) -> Dict[str, int]:
        return await self.scheduler.run_pass(collection_id=collection_id)
