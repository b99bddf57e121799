import asyncio
import time
from collections import Counter
from typing import Dict, Optional

import structlog

from ingest_orchestrator.application.ports.task_store_port import TaskStorePort
from ingest_orchestrator.application.use_cases.reconcile_task_use_case import ReconcileTaskUseCase
from ingest_orchestrator.core.config import settings
from ingest_orchestrator.core.exceptions import StorageError
from ingest_orchestrator.core.metrics import (
    NON_TERMINAL_TASKS,
    RECONCILE_OUTCOMES_TOTAL,
    RECONCILE_PASS_DURATION_SECONDS,
)

log = structlog.get_logger(__name__)


class ReconciliationScheduler:
    """
    Runs reconciliation passes on a fixed interval, independent of any read path.

    Each pass loads up to `batch_limit` non-terminal tasks and reconciles them
    with at most `max_concurrency` in flight. The semaphore is shared by all
    passes, including manual ones started through `run_pass`.
    """

    def __init__(
        self,
        task_store: TaskStorePort,
        reconcile_use_case: ReconcileTaskUseCase,
        interval_seconds: Optional[float] = None,
        max_concurrency: Optional[int] = None,
        batch_limit: Optional[int] = None,
    ):
        self.task_store = task_store
        self.reconcile_use_case = reconcile_use_case
        self.interval_seconds = interval_seconds if interval_seconds is not None else settings.RECONCILE_INTERVAL_SECONDS
        self.batch_limit = batch_limit or settings.RECONCILE_BATCH_LIMIT
        self._semaphore = asyncio.Semaphore(max_concurrency or settings.RECONCILE_MAX_CONCURRENCY)
        self._wakeup = asyncio.Event()
        self._stopping = False
        self._runner: Optional[asyncio.Task] = None
        self.log = log.bind(component="ReconciliationScheduler")

    @property
    def is_running(self) -> bool:
        return self._runner is not None and not self._runner.done()

    def start(self) -> None:
        if self.is_running:
            return
        self._stopping = False
        self._wakeup.clear()
        self._runner = asyncio.create_task(self._run(), name="reconciliation-scheduler")
        self.log.info(
            "Reconciliation scheduler started",
            interval_seconds=self.interval_seconds,
            batch_limit=self.batch_limit,
        )

    async def stop(self, timeout: float = 30.0) -> None:
        if self._runner is None:
            return
        self._stopping = True
        self._wakeup.set()
        try:
            await asyncio.wait_for(self._runner, timeout=timeout)
        except asyncio.TimeoutError:
            self.log.warning("Reconciliation scheduler did not stop in time, cancelled", timeout=timeout)
        except asyncio.CancelledError:
            pass
        self._runner = None
        self.log.info("Reconciliation scheduler stopped")

    def trigger(self) -> None:
        """Starts the next pass now instead of waiting for the interval."""
        self._wakeup.set()

    async def _run(self) -> None:
        while not self._stopping:
            try:
                await self.run_pass()
            except StorageError as e:
                self.log.error("Could not load tasks for reconciliation", error=str(e))
            except Exception:
                self.log.exception("Unexpected error in reconciliation pass")
            if self._stopping:
                break
            try:
                await asyncio.wait_for(self._wakeup.wait(), timeout=self.interval_seconds)
            except asyncio.TimeoutError:
                pass
            self._wakeup.clear()

    async def run_pass(self, collection_id: Optional[str] = None) -> Dict[str, int]:
        """Reconciles up to `batch_limit` open tasks, least recently updated first. Returns outcome counts."""
        start_time = time.perf_counter()
        tasks = await self.task_store.list_non_terminal(self.batch_limit, collection_id=collection_id)
        if collection_id is None:
            NON_TERMINAL_TASKS.set(len(tasks))
        if not tasks:
            return {}

        outcomes = await asyncio.gather(*(self._reconcile_one(t.task_id) for t in tasks))
        counts = dict(Counter(outcomes))
        duration = time.perf_counter() - start_time
        RECONCILE_PASS_DURATION_SECONDS.observe(duration)
        self.log.info(
            "Reconciliation pass finished",
            num_tasks=len(tasks),
            collection_id=collection_id,
            outcomes=counts,
            duration_ms=round(duration * 1000, 2),
        )
        return counts

    async def _reconcile_one(self, task_id: str) -> str:
        async with self._semaphore:
            try:
                outcome = await self.reconcile_use_case.execute(task_id)
            except Exception:
                # one task must not abort the pass for the others
                self.log.exception("Unexpected error reconciling task", task_id=task_id)
                RECONCILE_OUTCOMES_TOTAL.labels(outcome="error").inc()
                return "error"
            return outcome.value
