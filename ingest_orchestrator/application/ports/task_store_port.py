from abc import ABC, abstractmethod
from typing import Any, Dict, List, Optional

from ingest_orchestrator.domain.models import Task, TaskMetadataPatch, TaskStatus


class TaskStorePort(ABC):
    """
    Durable record of ingestion tasks.

    Every metadata change is a field-level merge; implementations must never
    overwrite the whole metadata bag. Status changes are conditional: the status
    of a terminal task never changes and status never moves backwards.
    """

    @abstractmethod
    async def create(
        self,
        collection_id: str,
        owner_id: str,
        file_path: str,
        options: Dict[str, Any],
    ) -> Task:
        """Creates a task in `pending` status."""
        raise NotImplementedError

    @abstractmethod
    async def get(self, task_id: str) -> Task:
        """Raises TaskNotFoundError."""
        raise NotImplementedError

    @abstractmethod
    async def update(
        self,
        task_id: str,
        patch: Optional[TaskMetadataPatch] = None,
        status: Optional[TaskStatus] = None,
    ) -> Task:
        """
        Merges `patch` into the metadata and optionally moves the status.

        Raises:
            TaskNotFoundError: unknown task.
            InvalidTransitionError: the status change is not allowed.
        """
        raise NotImplementedError

    @abstractmethod
    async def list_by_collection(self, collection_id: str) -> List[Task]:
        """Newest first."""
        raise NotImplementedError

    @abstractmethod
    async def list_non_terminal(self, limit: int, collection_id: Optional[str] = None) -> List[Task]:
        raise NotImplementedError

    @abstractmethod
    async def delete(self, task_id: str) -> bool:
        raise NotImplementedError

    @abstractmethod
    async def claim_ingestion(self, task_id: str, claim_token: str, lease_seconds: float) -> bool:
        """
        Atomically claims the right to ingest a task's worker result.

        Succeeds only when `ingested` is false, `worker_result` is present and
        no unexpired claim exists.
        """
        raise NotImplementedError

    @abstractmethod
    async def release_ingestion_claim(self, task_id: str, claim_token: str) -> None:
        raise NotImplementedError

    @abstractmethod
    async def mark_ingested(
        self,
        task_id: str,
        claim_token: str,
        summary: Dict[str, Any],
        status: TaskStatus,
        patch: Optional[TaskMetadataPatch] = None,
    ) -> Task:
        """
        Sets `ingested = true` (never unset) for the holder of `claim_token`,
        together with the final status and any extra metadata.
        """
        raise NotImplementedError
