from abc import ABC, abstractmethod
from typing import Any, Dict

from ingest_orchestrator.domain.models import WorkerJobRef, WorkerResult, WorkerStatus


class WorkerPort(ABC):
    """
    Interface (Port) to the external conversion worker.

    Network errors and timeouts surface as TransientWorkerError; requests the
    worker refuses surface as WorkerRejectedError.
    """

    @abstractmethod
    async def submit(self, file_bytes: bytes, filename: str, options: Dict[str, Any]) -> WorkerJobRef:
        raise NotImplementedError

    @abstractmethod
    async def poll(self, job_id: str) -> WorkerStatus:
        raise NotImplementedError

    @abstractmethod
    async def fetch_result(self, job_id: str) -> WorkerResult:
        """Only valid once poll() reported a terminal success status."""
        raise NotImplementedError

    @abstractmethod
    async def cancel_all(self) -> None:
        raise NotImplementedError

    @abstractmethod
    async def clear_results(self) -> None:
        raise NotImplementedError

    @abstractmethod
    async def close(self) -> None:
        raise NotImplementedError

    @abstractmethod
    async def health_check(self) -> bool:
        raise NotImplementedError
