# File: ingest_orchestrator/core/exceptions.py
from typing import Any, Optional, TYPE_CHECKING

if TYPE_CHECKING:
    from ingest_orchestrator.domain.models import IngestOutcome


class OrchestratorError(Exception):
    """Base exception for the ingestion task orchestrator."""
    pass


class WorkerServiceError(OrchestratorError):
    """Base exception for conversion worker errors."""
    def __init__(self, message: str, status_code: Optional[int] = None, detail: Any = None):
        super().__init__(message)
        self.status_code = status_code
        self.detail = detail


class TransientWorkerError(WorkerServiceError):
    """Network error, timeout or 5xx. Retried on the next reconciliation pass."""
    pass


# Submission-time name used by callers of WorkerPort.submit
WorkerUnavailableError = TransientWorkerError


class WorkerRejectedError(WorkerServiceError):
    """The worker refused the request (4xx). Not retried."""
    pass


class WorkerJobNotFoundError(WorkerRejectedError):
    """The worker no longer knows the job id."""
    pass


class StorageError(OrchestratorError):
    """Object store or relational store failure."""
    def __init__(self, message: str, original_exception: Optional[Exception] = None):
        self.message = message
        self.original_exception = original_exception
        super().__init__(message)

    def __str__(self):
        if self.original_exception:
            return f"{self.message}: {type(self.original_exception).__name__} - {str(self.original_exception)}"
        return self.message


class ObjectNotFoundError(StorageError):
    pass


class TaskNotFoundError(OrchestratorError):
    def __init__(self, task_id: str):
        super().__init__(f"Task not found: {task_id}")
        self.task_id = task_id


class InvalidTransitionError(OrchestratorError):
    def __init__(self, task_id: str, current: str, requested: str):
        super().__init__(f"Task {task_id} cannot move from '{current}' to '{requested}'")
        self.task_id = task_id
        self.current = current
        self.requested = requested


class PartialIngestionError(OrchestratorError):
    """
    Some documents or chunks of a worker result could not be written.
    Not fatal to the task; raised by IngestOutcome.check() so callers log it loudly.
    """
    def __init__(self, outcome: "IngestOutcome"):
        self.outcome = outcome
        super().__init__(
            f"Partial ingestion: {len(outcome.failed_documents)} document(s) and "
            f"{outcome.failed_chunks} chunk(s) were not written"
        )


class EmbeddingTriggerError(OrchestratorError):
    """The embedding service did not accept a document for embedding."""
    def __init__(self, message: str, status_code: Optional[int] = None, detail: Any = None):
        super().__init__(message)
        self.status_code = status_code
        self.detail = detail


class IngestionClaimLostError(OrchestratorError):
    """The ingestion claim expired or is held by another reconciler."""
    def __init__(self, task_id: str):
        super().__init__(f"Ingestion claim for task {task_id} is no longer held")
        self.task_id = task_id
