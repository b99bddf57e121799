# ingest_orchestrator/services/clients/worker_service_client.py
import mimetypes
from typing import Any, Dict, List, Optional

import httpx
import structlog
from pydantic import ValidationError

from ingest_orchestrator.application.options import encode_form_options, filter_worker_options
from ingest_orchestrator.application.ports.worker_port import WorkerPort
from ingest_orchestrator.core.config import settings
from ingest_orchestrator.core.exceptions import (
    TransientWorkerError,
    WorkerJobNotFoundError,
    WorkerRejectedError,
    WorkerServiceError,
)
from ingest_orchestrator.core.metrics import WORKER_CALL_FAILURES_TOTAL
from ingest_orchestrator.domain.models import WorkerJobRef, WorkerResult, WorkerStatus
from ingest_orchestrator.services.base_client import BaseServiceClient

log = structlog.get_logger(__name__)

# Request Timeout and Too Many Requests: the job is fine, ask again later.
TRANSIENT_CLIENT_STATUSES = (408, 429)


def _error_detail(response: httpx.Response) -> Any:
    try:
        body = response.json()
    except ValueError:
        return response.text[:500]
    if isinstance(body, dict) and "detail" in body:
        return body["detail"]
    return body


class WorkerServiceClient(BaseServiceClient, WorkerPort):
    """
    Client for the external conversion worker.

    Submits files as asynchronous jobs, polls their status and fetches the
    structured result (documents + chunks) once the job succeeded.
    """

    def __init__(
        self,
        base_url: Optional[str] = None,
        allowed_option_prefixes: Optional[List[str]] = None,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        effective_base_url = (base_url or settings.WORKER_SERVICE_URL).rstrip('/')
        super().__init__(base_url=effective_base_url, service_name="WorkerService", transport=transport)
        self.allowed_option_prefixes = list(allowed_option_prefixes or settings.WORKER_ALLOWED_OPTION_PREFIXES)
        self.log = log.bind(service_client="WorkerServiceClient", service_url=effective_base_url)

    async def _call(self, operation: str, method: str, endpoint: str, **kwargs: Any) -> httpx.Response:
        """Runs a request and translates httpx errors into the worker error taxonomy."""
        try:
            return await self._request(method=method, endpoint=endpoint, **kwargs)
        except httpx.HTTPStatusError as e:
            code = e.response.status_code
            detail = _error_detail(e.response)
            if code >= 500:
                WORKER_CALL_FAILURES_TOTAL.labels(operation=operation, kind="server_error").inc()
                raise TransientWorkerError(
                    f"Worker returned HTTP {code} on {operation}", status_code=code, detail=detail
                ) from e
            if code in TRANSIENT_CLIENT_STATUSES:
                WORKER_CALL_FAILURES_TOTAL.labels(operation=operation, kind="throttled").inc()
                self.log.warning(
                    "Worker asked to back off",
                    operation=operation,
                    status_code=code,
                    retry_after=e.response.headers.get("Retry-After"),
                )
                raise TransientWorkerError(
                    f"Worker returned HTTP {code} on {operation}", status_code=code, detail=detail
                ) from e
            if code == 404 and operation in ("poll", "fetch_result"):
                WORKER_CALL_FAILURES_TOTAL.labels(operation=operation, kind="not_found").inc()
                raise WorkerJobNotFoundError(
                    f"Worker does not know the job ({operation})", status_code=code, detail=detail
                ) from e
            WORKER_CALL_FAILURES_TOTAL.labels(operation=operation, kind="rejected").inc()
            raise WorkerRejectedError(
                f"Worker rejected {operation} with HTTP {code}", status_code=code, detail=detail
            ) from e
        except httpx.TimeoutException as e:
            WORKER_CALL_FAILURES_TOTAL.labels(operation=operation, kind="timeout").inc()
            raise TransientWorkerError(f"Worker {operation} timed out", detail=str(e)) from e
        except httpx.RequestError as e:
            WORKER_CALL_FAILURES_TOTAL.labels(operation=operation, kind="network").inc()
            raise TransientWorkerError(
                f"Request to worker failed on {operation}: {type(e).__name__}", detail=str(e)
            ) from e

    @staticmethod
    def _json(response: httpx.Response, operation: str) -> Dict[str, Any]:
        try:
            payload = response.json()
        except ValueError as e:
            raise WorkerServiceError(
                f"Worker returned a non-JSON body on {operation}",
                status_code=response.status_code,
                detail=response.text[:200],
            ) from e
        if not isinstance(payload, dict):
            raise WorkerServiceError(
                f"Invalid response format from worker on {operation}",
                status_code=response.status_code,
                detail=str(payload)[:200],
            )
        return payload

    async def submit(self, file_bytes: bytes, filename: str, options: Dict[str, Any]) -> WorkerJobRef:
        if not file_bytes:
            self.log.error("submit called with empty file_bytes.", filename=filename)
            raise WorkerRejectedError("File content cannot be empty.")

        clean_options = filter_worker_options(options, self.allowed_option_prefixes)
        content_type = mimetypes.guess_type(filename)[0] or "application/octet-stream"
        files = {settings.WORKER_SUBMIT_FILE_FIELD: (filename, file_bytes, content_type)}

        submit_log = self.log.bind(filename=filename, size_len=len(file_bytes))
        submit_log.debug("Submitting conversion job", option_keys=sorted(clean_options))

        response = await self._call(
            "submit",
            "POST",
            settings.WORKER_SUBMIT_PATH,
            files=files,
            data=encode_form_options(clean_options),
            timeout=settings.WORKER_SUBMIT_TIMEOUT_SECONDS,
        )
        payload = self._json(response, "submit")
        job_id = payload.get("job_id") or payload.get("task_id") or payload.get("id")
        if not job_id:
            submit_log.error("Worker response has no job id", response_preview=str(payload)[:200])
            raise WorkerServiceError(
                "Invalid response format from worker: missing job id",
                status_code=response.status_code,
                detail=payload,
            )

        submit_log.info("Conversion job submitted", job_id=str(job_id))
        return WorkerJobRef(job_id=str(job_id), filename=filename, options=clean_options, response=payload)

    async def poll(self, job_id: str) -> WorkerStatus:
        response = await self._call(
            "poll",
            "GET",
            settings.WORKER_STATUS_PATH.format(job_id=job_id),
            timeout=settings.WORKER_POLL_TIMEOUT_SECONDS,
        )
        payload = self._json(response, "poll")
        raw_status = payload.get("status") or payload.get("task_status") or ""
        message = payload.get("error") or payload.get("message") or payload.get("detail")
        self.log.debug("Polled worker job", job_id=job_id, worker_status=raw_status)
        return WorkerStatus(
            job_id=job_id,
            status=str(raw_status),
            message=str(message) if message is not None else None,
            raw=payload,
        )

    async def fetch_result(self, job_id: str) -> WorkerResult:
        response = await self._call(
            "fetch_result",
            "GET",
            settings.WORKER_RESULT_PATH.format(job_id=job_id),
            timeout=settings.WORKER_RESULT_TIMEOUT_SECONDS,
        )
        payload = self._json(response, "fetch_result")
        if "documents" not in payload and "chunks" not in payload:
            self.log.error("Invalid result format from worker", job_id=job_id, response_preview=str(payload)[:200])
            raise WorkerServiceError(
                "Invalid result format from worker: expected 'documents' and/or 'chunks'",
                status_code=response.status_code,
            )
        try:
            result = WorkerResult.model_validate(payload)
        except ValidationError as e:
            raise WorkerServiceError(f"Worker result could not be parsed: {e.error_count()} error(s)", detail=str(e)) from e

        self.log.info(
            "Fetched worker result",
            job_id=job_id,
            num_documents=len(result.documents),
            num_chunks=len(result.chunks),
        )
        return result

    async def cancel_all(self) -> None:
        await self._call("cancel_all", "GET", settings.WORKER_CANCEL_ALL_PATH)
        self.log.info("Worker asked to cancel all running jobs.")

    async def clear_results(self) -> None:
        await self._call("clear_results", "GET", settings.WORKER_CLEAR_RESULTS_PATH)
        self.log.info("Worker asked to clear its stored results.")

    async def health_check(self) -> bool:
        health_log = self.log.bind(action="worker_health_check")
        try:
            response = await self.client.get(settings.WORKER_HEALTH_PATH, timeout=5)
            response.raise_for_status()
            health_log.debug("Worker service is healthy.")
            return True
        except httpx.HTTPStatusError as e:
            health_log.error("Worker health check failed (HTTP error)", status_code=e.response.status_code)
            return False
        except httpx.RequestError as e:
            health_log.error("Worker health check failed (Request error)", error_msg=str(e))
            return False
