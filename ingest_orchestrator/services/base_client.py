from typing import Any, Dict, Optional, Union

import httpx
import structlog
from tenacity import (
    RetryCallState,
    retry,
    retry_if_exception_type,
    stop_after_attempt,
    wait_exponential,
)

from ingest_orchestrator.core.config import settings

log = structlog.get_logger(__name__)

REQUEST_ID_HEADER = "X-Request-ID"


def _log_retry(retry_state: RetryCallState) -> None:
    client = retry_state.args[0] if retry_state.args else None
    error = retry_state.outcome.exception() if retry_state.outcome else None
    log.warning(
        "Retrying request after transport error",
        service=getattr(client, "service_name", None),
        attempt=retry_state.attempt_number,
        error=str(error) or type(error).__name__,
    )


def _outgoing_headers(headers: Optional[Dict[str, str]]) -> Dict[str, str]:
    """Propagates the request id bound by the API middleware, if any."""
    merged = dict(headers or {})
    request_id = structlog.contextvars.get_contextvars().get("request_id")
    if request_id and REQUEST_ID_HEADER not in merged:
        merged[REQUEST_ID_HEADER] = str(request_id)
    return merged


class BaseServiceClient:
    """
    Shared async HTTP plumbing for the worker and embedding clients.

    Transport errors are retried with exponential backoff; HTTP status errors
    are raised as-is so each client can map them to its own exceptions.
    """

    def __init__(
        self,
        base_url: str,
        service_name: str,
        timeout: float = settings.HTTP_CLIENT_TIMEOUT,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        self.base_url = base_url.rstrip('/')
        self.service_name = service_name
        self.client = httpx.AsyncClient(
            base_url=self.base_url,
            timeout=timeout,
            limits=httpx.Limits(max_connections=settings.RECONCILE_MAX_CONCURRENCY * 2),
            transport=transport,
        )

    async def close(self):
        await self.client.aclose()
        log.info("Service client closed", service=self.service_name)

    @retry(
        stop=stop_after_attempt(settings.HTTP_CLIENT_MAX_RETRIES),
        wait=wait_exponential(multiplier=settings.HTTP_CLIENT_BACKOFF_FACTOR, max=10),
        retry=retry_if_exception_type(httpx.RequestError),
        before_sleep=_log_retry,
        reraise=True,
    )
    async def _request(
        self,
        method: str,
        endpoint: str,
        params: Optional[Dict[str, Any]] = None,
        json: Optional[Dict[str, Any]] = None,
        data: Optional[Dict[str, Any]] = None,
        files: Optional[Dict[str, Any]] = None,
        headers: Optional[Dict[str, str]] = None,
        timeout: Optional[Union[float, httpx.Timeout]] = None,
    ) -> httpx.Response:
        call_log = log.bind(service=self.service_name, method=method, endpoint=endpoint)
        call_log.debug("Calling service", params=params)
        extra: Dict[str, Any] = {} if timeout is None else {"timeout": timeout}
        try:
            response = await self.client.request(
                method=method,
                url=endpoint,
                params=params,
                json=json,
                data=data,
                files=files,
                headers=_outgoing_headers(headers),
                **extra,
            )
            response.raise_for_status()
        except httpx.HTTPStatusError as e:
            call_log.error("Service answered with an error status", status_code=e.response.status_code, detail=e.response.text[:500])
            raise
        except httpx.RequestError as e:
            call_log.warning("Transport error calling service", error=str(e) or type(e).__name__)
            raise
        call_log.debug("Service answered", status_code=response.status_code)
        return response
