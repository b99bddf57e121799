# ingest_orchestrator/services/clients/embedding_service_client.py
from typing import Optional

import httpx
import structlog

from ingest_orchestrator.application.ports.embedding_port import EmbeddingTriggerPort
from ingest_orchestrator.core.config import settings
from ingest_orchestrator.core.exceptions import EmbeddingTriggerError
from ingest_orchestrator.services.base_client import BaseServiceClient

log = structlog.get_logger(__name__)


class EmbeddingServiceClient(BaseServiceClient, EmbeddingTriggerPort):
    """
    Client for the embedding service. Only marks documents for embedding;
    the vectors are computed and stored by the service itself.
    """
    def __init__(self, base_url: Optional[str] = None, transport: Optional[httpx.AsyncBaseTransport] = None):
        effective_base_url = (base_url or settings.EMBEDDING_SERVICE_URL).rstrip('/')
        super().__init__(base_url=effective_base_url, service_name="EmbeddingService", transport=transport)
        self.log = log.bind(service_client="EmbeddingServiceClient", service_url=effective_base_url)

    async def trigger(self, document_id: str, collection_id: str) -> None:
        """
        Asks the embedding service to embed one document's chunks.

        Raises:
            EmbeddingTriggerError: on any non-2xx answer or transport failure.
        """
        trigger_log = self.log.bind(document_id=document_id, collection_id=collection_id)
        try:
            response = await self._request(
                method="POST",
                endpoint=settings.EMBEDDING_TRIGGER_PATH.format(document_id=document_id),
                json={"document_id": document_id, "collection_id": collection_id},
                timeout=settings.EMBEDDING_TRIGGER_TIMEOUT_SECONDS,
            )
        except httpx.HTTPStatusError as e:
            raise EmbeddingTriggerError(
                f"Embedding Service returned error: {e.response.status_code}",
                status_code=e.response.status_code,
                detail=e.response.text[:500],
            ) from e
        except httpx.RequestError as e:
            raise EmbeddingTriggerError(
                f"Request to Embedding Service failed: {type(e).__name__}",
                detail=str(e),
            ) from e
        trigger_log.info("Embedding triggered for document", status_code=response.status_code)

    async def health_check(self) -> bool:
        health_log = self.log.bind(action="health_check")
        try:
            response = await self.client.get("/health", timeout=5)
            response.raise_for_status()
            health_data = response.json()
            if health_data.get("status") == "ok":
                health_log.debug("Embedding Service is healthy.")
                return True
            health_log.warning("Embedding Service reported unhealthy.", health_data=health_data)
            return False
        except httpx.HTTPStatusError as e:
            health_log.error("Embedding Service health check failed (HTTP error)", status_code=e.response.status_code)
            return False
        except httpx.RequestError as e:
            health_log.error("Embedding Service health check failed (Request error)", error=str(e))
            return False
        except ValueError:
            health_log.error("Embedding Service health check returned a non-JSON body")
            return False
