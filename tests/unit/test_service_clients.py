import json

import httpx
import pytest
import structlog

from ingest_orchestrator.core.exceptions import (
    EmbeddingTriggerError,
    TransientWorkerError,
    WorkerJobNotFoundError,
    WorkerRejectedError,
    WorkerServiceError,
)
from ingest_orchestrator.services.clients.embedding_service_client import EmbeddingServiceClient
from ingest_orchestrator.services.clients.worker_service_client import WorkerServiceClient

BASE_URL = "http://worker.test"


def make_worker(handler) -> WorkerServiceClient:
    return WorkerServiceClient(
        base_url=BASE_URL,
        allowed_option_prefixes=["convert_", "chunking_"],
        transport=httpx.MockTransport(handler),
    )


async def test_submit_sends_only_whitelisted_options():
    seen = {}

    def handler(request: httpx.Request) -> httpx.Response:
        seen["method"] = request.method
        seen["path"] = request.url.path
        seen["body"] = request.content.decode("utf-8", errors="replace")
        return httpx.Response(200, json={"task_id": "abc-123", "status": "pending"})

    client = make_worker(handler)
    job = await client.submit(
        b"%PDF-1.4 data",
        "report.pdf",
        {"convert_do_ocr": True, "secret_override": "leak", "chunking_max_tokens": 512},
    )
    await client.close()

    assert seen["method"] == "POST"
    assert seen["path"] == "/jobs"
    assert 'name="convert_do_ocr"' in seen["body"]
    assert 'name="chunking_max_tokens"' in seen["body"]
    assert "secret_override" not in seen["body"]
    assert 'filename="report.pdf"' in seen["body"]
    assert job.job_id == "abc-123"
    assert job.options == {"convert_do_ocr": True, "chunking_max_tokens": 512}


async def test_submit_without_job_id_is_an_error():
    client = make_worker(lambda request: httpx.Response(200, json={"status": "pending"}))
    with pytest.raises(WorkerServiceError):
        await client.submit(b"data", "a.txt", {})


async def test_submit_empty_file_is_rejected_without_calling_worker():
    def handler(request):
        raise AssertionError("worker must not be called")

    client = make_worker(handler)
    with pytest.raises(WorkerRejectedError):
        await client.submit(b"", "a.txt", {})


async def test_submit_4xx_is_rejected():
    client = make_worker(lambda request: httpx.Response(400, json={"detail": "bad option"}))
    with pytest.raises(WorkerRejectedError) as exc_info:
        await client.submit(b"data", "a.txt", {})
    assert exc_info.value.status_code == 400
    assert exc_info.value.detail == "bad option"


async def test_5xx_is_transient():
    client = make_worker(lambda request: httpx.Response(503, text="overloaded"))
    with pytest.raises(TransientWorkerError):
        await client.poll("job-1")


@pytest.mark.parametrize("status_code", [408, 429])
async def test_throttling_is_transient(status_code):
    client = make_worker(lambda request: httpx.Response(status_code, headers={"Retry-After": "3"}, json={"detail": "busy"}))
    with pytest.raises(TransientWorkerError) as exc_info:
        await client.poll("job-1")
    assert exc_info.value.status_code == status_code


async def test_network_error_is_transient():
    def handler(request):
        raise httpx.ConnectError("connection refused", request=request)

    client = make_worker(handler)
    with pytest.raises(TransientWorkerError):
        await client.poll("job-1")


async def test_timeout_is_transient():
    def handler(request):
        raise httpx.ReadTimeout("timed out", request=request)

    client = make_worker(handler)
    with pytest.raises(TransientWorkerError):
        await client.fetch_result("job-1")


async def test_unknown_job_is_reported_as_not_found():
    client = make_worker(lambda request: httpx.Response(404, json={"detail": "Task not found"}))
    with pytest.raises(WorkerJobNotFoundError):
        await client.poll("gone")


async def test_poll_reads_status_and_message():
    def handler(request):
        assert request.url.path == "/jobs/job-7/status"
        return httpx.Response(200, json={"task_status": "FAILURE", "error": "OCR crashed"})

    status = await make_worker(handler).poll("job-7")
    assert status.status == "FAILURE"
    assert status.message == "OCR crashed"
    assert status.raw["task_status"] == "FAILURE"


async def test_fetch_result_parses_documents_and_chunks():
    payload = {
        "documents": [{"content": {"filename": "a.pdf", "md_content": "# A"}}],
        "chunks": [
            {"filename": "a.pdf", "text": "first", "chunk_index": 0, "num_tokens": 1},
            {"filename": "a.pdf", "text": "second", "metadata": {"headings": ["H"]}},
        ],
        "processing_time": 1.5,
    }
    result = await make_worker(lambda request: httpx.Response(200, json=payload)).fetch_result("job-1")
    assert result.documents[0].filename == "a.pdf"
    assert result.documents[0].content == "# A"
    assert [c.text for c in result.chunks] == ["first", "second"]
    assert result.chunks[1].headings == ["H"]


async def test_fetch_result_rejects_unexpected_shape():
    client = make_worker(lambda request: httpx.Response(200, json={"unexpected": True}))
    with pytest.raises(WorkerServiceError):
        await client.fetch_result("job-1")


async def test_admin_calls_use_get():
    calls = []

    def handler(request):
        calls.append((request.method, request.url.path))
        return httpx.Response(200, json={"ok": True})

    client = make_worker(handler)
    await client.cancel_all()
    await client.clear_results()
    assert calls == [("GET", "/admin/cancel-all"), ("GET", "/admin/clear-results")]


async def test_worker_health_check():
    assert await make_worker(lambda request: httpx.Response(200, json={"status": "ok"})).health_check() is True
    assert await make_worker(lambda request: httpx.Response(500)).health_check() is False


async def test_embedding_trigger_posts_document():
    seen = {}

    def handler(request):
        seen["path"] = request.url.path
        seen["json"] = json.loads(request.content)
        return httpx.Response(202, json={"accepted": True})

    client = EmbeddingServiceClient(base_url="http://embed.test", transport=httpx.MockTransport(handler))
    await client.trigger("doc-1", "col-1")
    assert seen["path"] == "/api/v1/documents/doc-1/embed"
    assert seen["json"] == {"document_id": "doc-1", "collection_id": "col-1"}


async def test_embedding_trigger_failure_is_typed():
    client = EmbeddingServiceClient(
        base_url="http://embed.test",
        transport=httpx.MockTransport(lambda request: httpx.Response(500, text="down")),
    )
    with pytest.raises(EmbeddingTriggerError) as exc_info:
        await client.trigger("doc-1", "col-1")
    assert exc_info.value.status_code == 500


async def test_request_id_is_forwarded_to_the_worker():
    seen = {}

    def handler(request):
        seen["request_id"] = request.headers.get("X-Request-ID")
        return httpx.Response(200, json={"status": "running"})

    structlog.contextvars.bind_contextvars(request_id="req-42")
    try:
        await make_worker(handler).poll("job-1")
    finally:
        structlog.contextvars.clear_contextvars()
    assert seen["request_id"] == "req-42"
