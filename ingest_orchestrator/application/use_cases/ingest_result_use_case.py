from typing import Dict, List, Optional, Set

import structlog

from ingest_orchestrator.application.ports.knowledge_base_port import KnowledgeBasePort
from ingest_orchestrator.core.config import settings
from ingest_orchestrator.core.exceptions import StorageError
from ingest_orchestrator.core.metrics import (
    INGESTED_CHUNKS_TOTAL,
    INGESTED_DOCUMENTS_TOTAL,
    INGESTION_ITEM_FAILURES_TOTAL,
)
from ingest_orchestrator.domain.models import (
    ChunkRecord,
    DocumentRecord,
    EmbeddingStatus,
    IngestOutcome,
    Task,
    WorkerChunk,
    WorkerResult,
    chunk_id_for,
    document_id_for,
)

log = structlog.get_logger(__name__)


class IngestResultUseCase:
    """
    Materializes a worker result into document and chunk records.

    Record ids are derived from (task_id, filename, chunk_index), so writing
    the same result twice does not create duplicates. The caller owns the
    `ingested` flag; this use case does not read it.
    """

    def __init__(self, knowledge_base: KnowledgeBasePort, max_content_chars: Optional[int] = None):
        self.knowledge_base = knowledge_base
        self.max_content_chars = max_content_chars or settings.DOCUMENT_CONTENT_MAX_CHARS
        self.log = log.bind(component="IngestResultUseCase")

    async def execute(self, task: Task, result: WorkerResult) -> IngestOutcome:
        ingest_log = self.log.bind(task_id=task.task_id, collection_id=task.collection_id)
        ingest_log.info(
            "Starting ingestion of worker result",
            num_documents=len(result.documents),
            num_chunks=len(result.chunks),
        )
        outcome = IngestOutcome()
        failed: Set[str] = set()

        # 1. Documents echoed by the worker
        for doc in result.documents:
            if not doc.filename:
                ingest_log.warning("Worker document without filename skipped")
                continue
            if doc.filename in outcome.document_ids or doc.filename in failed:
                continue
            await self._create_document(task, doc.filename, doc.content, outcome, failed, fallback=False)

        # 2. Group chunks by file; files with no document get a fallback one
        by_file: Dict[str, List[WorkerChunk]] = {}
        for chunk in result.chunks:
            by_file.setdefault(chunk.filename or task.filename, []).append(chunk)

        for filename in by_file:
            if filename in outcome.document_ids or filename in failed:
                continue
            content = settings.FALLBACK_DOCUMENT_CONTENT.format(filename=filename)
            await self._create_document(task, filename, content, outcome, failed, fallback=True)

        # 3 + 4. Filter empty chunks, then write per document
        for filename, chunks in by_file.items():
            records = self._build_chunks(task, filename, chunks, outcome)
            if filename in failed:
                if records:
                    ingest_log.error(
                        "Dropping chunks of a document that could not be created",
                        filename=filename,
                        dropped_chunks=len(records),
                    )
                    outcome.failed_chunks += len(records)
                    INGESTION_ITEM_FAILURES_TOTAL.labels(stage="chunk_dropped").inc(len(records))
                continue
            if records:
                await self._write_chunks(records, filename, outcome, ingest_log)

        ingest_log.info("Ingestion finished", **outcome.summary())
        return outcome

    async def _create_document(
        self,
        task: Task,
        filename: str,
        content: str,
        outcome: IngestOutcome,
        failed: Set[str],
        fallback: bool,
    ) -> None:
        metadata = {"task_id": task.task_id, "embedding_status": EmbeddingStatus.PENDING.value}
        if fallback:
            metadata["dummy"] = True
        record = DocumentRecord(
            id=document_id_for(task.task_id, filename),
            collection_id=task.collection_id,
            owner_id=task.owner_id,
            title=filename,
            source=task.file_path,
            content=(content or "")[: self.max_content_chars],
            metadata=metadata,
        )
        try:
            document_id = await self.knowledge_base.create_document(record)
        except StorageError as e:
            self.log.error(
                "Document record could not be created",
                task_id=task.task_id,
                filename=filename,
                fallback=fallback,
                error=str(e),
            )
            failed.add(filename)
            outcome.failed_documents.append(filename)
            INGESTION_ITEM_FAILURES_TOTAL.labels(stage="document").inc()
            return

        outcome.document_ids[filename] = document_id
        if fallback:
            outcome.fallback_documents.append(filename)
            self.log.info("Created fallback document for chunked file", task_id=task.task_id, filename=filename)
        INGESTED_DOCUMENTS_TOTAL.labels(kind="fallback" if fallback else "converted").inc()

    def _build_chunks(
        self,
        task: Task,
        filename: str,
        chunks: List[WorkerChunk],
        outcome: IngestOutcome,
    ) -> List[ChunkRecord]:
        document_id = document_id_for(task.task_id, filename)
        records: List[ChunkRecord] = []
        seen: Set[int] = set()
        for position, chunk in enumerate(chunks):
            if not chunk.text.strip():
                outcome.skipped_empty_chunks += 1
                continue
            chunk_index = chunk.chunk_index if chunk.chunk_index is not None else position
            if chunk_index in seen:
                # (document_id, chunk_index) is unique in the store
                self.log.warning(
                    "Duplicate chunk index in worker result",
                    task_id=task.task_id,
                    filename=filename,
                    chunk_index=chunk_index,
                )
                outcome.failed_chunks += 1
                INGESTION_ITEM_FAILURES_TOTAL.labels(stage="chunk_duplicate").inc()
                continue
            seen.add(chunk_index)
            records.append(ChunkRecord(
                id=chunk_id_for(document_id, chunk_index),
                document_id=document_id,
                content=chunk.text,
                chunk_index=chunk_index,
                token_count=chunk.num_tokens if chunk.num_tokens is not None else len(chunk.text.split()),
                metadata={
                    "headings": chunk.headings,
                    "captions": chunk.captions,
                    "page_numbers": chunk.page_numbers,
                    "filename": filename,
                    "task_id": task.task_id,
                },
            ))
        return records

    async def _write_chunks(self, records: List[ChunkRecord], filename: str, outcome: IngestOutcome, ingest_log) -> None:
        try:
            inserted = await self.knowledge_base.insert_chunks(records)
            outcome.chunk_count += len(records)
            INGESTED_CHUNKS_TOTAL.inc(inserted)
            if inserted < len(records):
                ingest_log.info(
                    "Some chunks were already stored",
                    filename=filename,
                    num_chunks=len(records),
                    inserted=inserted,
                )
            return
        except StorageError as e:
            ingest_log.warning(
                "Batch chunk insert failed, falling back to single inserts",
                filename=filename,
                num_chunks=len(records),
                error=str(e),
            )

        for record in records:
            try:
                await self.knowledge_base.insert_chunk(record)
            except StorageError as e:
                ingest_log.error(
                    "Chunk insert failed",
                    filename=filename,
                    chunk_index=record.chunk_index,
                    error=str(e),
                )
                outcome.failed_chunks += 1
                INGESTION_ITEM_FAILURES_TOTAL.labels(stage="chunk").inc()
                continue
            outcome.chunk_count += 1
            INGESTED_CHUNKS_TOTAL.inc()
