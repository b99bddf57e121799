# ingest_orchestrator/db/knowledge_base_repository.py
from typing import Any, Dict, List

import structlog
from sqlalchemy.dialects.postgresql import insert as pg_insert
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncEngine

from ingest_orchestrator.application.ports.knowledge_base_port import KnowledgeBasePort
from ingest_orchestrator.core.exceptions import StorageError
from ingest_orchestrator.db.postgres_client import document_chunks_table, documents_table
from ingest_orchestrator.domain.models import ChunkRecord, DocumentRecord

log = structlog.get_logger(__name__)


def _chunk_row(chunk: ChunkRecord) -> Dict[str, Any]:
    return chunk.model_dump(mode="json")


class PostgresKnowledgeBase(KnowledgeBasePort):
    """Document and chunk writes. Both inserts ignore rows that already exist."""

    def __init__(self, engine: AsyncEngine):
        self.engine = engine

    async def create_document(self, document: DocumentRecord) -> str:
        doc_log = log.bind(document_id=document.id, collection_id=document.collection_id, title=document.title)
        stmt = (
            pg_insert(documents_table)
            .values(**document.model_dump(mode="json"))
            .on_conflict_do_nothing(index_elements=['id'])
        )
        try:
            async with self.engine.begin() as conn:
                result = await conn.execute(stmt)
        except SQLAlchemyError as e:
            doc_log.error("Failed to create document record", error=str(e))
            raise StorageError(f"Failed to create document {document.id}", e) from e
        if result.rowcount == 0:
            doc_log.info("Document record already exists, keeping it")
        else:
            doc_log.debug("Document record created")
        return document.id

    async def insert_chunks(self, chunks: List[ChunkRecord]) -> int:
        if not chunks:
            log.warning("insert_chunks called with empty data list.")
            return 0
        insert_log = log.bind(num_chunks=len(chunks), document_id=chunks[0].document_id)
        stmt = (
            pg_insert(document_chunks_table)
            .values([_chunk_row(c) for c in chunks])
            .on_conflict_do_nothing(index_elements=['document_id', 'chunk_index'])
        )
        try:
            async with self.engine.begin() as conn:
                result = await conn.execute(stmt)
        except SQLAlchemyError as e:
            insert_log.error("Bulk chunk insert failed", error=str(e))
            raise StorageError("Bulk chunk insert failed", e) from e
        inserted = result.rowcount if result.rowcount is not None and result.rowcount >= 0 else len(chunks)
        insert_log.info("Bulk chunk insert executed (ON CONFLICT DO NOTHING).", reported_rowcount=inserted)
        return inserted

    async def insert_chunk(self, chunk: ChunkRecord) -> None:
        stmt = (
            pg_insert(document_chunks_table)
            .values(**_chunk_row(chunk))
            .on_conflict_do_nothing(index_elements=['document_id', 'chunk_index'])
        )
        try:
            async with self.engine.begin() as conn:
                await conn.execute(stmt)
        except SQLAlchemyError as e:
            log.error(
                "Single chunk insert failed",
                document_id=chunk.document_id,
                chunk_index=chunk.chunk_index,
                error=str(e),
            )
            raise StorageError(f"Chunk {chunk.chunk_index} of document {chunk.document_id} failed", e) from e
