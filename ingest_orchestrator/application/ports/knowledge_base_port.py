from abc import ABC, abstractmethod
from typing import List

from ingest_orchestrator.domain.models import ChunkRecord, DocumentRecord


class KnowledgeBasePort(ABC):
    """Writes document and chunk records owned by the knowledge-base domain."""

    @abstractmethod
    async def create_document(self, document: DocumentRecord) -> str:
        """
        Creates the document and returns its id. Creating a document whose id
        already exists is a no-op that returns the existing id.
        """
        raise NotImplementedError

    @abstractmethod
    async def insert_chunks(self, chunks: List[ChunkRecord]) -> int:
        """Inserts all chunks in one batch. Raises StorageError if the batch fails."""
        raise NotImplementedError

    @abstractmethod
    async def insert_chunk(self, chunk: ChunkRecord) -> None:
        """Inserts a single chunk. Raises StorageError."""
        raise NotImplementedError
