from abc import ABC, abstractmethod


class EmbeddingTriggerPort(ABC):
    """Fire-and-forget request to embed a document's chunks."""

    @abstractmethod
    async def trigger(self, document_id: str, collection_id: str) -> None:
        raise NotImplementedError

    @abstractmethod
    async def close(self) -> None:
        raise NotImplementedError
