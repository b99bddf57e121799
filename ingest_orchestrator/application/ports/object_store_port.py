from abc import ABC, abstractmethod
from typing import List

from ingest_orchestrator.domain.models import StorageItem


class ObjectStorePort(ABC):
    """Raw uploaded files addressed by `/`-delimited paths."""

    @abstractmethod
    async def download(self, path: str) -> bytes:
        """Raises ObjectNotFoundError or StorageError."""
        raise NotImplementedError

    @abstractmethod
    async def upload(self, path: str, data: bytes, content_type: str, overwrite: bool = True) -> str:
        raise NotImplementedError

    @abstractmethod
    async def list(self, prefix: str) -> List[StorageItem]:
        raise NotImplementedError

    @abstractmethod
    async def delete(self, path: str) -> None:
        raise NotImplementedError
