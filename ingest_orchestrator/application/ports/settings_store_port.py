from abc import ABC, abstractmethod
from typing import Any, Dict


class SettingsStorePort(ABC):
    """Per-owner key/value settings."""

    @abstractmethod
    async def get_setting(self, owner_id: str, key: str) -> Dict[str, Any]:
        """Returns an empty dict when the owner has no value for `key`."""
        raise NotImplementedError

    @abstractmethod
    async def save_setting(self, owner_id: str, key: str, value: Dict[str, Any]) -> Dict[str, Any]:
        raise NotImplementedError
