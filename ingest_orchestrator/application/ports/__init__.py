from .task_store_port import TaskStorePort
from .knowledge_base_port import KnowledgeBasePort
from .settings_store_port import SettingsStorePort
from .worker_port import WorkerPort
from .object_store_port import ObjectStorePort
from .embedding_port import EmbeddingTriggerPort

__all__ = [
    "TaskStorePort",
    "KnowledgeBasePort",
    "SettingsStorePort",
    "WorkerPort",
    "ObjectStorePort",
    "EmbeddingTriggerPort",
]
