# File: ingest_orchestrator/dependencies.py
from typing import Optional

import structlog
from fastapi import Header, HTTPException, Request, status
from sqlalchemy.ext.asyncio import AsyncEngine

from ingest_orchestrator.application.ports import (
    EmbeddingTriggerPort,
    KnowledgeBasePort,
    ObjectStorePort,
    SettingsStorePort,
    TaskStorePort,
    WorkerPort,
)
from ingest_orchestrator.application.scheduler import ReconciliationScheduler
from ingest_orchestrator.application.use_cases.ingest_result_use_case import IngestResultUseCase
from ingest_orchestrator.application.use_cases.reconcile_task_use_case import ReconcileTaskUseCase
from ingest_orchestrator.application.use_cases.task_orchestrator import TaskOrchestrator
from ingest_orchestrator.db.knowledge_base_repository import PostgresKnowledgeBase
from ingest_orchestrator.db.postgres_client import get_async_engine
from ingest_orchestrator.db.settings_repository import PostgresSettingsStore
from ingest_orchestrator.db.task_repository import PostgresTaskStore
from ingest_orchestrator.services.clients.embedding_service_client import EmbeddingServiceClient
from ingest_orchestrator.services.clients.worker_service_client import WorkerServiceClient
from ingest_orchestrator.services.gcs_client import GCSClient

log = structlog.get_logger(__name__)


class ServiceContainer:
    """Wires the adapters into the use cases. Built once in the app lifespan."""

    def __init__(
        self,
        task_store: TaskStorePort,
        knowledge_base: KnowledgeBasePort,
        settings_store: SettingsStorePort,
        object_store: ObjectStorePort,
        worker: WorkerPort,
        embedding_trigger: EmbeddingTriggerPort,
        engine: Optional[AsyncEngine] = None,
    ):
        self.engine = engine
        self.task_store = task_store
        self.knowledge_base = knowledge_base
        self.settings_store = settings_store
        self.object_store = object_store
        self.worker = worker
        self.embedding_trigger = embedding_trigger

        self.ingest_use_case = IngestResultUseCase(knowledge_base=knowledge_base)
        self.reconcile_use_case = ReconcileTaskUseCase(
            task_store=task_store,
            worker=worker,
            ingest_use_case=self.ingest_use_case,
            embedding_trigger=embedding_trigger,
        )
        self.scheduler = ReconciliationScheduler(task_store=task_store, reconcile_use_case=self.reconcile_use_case)
        self.orchestrator = TaskOrchestrator(
            task_store=task_store,
            settings_store=settings_store,
            object_store=object_store,
            worker=worker,
            scheduler=self.scheduler,
        )

    async def close(self) -> None:
        await self.scheduler.stop()
        await self.worker.close()
        await self.embedding_trigger.close()
        log.info("Service container closed.")


def build_default_container() -> ServiceContainer:
    """Concrete adapters: PostgreSQL, GCS, worker and embedding HTTP clients."""
    engine = get_async_engine()
    return ServiceContainer(
        engine=engine,
        task_store=PostgresTaskStore(engine),
        knowledge_base=PostgresKnowledgeBase(engine),
        settings_store=PostgresSettingsStore(engine),
        object_store=GCSClient(),
        worker=WorkerServiceClient(),
        embedding_trigger=EmbeddingServiceClient(),
    )


def get_container(request: Request) -> ServiceContainer:
    return request.app.state.container


def get_task_orchestrator(request: Request) -> TaskOrchestrator:
    return get_container(request).orchestrator


def get_owner_id(x_user_id: Optional[str] = Header(None, alias="X-User-ID")) -> str:
    if not x_user_id or not x_user_id.strip():
        raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="Missing X-User-ID header")
    return x_user_id.strip()
