# ingest_orchestrator/db/task_repository.py
import time
import uuid
from typing import Any, Dict, List, Optional, Sequence

import sqlalchemy as sa
import structlog
from sqlalchemy.dialects.postgresql import JSONB
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncEngine

from ingest_orchestrator.application.ports.task_store_port import TaskStorePort
from ingest_orchestrator.core.exceptions import (
    IngestionClaimLostError,
    InvalidTransitionError,
    StorageError,
    TaskNotFoundError,
)
from ingest_orchestrator.db.postgres_client import ingestion_tasks_table as tasks
from ingest_orchestrator.domain.models import (
    Task,
    TaskMetadata,
    TaskMetadataPatch,
    TaskStatus,
    can_transition,
)

log = structlog.get_logger(__name__)

_NON_TERMINAL = [TaskStatus.PENDING.value, TaskStatus.PROCESSING.value]


def _normalize_id(task_id: str) -> str:
    try:
        return str(uuid.UUID(str(task_id)))
    except ValueError:
        raise TaskNotFoundError(str(task_id))


def _allowed_from(new_status: TaskStatus) -> List[str]:
    """Statuses a task may currently be in for a move to `new_status` to be legal."""
    return [s.value for s in TaskStatus if can_transition(s, new_status)]


def _merged_metadata(patch: Dict[str, Any]):
    # top-level JSONB merge; fields not in the patch are left untouched
    return tasks.c.metadata.op("||", return_type=JSONB)(sa.literal(patch, type_=JSONB))


def build_update_statement(
    task_id: str,
    patch: Optional[Dict[str, Any]],
    status: Optional[TaskStatus],
) -> sa.Update:
    stmt = sa.update(tasks).where(tasks.c.id == task_id)
    values: Dict[str, Any] = {"updated_at": sa.func.now()}
    if patch:
        values["metadata"] = _merged_metadata(patch)
    if status is not None:
        stmt = stmt.where(tasks.c.status.in_(_allowed_from(status)))
        values["status"] = status.value
    return stmt.values(**values).returning(*tasks.c)


def build_claim_statement(task_id: str, claim_token: str, now_ts: float, lease_seconds: float) -> sa.Update:
    """Conditional claim: not ingested, result cached, no live claim."""
    return (
        sa.update(tasks)
        .where(
            tasks.c.id == task_id,
            sa.func.coalesce(tasks.c.metadata["ingested"].as_boolean(), False).is_(False),
            sa.func.jsonb_typeof(tasks.c.metadata["worker_result"]) == "object",
            sa.or_(
                tasks.c.metadata["ingest_claim"].astext.is_(None),
                sa.func.coalesce(tasks.c.metadata["ingest_claimed_at"].as_float(), 0.0) < now_ts - lease_seconds,
            ),
        )
        .values(
            metadata=_merged_metadata({"ingest_claim": claim_token, "ingest_claimed_at": now_ts}),
            updated_at=sa.func.now(),
        )
        .returning(tasks.c.id)
    )


def build_mark_ingested_statement(
    task_id: str,
    claim_token: str,
    summary: Dict[str, Any],
    status: TaskStatus,
    patch: Optional[Dict[str, Any]] = None,
) -> sa.Update:
    payload = dict(patch or {})
    payload.update({
        "ingested": True,
        "ingest_summary": summary,
        "ingest_claim": None,
        "ingest_claimed_at": None,
    })
    return (
        sa.update(tasks)
        .where(
            tasks.c.id == task_id,
            tasks.c.metadata["ingest_claim"].astext == claim_token,
            sa.func.jsonb_typeof(tasks.c.metadata["worker_result"]) == "object",
            tasks.c.status.in_(_allowed_from(status)),
        )
        .values(metadata=_merged_metadata(payload), status=status.value, updated_at=sa.func.now())
        .returning(*tasks.c)
    )


def _row_to_task(row: sa.Row) -> Task:
    m = row._mapping
    return Task(
        task_id=str(m["id"]),
        collection_id=m["collection_id"],
        owner_id=m["owner_id"],
        file_path=m["file_path"],
        status=TaskStatus(m["status"]),
        created_at=m["created_at"],
        updated_at=m["updated_at"],
        metadata=TaskMetadata.model_validate(m["metadata"] or {}),
    )


class PostgresTaskStore(TaskStorePort):
    def __init__(self, engine: AsyncEngine):
        self.engine = engine

    async def _execute(self, stmt: sa.Executable, operation: str, task_id: Optional[str] = None) -> Sequence[sa.Row]:
        try:
            async with self.engine.begin() as conn:
                result = await conn.execute(stmt)
                return result.fetchall() if result.returns_rows else []
        except SQLAlchemyError as e:
            log.error("Task store operation failed", operation=operation, task_id=task_id, error=str(e))
            raise StorageError(f"Task store {operation} failed", e) from e

    async def create(self, collection_id: str, owner_id: str, file_path: str, options: Dict[str, Any]) -> Task:
        task_id = str(uuid.uuid4())
        initial = TaskMetadata(options=dict(options or {})).model_dump(mode="json", exclude_none=True)
        stmt = (
            sa.insert(tasks)
            .values(
                id=task_id,
                collection_id=collection_id,
                owner_id=owner_id,
                file_path=file_path,
                status=TaskStatus.PENDING.value,
                metadata=initial,
            )
            .returning(*tasks.c)
        )
        rows = await self._execute(stmt, "create", task_id)
        log.info("Task created", task_id=task_id, collection_id=collection_id, file_path=file_path)
        return _row_to_task(rows[0])

    async def get(self, task_id: str) -> Task:
        task_id = _normalize_id(task_id)
        rows = await self._execute(sa.select(tasks).where(tasks.c.id == task_id), "get", task_id)
        if not rows:
            raise TaskNotFoundError(task_id)
        return _row_to_task(rows[0])

    async def update(
        self,
        task_id: str,
        patch: Optional[TaskMetadataPatch] = None,
        status: Optional[TaskStatus] = None,
    ) -> Task:
        task_id = _normalize_id(task_id)
        stmt = build_update_statement(task_id, patch.as_json() if patch else None, status)
        rows = await self._execute(stmt, "update", task_id)
        if rows:
            return _row_to_task(rows[0])
        current = await self.get(task_id)
        raise InvalidTransitionError(task_id, current.status.value, status.value if status else current.status.value)

    async def list_by_collection(self, collection_id: str) -> List[Task]:
        stmt = (
            sa.select(tasks)
            .where(tasks.c.collection_id == collection_id)
            .order_by(tasks.c.created_at.desc())
        )
        return [_row_to_task(r) for r in await self._execute(stmt, "list_by_collection")]

    async def list_non_terminal(self, limit: int, collection_id: Optional[str] = None) -> List[Task]:
        stmt = sa.select(tasks).where(tasks.c.status.in_(_NON_TERMINAL))
        if collection_id is not None:
            stmt = stmt.where(tasks.c.collection_id == collection_id)
        stmt = stmt.order_by(tasks.c.updated_at.asc()).limit(limit)
        return [_row_to_task(r) for r in await self._execute(stmt, "list_non_terminal")]

    async def delete(self, task_id: str) -> bool:
        try:
            task_id = _normalize_id(task_id)
        except TaskNotFoundError:
            return False
        rows = await self._execute(
            sa.delete(tasks).where(tasks.c.id == task_id).returning(tasks.c.id), "delete", task_id
        )
        return bool(rows)

    async def claim_ingestion(self, task_id: str, claim_token: str, lease_seconds: float) -> bool:
        task_id = _normalize_id(task_id)
        stmt = build_claim_statement(task_id, claim_token, time.time(), lease_seconds)
        rows = await self._execute(stmt, "claim_ingestion", task_id)
        return bool(rows)

    async def release_ingestion_claim(self, task_id: str, claim_token: str) -> None:
        task_id = _normalize_id(task_id)
        stmt = (
            sa.update(tasks)
            .where(tasks.c.id == task_id, tasks.c.metadata["ingest_claim"].astext == claim_token)
            .values(metadata=_merged_metadata({"ingest_claim": None, "ingest_claimed_at": None}))
        )
        await self._execute(stmt, "release_ingestion_claim", task_id)

    async def mark_ingested(
        self,
        task_id: str,
        claim_token: str,
        summary: Dict[str, Any],
        status: TaskStatus,
        patch: Optional[TaskMetadataPatch] = None,
    ) -> Task:
        task_id = _normalize_id(task_id)
        stmt = build_mark_ingested_statement(
            task_id, claim_token, summary, status, patch.as_json() if patch else None
        )
        rows = await self._execute(stmt, "mark_ingested", task_id)
        if rows:
            return _row_to_task(rows[0])
        await self.get(task_id)
        raise IngestionClaimLostError(task_id)
