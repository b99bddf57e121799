# ingest_orchestrator/db/settings_repository.py
from typing import Any, Dict

import sqlalchemy as sa
import structlog
from sqlalchemy.dialects.postgresql import insert as pg_insert
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncEngine

from ingest_orchestrator.application.ports.settings_store_port import SettingsStorePort
from ingest_orchestrator.core.exceptions import StorageError
from ingest_orchestrator.db.postgres_client import user_settings_table as user_settings

log = structlog.get_logger(__name__)


class PostgresSettingsStore(SettingsStorePort):
    def __init__(self, engine: AsyncEngine):
        self.engine = engine

    async def get_setting(self, owner_id: str, key: str) -> Dict[str, Any]:
        stmt = sa.select(user_settings.c.value).where(
            user_settings.c.owner_id == owner_id,
            user_settings.c.key == key,
        )
        try:
            async with self.engine.connect() as conn:
                value = await conn.scalar(stmt)
        except SQLAlchemyError as e:
            log.error("Failed to read user setting", owner_id=owner_id, key=key, error=str(e))
            raise StorageError(f"Failed to read setting '{key}'", e) from e
        return dict(value) if isinstance(value, dict) else {}

    async def save_setting(self, owner_id: str, key: str, value: Dict[str, Any]) -> Dict[str, Any]:
        insert_stmt = pg_insert(user_settings).values(owner_id=owner_id, key=key, value=value)
        stmt = insert_stmt.on_conflict_do_update(
            index_elements=['owner_id', 'key'],
            set_={"value": insert_stmt.excluded.value, "updated_at": sa.func.now()},
        ).returning(user_settings.c.value)
        try:
            async with self.engine.begin() as conn:
                saved = await conn.scalar(stmt)
        except SQLAlchemyError as e:
            log.error("Failed to save user setting", owner_id=owner_id, key=key, error=str(e))
            raise StorageError(f"Failed to save setting '{key}'", e) from e
        log.info("User setting saved", owner_id=owner_id, key=key, keys=sorted(value))
        return dict(saved or {})
