# ingest_orchestrator/db/postgres_client.py
import json
from typing import Optional

import structlog
from sqlalchemy import (
    Table, MetaData, Column, Uuid, Integer, Text, String, DateTime,
    UniqueConstraint, ForeignKeyConstraint, PrimaryKeyConstraint, Index, text,
)
from sqlalchemy.dialects.postgresql import JSONB
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncEngine, create_async_engine

from ingest_orchestrator.core.config import settings

log = structlog.get_logger(__name__)

_engine: Optional[AsyncEngine] = None

metadata_obj = MetaData()

ingestion_tasks_table = Table(
    'ingestion_tasks',
    metadata_obj,
    Column('id', Uuid(as_uuid=False), primary_key=True),
    Column('collection_id', String(255), nullable=False),
    Column('owner_id', String(255), nullable=False),
    Column('file_path', Text, nullable=False),
    Column('status', String(20), nullable=False, server_default='pending'),
    Column('metadata', JSONB, nullable=False, server_default=text("'{}'::jsonb")),
    Column('created_at', DateTime(timezone=True), nullable=False, server_default=text("timezone('utc', now())")),
    Column('updated_at', DateTime(timezone=True), nullable=False, server_default=text("timezone('utc', now())")),
    Index('idx_ingestion_tasks_collection_created', 'collection_id', 'created_at'),
    Index('idx_ingestion_tasks_status', 'status'),
)

documents_table = Table(
    'documents',
    metadata_obj,
    Column('id', Uuid(as_uuid=False), primary_key=True),
    Column('collection_id', String(255), nullable=False),
    Column('owner_id', String(255), nullable=False),
    Column('title', Text, nullable=False),
    Column('source', Text, nullable=False),
    Column('content', Text, nullable=False),
    Column('metadata', JSONB, nullable=False, server_default=text("'{}'::jsonb")),
    Column('created_at', DateTime(timezone=True), server_default=text("timezone('utc', now())")),
    Index('idx_documents_collection_id', 'collection_id'),
)

document_chunks_table = Table(
    'document_chunks',
    metadata_obj,
    Column('id', Uuid(as_uuid=False), primary_key=True),
    Column('document_id', Uuid(as_uuid=False), nullable=False),
    Column('content', Text, nullable=False),
    Column('chunk_index', Integer, nullable=False),
    Column('token_count', Integer, nullable=False, server_default='0'),
    Column('metadata', JSONB, nullable=False, server_default=text("'{}'::jsonb")),
    Column('created_at', DateTime(timezone=True), server_default=text("timezone('utc', now())")),
    UniqueConstraint('document_id', 'chunk_index', name='uq_document_chunk_index'),
    ForeignKeyConstraint(['document_id'], ['documents.id'], name='fk_document_chunks_document', ondelete='CASCADE'),
    Index('idx_document_chunks_document_id', 'document_id'),
)

user_settings_table = Table(
    'user_settings',
    metadata_obj,
    Column('owner_id', String(255), nullable=False),
    Column('key', String(255), nullable=False),
    Column('value', JSONB, nullable=False, server_default=text("'{}'::jsonb")),
    Column('updated_at', DateTime(timezone=True), server_default=text("timezone('utc', now())")),
    PrimaryKeyConstraint('owner_id', 'key', name='pk_user_settings'),
)


def get_async_engine() -> AsyncEngine:
    """Creates the SQLAlchemy async engine (asyncpg driver) once per process."""
    global _engine
    if _engine is None:
        log.info(
            "Creating SQLAlchemy async engine...",
            host=settings.POSTGRES_SERVER,
            port=settings.POSTGRES_PORT,
            user=settings.POSTGRES_USER,
            db=settings.POSTGRES_DB,
        )
        _engine = create_async_engine(
            settings.postgres_async_dsn,
            pool_size=settings.DB_POOL_SIZE,
            max_overflow=settings.DB_MAX_OVERFLOW,
            pool_timeout=30,
            pool_recycle=1800,
            pool_pre_ping=True,
            json_serializer=json.dumps,
            json_deserializer=json.loads,
        )
    return _engine


async def dispose_async_engine():
    global _engine
    if _engine is not None:
        log.info("Disposing SQLAlchemy async engine pool...")
        await _engine.dispose()
        _engine = None
        log.info("SQLAlchemy async engine pool disposed.")
    else:
        log.info("No active SQLAlchemy async engine to dispose.")


async def check_db_connection() -> bool:
    try:
        engine = get_async_engine()
        async with engine.connect() as conn:
            result = await conn.scalar(text("SELECT 1"))
        return result == 1
    except (SQLAlchemyError, OSError) as e:
        log.error("Database connection check failed", error=str(e))
        return False


async def create_schema():
    """Creates the orchestrator tables if they do not exist yet."""
    engine = get_async_engine()
    log.info("Ensuring database schema exists...", tables=sorted(metadata_obj.tables))
    async with engine.begin() as conn:
        await conn.run_sync(metadata_obj.create_all)
    log.info("Database schema ready.")
