# File: ingest_orchestrator/core/config.py
import sys
import logging
from typing import List
from pydantic import Field, SecretStr, field_validator, ValidationError
from pydantic_settings import BaseSettings, SettingsConfigDict

class Settings(BaseSettings):
    model_config = SettingsConfigDict(
        env_file='.env',
        env_prefix='INGEST_ORCH_',
        case_sensitive=False,
        env_file_encoding='utf-8',
        extra='ignore'
    )

    PROJECT_NAME: str = "Ingest Task Orchestrator"
    API_V1_STR: str = "/api/v1"
    LOG_LEVEL: str = "INFO"
    LOG_JSON: bool = True

    # --- PostgreSQL (tasks, documents, chunks, user settings) ---
    POSTGRES_SERVER: str = "localhost"
    POSTGRES_PORT: int = 5432
    POSTGRES_USER: str = "postgres"
    POSTGRES_PASSWORD: SecretStr = SecretStr("postgres")
    POSTGRES_DB: str = "knowledge"
    DB_POOL_SIZE: int = 5
    DB_MAX_OVERFLOW: int = 5
    DB_CREATE_SCHEMA_ON_STARTUP: bool = True

    # --- Object store (GCS) ---
    GCS_BUCKET_NAME: str = Field(default="knowledge-uploads", description="Bucket holding raw uploaded files.")

    # --- Conversion worker ---
    WORKER_SERVICE_URL: str = Field(default="http://localhost:5001", description="Base URL of the conversion worker service.")
    WORKER_SUBMIT_PATH: str = "/jobs"
    WORKER_SUBMIT_FILE_FIELD: str = "file"
    WORKER_STATUS_PATH: str = "/jobs/{job_id}/status"
    WORKER_RESULT_PATH: str = "/jobs/{job_id}/result"
    WORKER_CANCEL_ALL_PATH: str = "/admin/cancel-all"
    WORKER_CLEAR_RESULTS_PATH: str = "/admin/clear-results"
    WORKER_HEALTH_PATH: str = "/health"
    WORKER_SUBMIT_TIMEOUT_SECONDS: float = 120.0
    WORKER_POLL_TIMEOUT_SECONDS: float = 10.0
    WORKER_RESULT_TIMEOUT_SECONDS: float = 60.0
    WORKER_ALLOWED_OPTION_PREFIXES: List[str] = ["convert_", "chunking_", "include_"]

    # --- Embedding trigger ---
    EMBEDDING_SERVICE_URL: str = Field(default="http://localhost:8003", description="Base URL of the embedding service.")
    EMBEDDING_TRIGGER_PATH: str = "/api/v1/documents/{document_id}/embed"
    EMBEDDING_TRIGGER_TIMEOUT_SECONDS: float = 10.0

    # --- HTTP client retries ---
    HTTP_CLIENT_TIMEOUT: float = 60.0
    HTTP_CLIENT_MAX_RETRIES: int = 2
    HTTP_CLIENT_BACKOFF_FACTOR: float = 0.5

    # --- Reconciliation ---
    RECONCILE_INTERVAL_SECONDS: float = 5.0
    RECONCILE_MAX_CONCURRENCY: int = 4
    RECONCILE_BATCH_LIMIT: int = 200
    RECONCILE_ON_LIST: bool = False
    INGEST_CLAIM_LEASE_SECONDS: float = 600.0
    STALLED_TASK_WARN_SECONDS: float = 1800.0
    STALLED_TASK_FAIL_SECONDS: float = 21600.0

    # --- Ingestion ---
    DOCUMENT_CONTENT_MAX_CHARS: int = 500_000
    FALLBACK_DOCUMENT_CONTENT: str = "Document created from chunked content of {filename}."

    # --- Per-owner settings ---
    CONVERSION_SETTINGS_KEY: str = "conversion_defaults"

    @field_validator('LOG_LEVEL')
    @classmethod
    def check_log_level(cls, v: str) -> str:
        valid_levels = ["DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"]
        if v.upper() not in valid_levels:
            raise ValueError(f"Invalid LOG_LEVEL '{v}'. Must be one of {valid_levels}")
        return v.upper()

    @field_validator('RECONCILE_MAX_CONCURRENCY', 'RECONCILE_BATCH_LIMIT')
    @classmethod
    def check_positive(cls, v: int) -> int:
        if v < 1:
            raise ValueError("Must be a positive integer")
        return v

    @field_validator('WORKER_ALLOWED_OPTION_PREFIXES')
    @classmethod
    def check_prefixes(cls, v: List[str]) -> List[str]:
        cleaned = [p for p in (s.strip() for s in v) if p]
        if not cleaned:
            raise ValueError("At least one allowed worker option prefix is required")
        return cleaned

    @property
    def postgres_async_dsn(self) -> str:
        return (
            f"postgresql+asyncpg://{self.POSTGRES_USER}:{self.POSTGRES_PASSWORD.get_secret_value()}"
            f"@{self.POSTGRES_SERVER}:{self.POSTGRES_PORT}/{self.POSTGRES_DB}"
        )

temp_log = logging.getLogger("ingest_orchestrator.config.loader")
if not temp_log.handlers:
    handler = logging.StreamHandler(sys.stdout)
    handler.setFormatter(logging.Formatter('%(levelname)-8s [%(name)s] %(message)s'))
    temp_log.addHandler(handler)
    temp_log.setLevel(logging.INFO)

try:
    temp_log.info("Loading Ingest Orchestrator settings...")
    settings = Settings()
    temp_log.info("--- Ingest Orchestrator Settings Loaded ---")
    temp_log.info(f"  PROJECT_NAME: {settings.PROJECT_NAME}")
    temp_log.info(f"  LOG_LEVEL: {settings.LOG_LEVEL}")
    temp_log.info(f"  POSTGRES: {settings.POSTGRES_USER}@{settings.POSTGRES_SERVER}:{settings.POSTGRES_PORT}/{settings.POSTGRES_DB}")
    temp_log.info(f"  GCS_BUCKET_NAME: {settings.GCS_BUCKET_NAME}")
    temp_log.info(f"  WORKER_SERVICE_URL: {settings.WORKER_SERVICE_URL}")
    temp_log.info(f"  WORKER_ALLOWED_OPTION_PREFIXES: {settings.WORKER_ALLOWED_OPTION_PREFIXES}")
    temp_log.info(f"  EMBEDDING_SERVICE_URL: {settings.EMBEDDING_SERVICE_URL}")
    temp_log.info(f"  RECONCILE_INTERVAL_SECONDS: {settings.RECONCILE_INTERVAL_SECONDS}")
    temp_log.info(f"  RECONCILE_MAX_CONCURRENCY: {settings.RECONCILE_MAX_CONCURRENCY}")
    temp_log.info("------------------------------------------")
except ValidationError as e:
    temp_log.critical(f"FATAL: Ingest Orchestrator configuration validation failed:\n{e}")
    sys.exit("FATAL: Invalid configuration. Check logs.")
