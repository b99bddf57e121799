# File: ingest_orchestrator/core/metrics.py
from prometheus_client import Counter, Gauge, Histogram

# Submission
TASKS_SUBMITTED_TOTAL = Counter(
    "orchestrator_tasks_submitted_total",
    "Total number of ingestion task submissions.",
    ["status"]
)

WORKER_OPTIONS_STRIPPED_TOTAL = Counter(
    "orchestrator_worker_options_stripped_total",
    "Conversion option keys removed because they are outside the allowed prefixes."
)

# Worker service
WORKER_CALL_FAILURES_TOTAL = Counter(
    "orchestrator_worker_call_failures_total",
    "Failed calls to the conversion worker service.",
    ["operation", "kind"]
)

# Reconciliation
RECONCILE_PASS_DURATION_SECONDS = Histogram(
    "orchestrator_reconcile_pass_duration_seconds",
    "Time taken by one reconciliation pass over all non-terminal tasks.",
    buckets=[0.05, 0.1, 0.5, 1, 2, 5, 10, 30, 60]
)

RECONCILE_OUTCOMES_TOTAL = Counter(
    "orchestrator_reconcile_outcomes_total",
    "Outcomes of per-task reconciliation.",
    ["outcome"]
)

TASK_TRANSITIONS_TOTAL = Counter(
    "orchestrator_task_transitions_total",
    "Task status transitions persisted by reconciliation.",
    ["from_status", "to_status"]
)

NON_TERMINAL_TASKS = Gauge(
    "orchestrator_non_terminal_tasks",
    "Number of non-terminal tasks seen by the last reconciliation pass."
)

STALLED_TASKS_TOTAL = Counter(
    "orchestrator_stalled_tasks_total",
    "Tasks observed in a non-terminal state beyond the stall thresholds.",
    ["action"]
)

# Ingestion
INGESTED_DOCUMENTS_TOTAL = Counter(
    "orchestrator_ingested_documents_total",
    "Document records created by ingestion.",
    ["kind"]
)

INGESTED_CHUNKS_TOTAL = Counter(
    "orchestrator_ingested_chunks_total",
    "Chunk records created by ingestion."
)

INGESTION_ITEM_FAILURES_TOTAL = Counter(
    "orchestrator_ingestion_item_failures_total",
    "Documents or chunks that could not be written during ingestion.",
    ["stage"]
)

PARTIAL_INGESTIONS_TOTAL = Counter(
    "orchestrator_partial_ingestions_total",
    "Tasks completed with some documents or chunks missing."
)

EMBEDDING_TRIGGERS_TOTAL = Counter(
    "orchestrator_embedding_triggers_total",
    "Embedding trigger calls per document.",
    ["status"]
)

# HTTP
REQUEST_PROCESSING_DURATION_SECONDS = Histogram(
    "orchestrator_request_processing_duration_seconds",
    "Time taken to process an HTTP request.",
    ["method", "path"]
)
