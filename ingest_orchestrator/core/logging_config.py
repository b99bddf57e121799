import logging
import sys
from typing import Optional

import structlog
from structlog.types import EventDict, WrappedLogger

from ingest_orchestrator.core.config import settings

SERVICE_NAME = "ingest-orchestrator"

# Third-party loggers that are too chatty at INFO.
QUIET_LOGGERS = {
    "uvicorn": logging.WARNING,
    "uvicorn.access": logging.WARNING,
    "httpx": logging.WARNING,
    "httpcore": logging.WARNING,
    "google.cloud": logging.WARNING,
    "google.auth": logging.WARNING,
    "sqlalchemy.engine": logging.WARNING,
    "asyncio": logging.WARNING,
}


def _add_service(logger: WrappedLogger, method_name: str, event_dict: EventDict) -> EventDict:
    event_dict.setdefault("service", SERVICE_NAME)
    return event_dict


def setup_logging(json_logs: Optional[bool] = None, log_level: Optional[str] = None):
    """
    Routes structlog and stdlib logging through one stdout handler.

    JSON lines by default; `LOG_JSON=false` switches to the console renderer
    for local runs. Safe to call more than once.
    """
    json_logs = settings.LOG_JSON if json_logs is None else json_logs
    log_level = (log_level or settings.LOG_LEVEL).upper()

    shared_processors = [
        structlog.contextvars.merge_contextvars,
        structlog.stdlib.add_logger_name,
        structlog.stdlib.add_log_level,
        structlog.stdlib.PositionalArgumentsFormatter(),
        structlog.processors.TimeStamper(fmt="iso", utc=True),
        _add_service,
        structlog.processors.StackInfoRenderer(),
    ]
    if log_level == "DEBUG":
        shared_processors.append(structlog.processors.CallsiteParameterAdder(
            {
                structlog.processors.CallsiteParameter.MODULE,
                structlog.processors.CallsiteParameter.FUNC_NAME,
                structlog.processors.CallsiteParameter.LINENO,
            }
        ))

    structlog.configure(
        processors=shared_processors + [structlog.stdlib.ProcessorFormatter.wrap_for_formatter],
        logger_factory=structlog.stdlib.LoggerFactory(),
        wrapper_class=structlog.stdlib.BoundLogger,
        cache_logger_on_first_use=True,
    )

    if json_logs:
        renderers = [structlog.processors.format_exc_info, structlog.processors.JSONRenderer()]
    else:
        renderers = [structlog.dev.ConsoleRenderer(colors=sys.stdout.isatty())]

    formatter = structlog.stdlib.ProcessorFormatter(
        foreign_pre_chain=shared_processors,
        processors=[structlog.stdlib.ProcessorFormatter.remove_processors_meta, *renderers],
    )

    root_logger = logging.getLogger()
    # only our own handler is replaced; handlers added by uvicorn stay
    for handler in list(root_logger.handlers):
        if getattr(handler, "_ingest_orchestrator", False):
            root_logger.removeHandler(handler)
    handler = logging.StreamHandler(sys.stdout)
    handler.setFormatter(formatter)
    handler._ingest_orchestrator = True
    root_logger.addHandler(handler)
    root_logger.setLevel(log_level)

    for name, level in QUIET_LOGGERS.items():
        logging.getLogger(name).setLevel(level)

    structlog.get_logger(__name__).info(
        "Logging configured", log_level=log_level, renderer="json" if json_logs else "console"
    )
