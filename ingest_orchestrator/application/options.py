from typing import Any, Dict, Iterable, Mapping, Optional

import structlog

from ingest_orchestrator.core.metrics import WORKER_OPTIONS_STRIPPED_TOTAL

log = structlog.get_logger(__name__)


def merge_conversion_options(
    defaults: Optional[Mapping[str, Any]],
    overrides: Optional[Mapping[str, Any]],
) -> Dict[str, Any]:
    """Request options win over the owner's persisted defaults."""
    merged: Dict[str, Any] = dict(defaults or {})
    merged.update(overrides or {})
    return merged


def filter_worker_options(
    options: Optional[Mapping[str, Any]],
    allowed_prefixes: Iterable[str],
) -> Dict[str, Any]:
    """
    Keeps only option keys that start with one of `allowed_prefixes`.

    Stripped keys are logged and counted, never forwarded. Keys whose value
    is None are dropped silently since they carry no option.
    """
    prefixes = tuple(allowed_prefixes)
    allowed: Dict[str, Any] = {}
    stripped = []
    for key, value in (options or {}).items():
        if not isinstance(key, str) or not key.startswith(prefixes):
            stripped.append(str(key))
            continue
        if value is None:
            continue
        allowed[key] = value

    if stripped:
        log.warning(
            "Stripped conversion options outside the allowed prefixes",
            stripped_keys=sorted(stripped),
            allowed_prefixes=list(prefixes),
        )
        WORKER_OPTIONS_STRIPPED_TOTAL.inc(len(stripped))
    return allowed


def encode_form_options(options: Mapping[str, Any]) -> Dict[str, Any]:
    """
    Encodes options as multipart form fields: booleans as 'true'/'false',
    lists as repeated fields, everything else as strings.
    """
    form: Dict[str, Any] = {}
    for key, value in options.items():
        if isinstance(value, bool):
            form[key] = "true" if value else "false"
        elif isinstance(value, (list, tuple)):
            form[key] = [str(v).lower() if isinstance(v, bool) else str(v) for v in value]
        else:
            form[key] = str(value)
    return form
