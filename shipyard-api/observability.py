import contextvars
import logging
import os
from typing import Any, Optional

from redaction import redact_text


request_id_ctx = contextvars.ContextVar("request_id", default="")
_logger = logging.getLogger("shipyard.obs")


def configure_logging() -> None:
    level_name = os.getenv("SHIPYARD_LOG_LEVEL", "INFO").upper()
    level = getattr(logging, level_name, logging.INFO)
    logging.getLogger("shipyard").setLevel(level)


def get_request_id() -> str:
    return request_id_ctx.get() or ""


def resource_ref(kind: str, namespace: Optional[str], name: str) -> str:
    if namespace:
        return f"{kind}/{namespace}/{name}"
    return f"{kind}/{name}"


def log_event(event: str, **fields: Any) -> None:
    payload = {"event": event, "request_id": get_request_id()}
    for key, value in fields.items():
        if value is None:
            continue
        if isinstance(value, str):
            payload[key] = redact_text(value)
        elif isinstance(value, bool):
            payload[key] = "true" if value else "false"
        else:
            payload[key] = value
    parts = [f"{key}={payload[key]}" for key in sorted(payload.keys())]
    _logger.info(" ".join(parts))
