from __future__ import annotations

import json
import logging
import re
from collections.abc import Iterator
from contextlib import contextmanager
from contextvars import ContextVar
from datetime import datetime, timezone
from typing import Any

job_id_ctx_var: ContextVar[str | None] = ContextVar("job_id", default=None)
queue_ctx_var: ContextVar[str | None] = ContextVar("queue", default=None)
attempt_ctx_var: ContextVar[int | None] = ContextVar("attempt", default=None)

_STANDARD_ATTRS = frozenset(logging.LogRecord("", 0, "", 0, "", (), None).__dict__) | {"message", "asctime"}
_CONTEXT_FIELDS = ("job_id", "queue", "attempt")

MAX_TEXT = 4000
MAX_ITEMS = 100

_SIGNED_QUERY_RE = re.compile(r"(https?://[^\s?\"']+)\?[^\s\"']*")

PLAIN_FORMAT = "%(asctime)s %(levelname)s %(name)s [%(queue)s %(job_id)s #%(attempt)s] %(message)s"


def scrub_presigned_urls(text: str) -> str:
    """Drop query strings from URLs so presign signatures never reach logs or Sentry."""
    return _SIGNED_QUERY_RE.sub(r"\1?<redacted>", text)


@contextmanager
def job_log_context(job_id: str, queue: str, attempt: int) -> Iterator[None]:
    """Bind a job's identity to every record logged inside the block."""
    tokens = (job_id_ctx_var.set(job_id), queue_ctx_var.set(queue), attempt_ctx_var.set(attempt))
    try:
        yield
    finally:
        for var, token in zip((job_id_ctx_var, queue_ctx_var, attempt_ctx_var), tokens):
            var.reset(token)


class JobContextFilter(logging.Filter):
    def filter(self, record: logging.LogRecord) -> bool:
        for field, var in zip(_CONTEXT_FIELDS, (job_id_ctx_var, queue_ctx_var, attempt_ctx_var)):
            if getattr(record, field, None) is None:
                value = var.get()
                setattr(record, field, "-" if value is None else value)
        return True


def to_json_safe(value: Any) -> Any:
    if value is None or isinstance(value, (bool, int, float)):
        return value
    if isinstance(value, str):
        return scrub_presigned_urls(value[:MAX_TEXT])
    if isinstance(value, dict):
        out = {str(k): to_json_safe(v) for k, v in list(value.items())[:MAX_ITEMS]}
        if len(value) > MAX_ITEMS:
            out["..."] = f"{len(value) - MAX_ITEMS} more"
        return out
    if isinstance(value, (list, tuple, set, frozenset)):
        items = list(value)
        out_items = [to_json_safe(v) for v in items[:MAX_ITEMS]]
        if len(items) > MAX_ITEMS:
            out_items.append(f"... {len(items) - MAX_ITEMS} more")
        return out_items
    return to_json_safe(str(value))


class JsonFormatter(logging.Formatter):
    """One JSON object per line: event name, job context, then any ``extra`` fields."""

    def format(self, record: logging.LogRecord) -> str:
        payload: dict[str, Any] = {
            "ts": datetime.fromtimestamp(record.created, tz=timezone.utc).isoformat(),
            "level": record.levelname,
            "logger": record.name,
            "event": scrub_presigned_urls(record.getMessage()),
        }
        for field in _CONTEXT_FIELDS:
            payload[field] = getattr(record, field, "-")
        for key, value in record.__dict__.items():
            if key in _STANDARD_ATTRS or key in payload or key.startswith("_"):
                continue
            payload[key] = to_json_safe(value)
        if record.exc_info:
            payload["exception"] = scrub_presigned_urls(self.formatException(record.exc_info))
        return json.dumps(payload, ensure_ascii=False, default=str)


def configure_logging(json_logs: bool = False, level: int = logging.INFO) -> None:
    handler = logging.StreamHandler()
    handler.addFilter(JobContextFilter())
    handler.setFormatter(JsonFormatter() if json_logs else logging.Formatter(PLAIN_FORMAT))
    logging.basicConfig(level=level, handlers=[handler], force=True)
    # botocore logs request signing details at DEBUG.
    logging.getLogger("botocore").setLevel(max(level, logging.WARNING))
