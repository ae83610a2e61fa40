from __future__ import annotations

from contextvars import ContextVar, Token
from datetime import datetime, timezone
import json
import logging
import uuid

MAX_TRACE_ID_LENGTH = 128

_TRACE_ID_CONTEXT: ContextVar[str | None] = ContextVar("trace_id", default=None)
_DEPLOYMENT_ID_CONTEXT: ContextVar[str | None] = ContextVar("deployment_id", default=None)


def normalize_trace_id(value: str | None) -> str | None:
    normalized = (value or "").strip()
    return normalized[:MAX_TRACE_ID_LENGTH] or None


def ensure_trace_id(value: str | None) -> str:
    return normalize_trace_id(value) or uuid.uuid4().hex


def current_trace_id() -> str | None:
    return _TRACE_ID_CONTEXT.get()


def set_current_trace_id(trace_id: str | None) -> Token[str | None]:
    return _TRACE_ID_CONTEXT.set(normalize_trace_id(trace_id))


def reset_current_trace_id(token: Token[str | None]) -> None:
    _TRACE_ID_CONTEXT.reset(token)


def bind_deployment(deployment_id: str) -> Token[str | None]:
    """Tag every structured log line emitted in this context with ``deployment_id``."""
    return _DEPLOYMENT_ID_CONTEXT.set(deployment_id)


def unbind_deployment(token: Token[str | None]) -> None:
    _DEPLOYMENT_ID_CONTEXT.reset(token)


def configure_logging(level: int = logging.INFO) -> None:
    # One JSON object per line; the payload carries its own timestamp.
    logging.basicConfig(level=level, format="%(message)s")


def emit_structured_log(
    *,
    component: str,
    event: str,
    level: int = logging.INFO,
    trace_id: str | None = None,
    deployment_id: str | None = None,
    release_id: str | None = None,
    commit_sha: str | None = None,
    **fields,
) -> None:
    payload: dict[str, object | None] = {
        "timestamp_utc": datetime.now(timezone.utc).isoformat(),
        "component": component,
        "event": event,
        "trace_id": normalize_trace_id(trace_id) or current_trace_id(),
        "deployment_id": deployment_id or _DEPLOYMENT_ID_CONTEXT.get(),
        "release_id": release_id,
        "commit_sha": commit_sha,
    }
    payload.update(fields)
    logging.getLogger(f"shipyard.{component}").log(level, json.dumps(payload, sort_keys=True, default=str))
