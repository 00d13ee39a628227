"""Best-effort audit trail for write/mutate/notify integration calls."""

from __future__ import annotations

import logging
from concurrent.futures import Executor, Future, ThreadPoolExecutor
from datetime import datetime, timezone
from typing import Any, Dict

from engine_errors import AuditPersistenceError


logger = logging.getLogger("toolos.audit")

REDACTED = "[redacted]"
TRUNCATED_SUFFIX = "...[truncated]"
INPUT_MAX_CHARS = 1000
OUTPUT_MAX_CHARS = 500
OUTPUT_MAX_KEYS = 20
SENSITIVE_MARKERS = ("token", "secret", "password", "api_key")
AUDITED_ACTION_TYPES = ("WRITE", "MUTATE", "NOTIFY")
AUDIT_STATUSES = ("success", "failed", "dry_run", "pending_approval")

WriteAuditEntry = Dict[str, Any]


def _now() -> str:
    return datetime.now(timezone.utc).strftime("%Y-%m-%dT%H:%M:%SZ")


def sanitize_audit_input(payload: dict | None) -> dict:
    out: dict = {}
    for key, value in (payload or {}).items():
        lower = str(key).lower()
        if any(marker in lower for marker in SENSITIVE_MARKERS):
            out[key] = REDACTED
        elif isinstance(value, str) and len(value) > INPUT_MAX_CHARS:
            out[key] = value[:INPUT_MAX_CHARS] + TRUNCATED_SUFFIX
        else:
            out[key] = value
    return out


def summarize_audit_output(output: Any) -> Any:
    if output is None:
        return None
    if isinstance(output, str):
        return output[:OUTPUT_MAX_CHARS] if len(output) > OUTPUT_MAX_CHARS else output
    if isinstance(output, (list, tuple)):
        return {"type": "array", "count": len(output)}
    if isinstance(output, dict):
        return {"type": "object", "keys": list(output.keys())[:OUTPUT_MAX_KEYS]}
    return output


def build_audit_row(entry: WriteAuditEntry, connection_id: str) -> dict:
    return {
        "org_id": entry.get("org_id"),
        "user_id": entry.get("user_id"),
        "tool_id": entry.get("tool_id"),
        "connection_id": connection_id,
        "action_id": entry.get("action_id"),
        "action_type": entry.get("action_type"),
        "integration_id": entry.get("integration_id"),
        "input_params": sanitize_audit_input(entry.get("input")),
        "output_summary": summarize_audit_output(entry.get("output")),
        "status": entry.get("status"),
        "duration_ms": entry.get("duration_ms"),
        "error": entry.get("error"),
        "created_at": _now(),
    }


def _persist(entry: WriteAuditEntry, connections: Any, sink: Any) -> dict | None:
    org_id = entry.get("org_id")
    integration_id = entry.get("integration_id")
    connection_id = connections.get_connection_id(org_id, integration_id)
    if not connection_id:
        logger.warning("write_audit_no_connection org_id=%s integration_id=%s", org_id, integration_id)
        return None
    row = build_audit_row(entry, connection_id)
    try:
        sink.insert(row)
    except Exception as exc:
        raise AuditPersistenceError(str(exc), {"action_id": entry.get("action_id")}) from exc
    return row


def log_write_action(entry: WriteAuditEntry, connections: Any, sink: Any) -> dict | None:
    """Persist one audit row. Never raises."""
    try:
        row = _persist(entry, connections, sink)
    except AuditPersistenceError as exc:
        logger.error("write_audit_failed action_id=%s error=%s", entry.get("action_id"), exc.message)
        return None
    except Exception as exc:
        logger.error("write_audit_failed action_id=%s error=%s", entry.get("action_id"), exc)
        return None
    if row is not None:
        logger.info(
            "write_audit_logged action_id=%s status=%s duration_ms=%s",
            row.get("action_id"),
            row.get("status"),
            row.get("duration_ms"),
        )
    return row


class WriteAuditLogger:
    """Fire-and-forget front for log_write_action.

    Entries are persisted on a background executor; callers never wait on the
    returned future for their own success path.
    """

    def __init__(self, connections: Any, sink: Any, executor: Executor | None = None, max_workers: int = 2) -> None:
        self._connections = connections
        self._sink = sink
        self._owns_executor = executor is None
        self._executor = executor or ThreadPoolExecutor(max_workers=max_workers, thread_name_prefix="toolos-audit")

    def submit(self, entry: WriteAuditEntry) -> Future | None:
        try:
            future = self._executor.submit(log_write_action, dict(entry), self._connections, self._sink)
        except RuntimeError as exc:
            # executor already shut down
            logger.error("write_audit_dropped action_id=%s error=%s", entry.get("action_id"), exc)
            return None
        future.add_done_callback(_report_unexpected)
        return future

    def close(self, wait: bool = True) -> None:
        if self._owns_executor:
            self._executor.shutdown(wait=wait)


def _report_unexpected(future: Future) -> None:
    if future.cancelled():
        return
    exc = future.exception()
    if exc is not None:
        logger.error("write_audit_task_crashed error=%s", exc)
