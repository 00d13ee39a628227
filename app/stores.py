"""In-memory stores for dev and tests."""

from __future__ import annotations

import copy
import itertools
import threading
import uuid
from typing import Dict, List, Tuple
from datetime import datetime, timezone


def _now() -> str:
    return datetime.now(timezone.utc).strftime("%Y-%m-%dT%H:%M:%SZ")


RUN_FIELDS = (
    "action_id",
    "workflow_id",
    "trigger_id",
    "status",
    "current_step",
    "retries",
    "input",
    "state_snapshot",
    "logs",
    "last_error",
)


class MemoryExecutionRunStore:
    def __init__(self) -> None:
        self._runs: Dict[str, dict] = {}
        self._seq = itertools.count()
        self._lock = threading.Lock()

    def create_run(self, record: dict) -> dict:
        now = _now()
        run = {
            "id": str(uuid.uuid4()),
            "org_id": record.get("org_id"),
            "tool_id": record.get("tool_id"),
            "action_id": record.get("action_id"),
            "workflow_id": record.get("workflow_id"),
            "trigger_id": record.get("trigger_id"),
            "status": record.get("status") or "pending",
            "current_step": None,
            "retries": 0,
            "input": copy.deepcopy(record.get("input") or {}),
            "state_snapshot": {},
            "logs": [],
            "last_error": None,
            "created_at": now,
            "updated_at": now,
            "_seq": next(self._seq),
        }
        with self._lock:
            self._runs[run["id"]] = run
        return self._public(run)

    def _scoped(self, run_id: str, org_id: str, tool_id: str) -> dict | None:
        run = self._runs.get(run_id)
        if run is None or run.get("org_id") != org_id or run.get("tool_id") != tool_id:
            return None
        return run

    def update_run(self, run_id: str, org_id: str, tool_id: str, updates: dict) -> dict | None:
        with self._lock:
            run = self._scoped(run_id, org_id, tool_id)
            if run is None:
                return None
            for key, value in updates.items():
                if key in RUN_FIELDS:
                    run[key] = copy.deepcopy(value)
            run["updated_at"] = _now()
            return self._public(run)

    def get_run(self, run_id: str, org_id: str, tool_id: str) -> dict | None:
        with self._lock:
            run = self._scoped(run_id, org_id, tool_id)
            return self._public(run) if run else None

    def list_runs(self, org_id: str, tool_id: str, limit: int = 20) -> list[dict]:
        with self._lock:
            items = [r for r in self._runs.values() if r.get("org_id") == org_id and r.get("tool_id") == tool_id]
            items.sort(key=lambda r: (r["created_at"], r["_seq"]), reverse=True)
            return [self._public(r) for r in items[:limit]]

    @staticmethod
    def _public(run: dict) -> dict:
        out = copy.deepcopy(run)
        out.pop("_seq", None)
        return out


class MemoryAuditLogStore:
    def __init__(self) -> None:
        self._rows: List[dict] = []
        self._lock = threading.Lock()

    def insert(self, row: dict) -> dict:
        record = copy.deepcopy(row)
        record["id"] = str(uuid.uuid4())
        with self._lock:
            self._rows.append(record)
        return copy.deepcopy(record)

    def list_rows(self, org_id: str | None = None) -> list[dict]:
        with self._lock:
            return [copy.deepcopy(r) for r in self._rows if org_id is None or r.get("org_id") == org_id]


class MemoryConnectionStore:
    def __init__(self) -> None:
        self._connections: Dict[Tuple[str, str], str] = {}

    def create_connection(self, org_id: str, integration_id: str) -> str:
        connection_id = str(uuid.uuid4())
        self._connections[(org_id, integration_id)] = connection_id
        return connection_id

    def get_connection_id(self, org_id: str, integration_id: str) -> str | None:
        return self._connections.get((org_id, integration_id))


class MemoryToolStateStore:
    def __init__(self) -> None:
        self._states: Dict[Tuple[str, str], dict] = {}

    def load_state(self, org_id: str, tool_id: str) -> dict:
        return copy.deepcopy(self._states.get((org_id, tool_id)) or {})

    def save_state(self, org_id: str, tool_id: str, state: dict) -> dict:
        self._states[(org_id, tool_id)] = copy.deepcopy(state)
        return copy.deepcopy(state)


class MemoryToolSpecStore:
    def __init__(self) -> None:
        self._specs: Dict[Tuple[str, str], dict] = {}

    def get_spec(self, org_id: str, tool_id: str) -> dict | None:
        spec = self._specs.get((org_id, tool_id))
        return copy.deepcopy(spec) if spec else None

    def put_spec(self, org_id: str, tool_id: str, spec: dict) -> dict:
        self._specs[(org_id, tool_id)] = copy.deepcopy(spec)
        return copy.deepcopy(spec)
