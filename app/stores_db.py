"""Postgres-backed stores. Every query is scoped by org (and tool where relevant)."""

from __future__ import annotations

import json
import logging
from datetime import datetime, timezone

from app.db import execute, fetch_all, fetch_one, get_conn

logger = logging.getLogger("toolos.db")

_RUN_JSON_FIELDS = ("input", "state_snapshot", "logs")
_RUN_UPDATABLE = (
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


def _json_dumps(value: object) -> str:
    return json.dumps(value, default=str)


def _now() -> str:
    return datetime.now(timezone.utc).strftime("%Y-%m-%dT%H:%M:%SZ")


def _row(row: dict | None) -> dict | None:
    if row is None:
        return None
    out = dict(row)
    for key, value in out.items():
        if isinstance(value, datetime):
            stamp = value if value.tzinfo else value.replace(tzinfo=timezone.utc)
            out[key] = stamp.astimezone(timezone.utc).strftime("%Y-%m-%dT%H:%M:%SZ")
    return out


class DbExecutionRunStore:
    def create_run(self, record: dict) -> dict:
        with get_conn() as conn:
            row = fetch_one(
                conn,
                """
                insert into execution_runs
                  (org_id, tool_id, action_id, workflow_id, trigger_id, status, current_step, retries,
                   input, state_snapshot, logs, last_error, created_at, updated_at)
                values (%s,%s,%s,%s,%s,%s,null,0,%s,'{}'::jsonb,'[]'::jsonb,null,now(),now())
                returning *
                """,
                [
                    record.get("org_id"),
                    record.get("tool_id"),
                    record.get("action_id"),
                    record.get("workflow_id"),
                    record.get("trigger_id"),
                    record.get("status") or "pending",
                    _json_dumps(record.get("input") or {}),
                ],
                query_name="execution_runs.insert",
            )
        return _row(row)

    def update_run(self, run_id: str, org_id: str, tool_id: str, updates: dict) -> dict | None:
        fields = []
        params = []
        for key in _RUN_UPDATABLE:
            if key not in updates:
                continue
            value = updates[key]
            if key in _RUN_JSON_FIELDS:
                fields.append(f"{key}=%s::jsonb")
                value = _json_dumps(value)
            else:
                fields.append(f"{key}=%s")
            params.append(value)
        if not fields:
            return self.get_run(run_id, org_id, tool_id)
        params.extend([run_id, org_id, tool_id])
        with get_conn() as conn:
            row = fetch_one(
                conn,
                f"""
                update execution_runs set {', '.join(fields)}, updated_at=now()
                where id=%s and org_id=%s and tool_id=%s
                returning *
                """,
                params,
                query_name="execution_runs.update",
            )
        if row is None:
            logger.info("execution_run_update_missing run_id=%s", run_id)
        return _row(row)

    def get_run(self, run_id: str, org_id: str, tool_id: str) -> dict | None:
        with get_conn() as conn:
            row = fetch_one(
                conn,
                """
                select * from execution_runs where id=%s and org_id=%s and tool_id=%s
                """,
                [run_id, org_id, tool_id],
                query_name="execution_runs.get",
            )
        return _row(row)

    def list_runs(self, org_id: str, tool_id: str, limit: int = 20) -> list[dict]:
        with get_conn() as conn:
            rows = fetch_all(
                conn,
                """
                select * from execution_runs
                where org_id=%s and tool_id=%s
                order by created_at desc
                limit %s
                """,
                [org_id, tool_id, limit],
                query_name="execution_runs.list",
            )
        return [_row(r) for r in rows]


class DbAuditLogStore:
    def insert(self, row: dict) -> dict:
        with get_conn() as conn:
            saved = fetch_one(
                conn,
                """
                insert into broker_action_logs
                  (org_id, user_id, tool_id, connection_id, action_id, action_type, integration_id,
                   input_params, output_summary, status, duration_ms, error, created_at)
                values (%s,%s,%s,%s,%s,%s,%s,%s::jsonb,%s::jsonb,%s,%s,%s,%s)
                returning id
                """,
                [
                    row.get("org_id"),
                    row.get("user_id"),
                    row.get("tool_id"),
                    row.get("connection_id"),
                    row.get("action_id"),
                    row.get("action_type"),
                    row.get("integration_id"),
                    _json_dumps(row.get("input_params")),
                    _json_dumps(row.get("output_summary")),
                    row.get("status"),
                    row.get("duration_ms"),
                    row.get("error"),
                    row.get("created_at") or _now(),
                ],
                query_name="broker_action_logs.insert",
            )
        return dict(row, id=saved["id"] if saved else None)


class DbConnectionStore:
    def get_connection_id(self, org_id: str, integration_id: str) -> str | None:
        with get_conn() as conn:
            row = fetch_one(
                conn,
                """
                select id from broker_connections
                where org_id=%s and integration_id=%s
                limit 1
                """,
                [org_id, integration_id],
                query_name="broker_connections.lookup",
            )
        return str(row["id"]) if row else None


class DbToolStateStore:
    def load_state(self, org_id: str, tool_id: str) -> dict:
        with get_conn() as conn:
            row = fetch_one(
                conn,
                """
                select state from tool_states where org_id=%s and tool_id=%s
                """,
                [org_id, tool_id],
                query_name="tool_states.get",
            )
        state = row.get("state") if row else None
        return state if isinstance(state, dict) else {}

    def save_state(self, org_id: str, tool_id: str, state: dict) -> dict:
        with get_conn() as conn:
            execute(
                conn,
                """
                insert into tool_states (org_id, tool_id, state, updated_at)
                values (%s,%s,%s::jsonb,now())
                on conflict (org_id, tool_id) do update set state=excluded.state, updated_at=excluded.updated_at
                """,
                [org_id, tool_id, _json_dumps(state)],
                query_name="tool_states.upsert",
            )
        return state


class DbToolSpecStore:
    def get_spec(self, org_id: str, tool_id: str) -> dict | None:
        """Active version's spec when one is set, else the project's own spec."""
        with get_conn() as conn:
            project = fetch_one(
                conn,
                """
                select spec, active_version_id from projects where id=%s and org_id=%s
                """,
                [tool_id, org_id],
                query_name="projects.get_spec",
            )
            if not project or not project.get("spec"):
                return None
            spec = project["spec"]
            if project.get("active_version_id"):
                version = fetch_one(
                    conn,
                    """
                    select tool_spec from tool_versions where id=%s
                    """,
                    [project["active_version_id"]],
                    query_name="tool_versions.get_spec",
                )
                if version and version.get("tool_spec"):
                    spec = version["tool_spec"]
        return spec if isinstance(spec, dict) else None
