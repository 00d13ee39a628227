"""Workflow runtime: sequential node execution with retry, timeout and waits."""

from __future__ import annotations

import logging
import time
from datetime import datetime, timedelta, timezone
from typing import Any, Dict, List

import action_exec
import condition_eval
import expression_eval
from engine_errors import EngineError, Issue, issue
from workflow_plan import find_workflow, require_plan


logger = logging.getLogger("toolos.workflows")


def _now() -> str:
    return datetime.now(timezone.utc).strftime("%Y-%m-%dT%H:%M:%SZ")


def _iso(value: datetime) -> str:
    return value.astimezone(timezone.utc).isoformat().replace("+00:00", "Z")


def _parse_iso(value: Any) -> datetime | None:
    if not isinstance(value, str) or not value:
        return None
    try:
        parsed = datetime.fromisoformat(value.replace("Z", "+00:00"))
    except ValueError:
        return None
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed


def _wall_clock(deps: dict) -> datetime:
    now = deps.get("now")
    return now() if now is not None else datetime.now(timezone.utc)


def _result(
    ok: bool,
    errors: List[Issue],
    warnings: List[Issue],
    run_id: str | None,
    status: str | None,
    outputs: dict | None = None,
    waiting: dict | None = None,
) -> dict:
    return {
        "ok": ok,
        "errors": errors,
        "warnings": warnings,
        "run_id": run_id,
        "status": status,
        "outputs": outputs,
        "waiting": waiting,
    }


def backoff_delay_ms(policy: dict, attempt: int) -> int:
    """Delay before retry number attempt + 1."""
    base = int(policy.get("backoff_ms") or 0)
    if policy.get("strategy") == "fixed":
        return base
    return base * (2 ** attempt)


def _timeout_error(state: "_RunState", timeout_ms: int, node_id: str) -> EngineError:
    return EngineError(
        "WORKFLOW_TIMEOUT",
        f"Workflow exceeded timeout of {timeout_ms}ms",
        node_id,
        {"timeout_ms": timeout_ms, "elapsed_ms": state.elapsed_ms()},
    )


class _RunState:
    """Mutable view of one ExecutionRun row while its workflow advances."""

    def __init__(self, run: dict, params: dict, deps: dict) -> None:
        snapshot = run.get("state_snapshot") or {}
        self.run_id = run["id"]
        self.org_id = params.get("org_id")
        self.tool_id = params.get("tool_id")
        self.input = run.get("input") if run.get("input") is not None else {}
        self.runs = deps["runs"]
        self.outputs: Dict[str, Any] = dict(snapshot.get("outputs") or {})
        self.completed: List[str] = list(snapshot.get("completed") or [])
        self.skipped: List[str] = list(snapshot.get("skipped") or [])
        self.cursor = int(snapshot.get("cursor") or 0)
        self.waiting = snapshot.get("waiting")
        self.logs: List[dict] = list(run.get("logs") or [])
        self.retries = int(run.get("retries") or 0)
        self.current_step = run.get("current_step")
        self._elapsed_base = int(snapshot.get("elapsed_ms") or 0)
        self._clock = deps.get("clock") or time.monotonic
        self._started = self._clock()

    def elapsed_ms(self) -> int:
        return self._elapsed_base + int((self._clock() - self._started) * 1000)

    def context(self) -> dict:
        return {"input": self.input, "steps": self.outputs}

    def snapshot(self) -> dict:
        return {
            "outputs": self.outputs,
            "completed": self.completed,
            "skipped": self.skipped,
            "cursor": self.cursor,
            "elapsed_ms": self.elapsed_ms(),
            "waiting": self.waiting,
        }

    def log(self, node_id: str, status: str, **extra: Any) -> None:
        entry = {"id": f"{node_id}:{status}", "timestamp": _now(), "status": status, "node_id": node_id}
        entry.update(extra)
        self.logs.append(entry)

    def save(self, **extra: Any) -> dict | None:
        updates = {
            "current_step": self.current_step,
            "state_snapshot": self.snapshot(),
            "logs": self.logs,
            "retries": self.retries,
        }
        updates.update(extra)
        return self.runs.update_run(self.run_id, self.org_id, self.tool_id, updates)


def _edge_taken(edge: dict, plan: dict, state: _RunState) -> bool:
    source = edge["from"]
    if source not in state.completed:
        return False
    if plan["nodes"][source].get("type") != "condition":
        return True
    result = state.outputs.get(source) is True
    if edge["branch"] is None:
        return result
    return edge["branch"] == ("true" if result else "false")


def _reachable(node_id: str, plan: dict, state: _RunState) -> bool:
    incoming = plan["incoming"][node_id]
    if not incoming:
        return True
    return any(_edge_taken(edge, plan, state) for edge in incoming)


def _run_action_node(node: dict, plan: dict, state: _RunState, params: dict, deps: dict) -> Any:
    node_input = node.get("input")
    if isinstance(node_input, dict):
        payload = expression_eval.resolve_mapping(node_input, state.context())
    else:
        payload = dict(state.input) if isinstance(state.input, dict) else {}
    call = {
        "spec": params.get("spec"),
        "action_id": node["actionId"],
        "input": payload,
        "org_id": state.org_id,
        "tool_id": state.tool_id,
        "user_id": params.get("user_id"),
        "dry_run": params.get("dry_run"),
    }
    policy = plan["retry_policy"]
    timeout_ms = plan["timeout_ms"]
    sleep = deps.get("sleep") or time.sleep
    attempt = 0
    while True:
        try:
            return action_exec.invoke_action(call, deps)["output"]
        except EngineError as exc:
            if not exc.retryable or attempt >= policy["max_retries"]:
                raise
            delay_ms = backoff_delay_ms(policy, attempt)
            if timeout_ms and state.elapsed_ms() + delay_ms > timeout_ms:
                raise _timeout_error(state, timeout_ms, node["id"]) from exc
            attempt += 1
            state.retries += 1
            state.log(node["id"], "retry", attempt=attempt, delay_ms=delay_ms, code=exc.code, error=exc.message)
            state.save()
            logger.warning(
                "workflow_node_retry run_id=%s node_id=%s attempt=%s delay_ms=%s code=%s",
                state.run_id,
                node["id"],
                attempt,
                delay_ms,
                exc.code,
            )
            sleep(delay_ms / 1000.0)


def _schedule(deps: dict, run: dict | None, state: _RunState) -> None:
    scheduler = deps.get("scheduler")
    if scheduler is None or run is None:
        return
    try:
        scheduler.schedule_resume(run)
    except Exception as exc:
        # The run stays resumable through resume_workflow.
        logger.error("workflow_schedule_failed run_id=%s error=%s", state.run_id, exc)


def _walk(plan: dict, state: _RunState, params: dict, deps: dict) -> str:
    """Advance the run from its cursor; returns "completed" or "waiting"."""
    order = plan["order"]
    timeout_ms = plan["timeout_ms"]
    while state.cursor < len(order):
        node_id = order[state.cursor]
        node = plan["nodes"][node_id]
        if timeout_ms and state.elapsed_ms() > timeout_ms:
            raise _timeout_error(state, timeout_ms, node_id)

        if not _reachable(node_id, plan, state):
            state.skipped.append(node_id)
            state.cursor += 1
            state.log(node_id, "skipped")
            state.save()
            continue

        node_type = node["type"]
        state.current_step = node_id
        state.log(node_id, "start", type=node_type)
        state.save(status="running")

        if node_type == "wait" and node["waitMs"] > 0:
            resume_at = _iso(_wall_clock(deps) + timedelta(milliseconds=node["waitMs"]))
            state.outputs[node_id] = {"resume_at": resume_at}
            state.completed.append(node_id)
            state.cursor += 1
            state.waiting = {"node_id": node_id, "resume_at": resume_at}
            state.log(node_id, "waiting", resume_at=resume_at)
            run = state.save()
            logger.info("workflow_waiting run_id=%s node_id=%s resume_at=%s", state.run_id, node_id, resume_at)
            _schedule(deps, run, state)
            return "waiting"

        if node_type == "action":
            output = _run_action_node(node, plan, state, params, deps)
        elif node_type == "condition":
            output = condition_eval.eval_condition(node["condition"], state.context())
        elif node_type == "transform":
            output = expression_eval.apply_transform(node.get("transform"), state.context())
        else:
            output = None

        state.outputs[node_id] = output
        state.completed.append(node_id)
        state.cursor += 1
        state.log(node_id, "done", type=node_type)
        state.save()
    if order and timeout_ms and state.elapsed_ms() > timeout_ms:
        raise _timeout_error(state, timeout_ms, order[-1])
    return "completed"


def _advance(plan: dict, state: _RunState, params: dict, deps: dict, warnings: List[Issue]) -> dict:
    try:
        outcome = _walk(plan, state, params, deps)
    except EngineError as exc:
        failure = exc.to_issue()
    except condition_eval.ConditionError as exc:
        failure = issue(exc.code, exc.message, exc.path, {"node_id": state.current_step})
    except Exception as exc:
        logger.exception("workflow_exec_crashed run_id=%s node_id=%s", state.run_id, state.current_step)
        failure = issue("WORKFLOW_EXEC_FAILED", str(exc) or exc.__class__.__name__, state.current_step)
    else:
        if outcome == "waiting":
            return _result(True, [], warnings, state.run_id, "running", state.outputs, state.waiting)
        state.save(status="completed", last_error=None)
        logger.info(
            "workflow_completed run_id=%s nodes=%s skipped=%s retries=%s elapsed_ms=%s",
            state.run_id,
            len(state.completed),
            len(state.skipped),
            state.retries,
            state.elapsed_ms(),
        )
        return _result(True, [], warnings, state.run_id, "completed", state.outputs)

    state.log(state.current_step or "workflow", "error", code=failure["code"], error=failure["message"])
    state.save(status="failed", last_error=failure["message"])
    logger.warning("workflow_failed run_id=%s node_id=%s code=%s", state.run_id, state.current_step, failure["code"])
    return _result(False, [failure], warnings, state.run_id, "failed", state.outputs)


def _open_run(params: dict, runs: Any, trigger_id: str) -> dict | None:
    run_id = params.get("run_id")
    if run_id:
        return runs.update_run(
            run_id,
            params.get("org_id"),
            params.get("tool_id"),
            {
                "status": "pending",
                "trigger_id": trigger_id,
                "current_step": None,
                "last_error": None,
                "state_snapshot": {},
            },
        )
    return runs.create_run(
        {
            "org_id": params.get("org_id"),
            "tool_id": params.get("tool_id"),
            "workflow_id": params.get("workflow_id"),
            "trigger_id": trigger_id,
            "input": params.get("input") or {},
        }
    )


def run_workflow(params: dict, deps: dict) -> dict:
    errors: List[Issue] = []
    warnings: List[Issue] = []
    runs = deps.get("runs")
    workflow_id = params.get("workflow_id")

    if runs is None:
        errors.append(issue("WORKFLOW_DEPS_MISSING", "runs dep required", "$"))
        return _result(False, errors, warnings, None, None)
    if not isinstance(workflow_id, str) or not workflow_id:
        errors.append(issue("WORKFLOW_ID_REQUIRED", "workflow_id must be non-empty string", "workflow_id"))
        return _result(False, errors, warnings, None, None)

    try:
        plan = require_plan(find_workflow(params.get("spec"), workflow_id), params.get("spec"))
    except EngineError as exc:
        if params.get("run_id"):
            runs.update_run(params["run_id"], params.get("org_id"), params.get("tool_id"), {"status": "failed", "last_error": exc.message})
        return _result(False, [exc.to_issue()], warnings, params.get("run_id"), "failed")

    warnings.extend(plan["warnings"])

    trigger_id = params.get("trigger_id") or "manual"
    run = _open_run(params, runs, trigger_id)
    if run is None:
        errors.append(issue("RUN_NOT_FOUND", "Run not found", "run_id"))
        return _result(False, errors, warnings, params.get("run_id"), None)

    logger.info(
        "workflow_started run_id=%s workflow_id=%s trigger_id=%s nodes=%s",
        run["id"],
        workflow_id,
        trigger_id,
        len(plan["order"]),
    )
    state = _RunState(run, params, deps)
    return _advance(plan, state, params, deps, warnings)


def resume_workflow(params: dict, deps: dict) -> dict:
    """Continue a run parked on a wait node once its resume_at has passed."""
    errors: List[Issue] = []
    warnings: List[Issue] = []
    runs = deps.get("runs")
    run_id = params.get("run_id")
    if runs is None:
        errors.append(issue("WORKFLOW_DEPS_MISSING", "runs dep required", "$"))
        return _result(False, errors, warnings, run_id, None)

    run = runs.get_run(run_id, params.get("org_id"), params.get("tool_id"))
    if run is None:
        errors.append(issue("RUN_NOT_FOUND", "Run not found", "run_id"))
        return _result(False, errors, warnings, run_id, None)

    waiting = (run.get("state_snapshot") or {}).get("waiting")
    if run.get("status") != "running" or not isinstance(waiting, dict) or not run.get("workflow_id"):
        errors.append(issue("RUN_NOT_WAITING", "Run is not waiting", "run_id", {"status": run.get("status")}))
        return _result(False, errors, warnings, run_id, run.get("status"))

    resume_at = _parse_iso(waiting.get("resume_at"))
    if resume_at is not None and _wall_clock(deps) < resume_at:
        errors.append(issue("RUN_NOT_DUE", "Run is not due yet", "run_id", {"resume_at": waiting.get("resume_at")}))
        return _result(False, errors, warnings, run_id, run.get("status"), waiting=waiting)

    try:
        plan = require_plan(find_workflow(params.get("spec"), run["workflow_id"]), params.get("spec"))
    except EngineError as exc:
        runs.update_run(run_id, params.get("org_id"), params.get("tool_id"), {"status": "failed", "last_error": exc.message})
        return _result(False, [exc.to_issue()], warnings, run_id, "failed")

    warnings.extend(plan["warnings"])

    state = _RunState(run, params, deps)
    state.waiting = None
    state.log(waiting.get("node_id") or "workflow", "resumed")
    logger.info("workflow_resumed run_id=%s node_id=%s", run_id, waiting.get("node_id"))
    return _advance(plan, state, params, deps, warnings)


def retry_run(params: dict, deps: dict) -> dict:
    """Re-run a stored run's action or workflow on the same row."""
    runs = deps.get("runs")
    run_id = params.get("run_id")
    if runs is None:
        return {"ok": False, "errors": [issue("EXEC_DEPS_MISSING", "runs dep required", "$")], "warnings": [], "status": None, "run_id": run_id}

    run = runs.get_run(run_id, params.get("org_id"), params.get("tool_id"))
    if run is None:
        return {"ok": False, "errors": [issue("RUN_NOT_FOUND", "Run not found", "run_id")], "warnings": [], "status": None, "run_id": run_id}

    call = {
        "org_id": params.get("org_id"),
        "tool_id": params.get("tool_id"),
        "user_id": params.get("user_id"),
        "spec": params.get("spec"),
        "input": run.get("input") or {},
        "run_id": run_id,
        "trigger_id": f"retry:{run_id}",
    }
    if run.get("action_id"):
        outcome = action_exec.execute_action(dict(call, action_id=run["action_id"]), deps)
    elif run.get("workflow_id"):
        outcome = run_workflow(dict(call, workflow_id=run["workflow_id"]), deps)
    else:
        return {
            "ok": False,
            "errors": [issue("RUN_NOT_RETRYABLE", "No action or workflow to retry", "run_id")],
            "warnings": [],
            "status": None,
            "run_id": run_id,
        }

    logger.info("run_retry_started run_id=%s run_status=%s", run_id, outcome.get("status"))
    return {
        "ok": True,
        "errors": [],
        "warnings": outcome.get("warnings", []) + outcome.get("errors", []),
        "status": "retry_started",
        "run_id": run_id,
        "run_status": outcome.get("status"),
    }
