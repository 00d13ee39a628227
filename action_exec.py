"""Action execution: capability checks, integration call, audit, run record."""

from __future__ import annotations

import logging
import time
from datetime import datetime, timezone
from typing import Any, Dict, List

from capability_registry import ACTION_TYPES, Capability, default_registry, validate_input
from engine_errors import (
    EngineError,
    Issue,
    SpecificationError,
    ValidationError,
    issue,
)
from integration_runtime import classify_error, unwrap_result
from write_audit import AUDITED_ACTION_TYPES, sanitize_audit_input


logger = logging.getLogger("toolos.actions")

DEFAULT_ACTION_TIMEOUT_S = 30.0
CONTROL_KEYS = ("approved",)


def _now() -> str:
    return datetime.now(timezone.utc).strftime("%Y-%m-%dT%H:%M:%SZ")


def _result(ok: bool, errors: List[Issue], warnings: List[Issue], run_id: str | None, status: str | None, output: Any = None) -> dict:
    return {"ok": ok, "errors": errors, "warnings": warnings, "run_id": run_id, "status": status, "output": output}


def find_action(spec: dict, action_id: str) -> dict:
    actions = spec.get("actions") if isinstance(spec, dict) else None
    if not isinstance(actions, list):
        raise SpecificationError("spec.actions must be list", "$.actions")
    for action in actions:
        if isinstance(action, dict) and action.get("id") == action_id:
            return action
    raise SpecificationError(f"Action {action_id} not found", "$.actions", {"action_id": action_id}, code="ACTION_NOT_FOUND")


def _declared_capabilities(spec: dict, integration_id: str) -> list[str] | None:
    for entry in spec.get("integrations") or []:
        if isinstance(entry, dict) and entry.get("id") == integration_id:
            caps = entry.get("capabilities")
            return caps if isinstance(caps, list) else None
    return None


def resolve_capability(spec: dict, action: dict, registry: Any) -> Capability:
    action_id = action.get("id")
    capability_id = action.get("capabilityId")
    integration_id = action.get("integrationId")
    if not isinstance(capability_id, str) or not capability_id:
        raise SpecificationError("action.capabilityId required", f"$.actions[{action_id}].capabilityId")
    capability = registry.get(capability_id)
    if capability is None:
        raise SpecificationError(
            f"Capability {capability_id} not found",
            f"$.actions[{action_id}].capabilityId",
            {"capability_id": capability_id},
            code="CAPABILITY_NOT_FOUND",
        )
    if integration_id and integration_id != capability.integration_id:
        raise SpecificationError(
            f"Capability {capability_id} belongs to {capability.integration_id}, not {integration_id}",
            f"$.actions[{action_id}].integrationId",
            code="CAPABILITY_INTEGRATION_MISMATCH",
        )
    declared = _declared_capabilities(spec, capability.integration_id)
    if declared and capability_id not in declared:
        raise SpecificationError(
            f"Capability {capability_id} not declared by integration {capability.integration_id}",
            "$.integrations",
            code="CAPABILITY_NOT_DECLARED",
        )
    return capability


def action_type_for(action: dict, capability: Capability) -> str:
    declared = action.get("type")
    if declared is None:
        return capability.action_type()
    if declared not in ACTION_TYPES:
        raise SpecificationError(f"Unknown action type: {declared}", f"$.actions[{action.get('id')}].type")
    return declared


def prepare_action(spec: dict, action_id: str, payload: dict | None, registry: Any) -> dict:
    """Resolve and validate an action call without side effects."""
    action = find_action(spec, action_id)
    capability = resolve_capability(spec, action, registry)
    action_type = action_type_for(action, capability)
    raw = dict(payload or {})
    approved = raw.get("approved") is True
    clean = {key: value for key, value in raw.items() if key not in CONTROL_KEYS}
    errors = validate_input(capability, clean)
    if errors:
        first = errors[0]
        raise ValidationError(first["message"], first["path"], {"issues": errors}, code=first["code"])
    return {
        "action": action,
        "capability": capability,
        "action_type": action_type,
        "input": clean,
        "approved": approved,
    }


def _audit(deps: dict, params: dict, prepared: dict, status: str, output: Any, duration_ms: int, error: str | None) -> None:
    if prepared["action_type"] not in AUDITED_ACTION_TYPES:
        return
    audit = deps.get("audit")
    if audit is None:
        return
    entry = {
        "org_id": params.get("org_id"),
        "user_id": params.get("user_id"),
        "tool_id": params.get("tool_id"),
        "action_id": prepared["action"].get("id"),
        "action_type": prepared["action_type"],
        "integration_id": prepared["capability"].integration_id,
        "input": prepared["input"],
        "output": output,
        "status": status,
        "duration_ms": duration_ms,
        "error": error,
    }
    try:
        audit.submit(entry)
    except Exception as exc:
        logger.error("action_audit_submit_failed action_id=%s error=%s", entry["action_id"], exc)


def invoke_action(params: dict, deps: dict) -> dict:
    """Run one action call and return its outcome; raises EngineError.

    Does not touch ExecutionRun rows; callers own the run record.
    """
    registry = deps.get("registry") or default_registry()
    prepared = params.get("prepared") or prepare_action(params.get("spec"), params.get("action_id"), params.get("input"), registry)
    action = prepared["action"]
    capability = prepared["capability"]
    action_type = prepared["action_type"]
    action_id = action.get("id")

    if action.get("requiresApproval") and not prepared["approved"] and not params.get("dry_run"):
        _audit(deps, params, prepared, "pending_approval", None, 0, None)
        raise ValidationError(
            f"Action {action_id} requires approval",
            "input.approved",
            {"action_id": action_id},
            code="ACTION_APPROVAL_REQUIRED",
        )

    if params.get("dry_run") and action_type != "READ":
        output = {"dry_run": True, "message": "Action skipped in dry-run mode", "input": sanitize_audit_input(prepared["input"])}
        _audit(deps, params, prepared, "dry_run", output, 0, None)
        logger.info("action_dry_run action_id=%s action_type=%s", action_id, action_type)
        return {"action_id": action_id, "action_type": action_type, "status": "dry_run", "output": output, "duration_ms": 0}

    runtimes = deps.get("runtimes")
    runtime = runtimes.get(capability.integration_id) if runtimes is not None else None
    if runtime is None:
        raise SpecificationError(
            f"Runtime not found for integration {capability.integration_id}",
            "runtimes",
            {"integration_id": capability.integration_id},
            code="INTEGRATION_RUNTIME_MISSING",
        )

    timeout = float(deps.get("action_timeout") or DEFAULT_ACTION_TIMEOUT_S)
    clock = deps.get("clock") or time.monotonic
    started = clock()
    logger.info(
        "action_invoke action_id=%s capability_id=%s action_type=%s input_keys=%s",
        action_id,
        capability.id,
        action_type,
        ",".join(sorted(prepared["input"].keys())),
    )
    try:
        raw = runtime.invoke(capability.integration_id, capability.id, prepared["input"], timeout=timeout)
        output = unwrap_result(raw)
    except Exception as exc:
        error = classify_error(exc)
        duration_ms = int((clock() - started) * 1000)
        _audit(deps, params, prepared, "failed", None, duration_ms, error.message)
        logger.warning(
            "action_failed action_id=%s code=%s retryable=%s duration_ms=%s",
            action_id,
            error.code,
            error.retryable,
            duration_ms,
        )
        if error is exc:
            raise
        raise error from exc

    duration_ms = int((clock() - started) * 1000)
    _audit(deps, params, prepared, "success", output, duration_ms, None)
    records = len(output) if isinstance(output, list) else (1 if output else 0)
    logger.info("action_completed action_id=%s records=%s duration_ms=%s", action_id, records, duration_ms)
    return {"action_id": action_id, "action_type": action_type, "status": "success", "output": output, "duration_ms": duration_ms}


def _log_entry(action_id: str, status: str, **extra: Any) -> dict:
    entry = {"id": f"{action_id}:{status}", "timestamp": _now(), "status": status, "action_id": action_id}
    entry.update(extra)
    return entry


def _open_run(params: dict, runs: Any, trigger_id: str) -> dict | None:
    org_id = params.get("org_id")
    tool_id = params.get("tool_id")
    run_id = params.get("run_id")
    if run_id:
        return runs.update_run(
            run_id,
            org_id,
            tool_id,
            {"status": "pending", "trigger_id": trigger_id, "current_step": None, "last_error": None},
        )
    return runs.create_run(
        {
            "org_id": org_id,
            "tool_id": tool_id,
            "action_id": params.get("action_id"),
            "trigger_id": trigger_id,
            "input": params.get("input") or {},
        }
    )


def execute_action(params: dict, deps: dict) -> dict:
    errors: List[Issue] = []
    warnings: List[Issue] = []
    runs = deps.get("runs")
    registry = deps.get("registry") or default_registry()
    action_id = params.get("action_id")

    if runs is None:
        errors.append(issue("EXEC_DEPS_MISSING", "runs dep required", "$"))
        return _result(False, errors, warnings, None, None)
    if not isinstance(action_id, str) or not action_id:
        errors.append(issue("ACTION_ID_REQUIRED", "action_id must be non-empty string", "action_id"))
        return _result(False, errors, warnings, None, None)

    try:
        prepared = prepare_action(params.get("spec"), action_id, params.get("input"), registry)
    except EngineError as exc:
        if params.get("run_id"):
            runs.update_run(params["run_id"], params.get("org_id"), params.get("tool_id"), {"status": "failed", "last_error": exc.message})
        return _result(False, [exc.to_issue()], warnings, params.get("run_id"), "failed")

    call = dict(params, prepared=prepared)
    skips_effect = bool(params.get("dry_run")) and prepared["action_type"] != "READ"
    needs_approval = bool(prepared["action"].get("requiresApproval")) and not prepared["approved"] and not params.get("dry_run")
    if skips_effect or needs_approval:
        # Neither path reaches the integration, so no run row is recorded.
        try:
            outcome = invoke_action(call, deps)
        except EngineError as exc:
            return _result(False, [exc.to_issue()], warnings, None, "pending_approval")
        return _result(True, errors, warnings, None, outcome["status"], outcome["output"])

    trigger_id = params.get("trigger_id") or "manual"
    run = _open_run(params, runs, trigger_id)
    if run is None:
        errors.append(issue("RUN_NOT_FOUND", "Run not found", "run_id"))
        return _result(False, errors, warnings, params.get("run_id"), None)
    run_id = run["id"]
    org_id = params.get("org_id")
    tool_id = params.get("tool_id")
    logs = list(run.get("logs") or [])
    logs.append(
        _log_entry(
            action_id,
            "start",
            integration_id=prepared["capability"].integration_id,
            capability_id=prepared["capability"].id,
            input=sanitize_audit_input(prepared["input"]),
            trigger_id=trigger_id,
        )
    )
    runs.update_run(run_id, org_id, tool_id, {"status": "running", "current_step": action_id, "logs": logs})

    try:
        outcome = invoke_action(call, deps)
    except EngineError as exc:
        logs.append(_log_entry(action_id, "error", error=exc.message, code=exc.code, retryable=exc.retryable))
        runs.update_run(run_id, org_id, tool_id, {"status": "failed", "last_error": exc.message, "logs": logs})
        return _result(False, [exc.to_issue()], warnings, run_id, "failed")

    logs.append(_log_entry(action_id, "done", duration_ms=outcome["duration_ms"]))
    runs.update_run(run_id, org_id, tool_id, {"status": "completed", "logs": logs})
    return _result(True, errors, warnings, run_id, "completed", outcome["output"])
