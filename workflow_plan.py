"""Workflow planning: graph validation and execution order, without execution."""

from __future__ import annotations

from collections import deque
from typing import Any, Dict, List

from engine_errors import Issue, SpecificationError, issue


WorkflowPlan = Dict[str, Any]

NODE_TYPES = ("action", "condition", "transform", "wait")
BRANCHES = ("true", "false")
BACKOFF_STRATEGIES = ("exponential", "fixed")


def _is_count(value: Any) -> bool:
    return isinstance(value, int) and not isinstance(value, bool) and value >= 0


def _action_ids(spec: dict) -> set:
    actions = spec.get("actions") if isinstance(spec, dict) else None
    return {a.get("id") for a in actions or [] if isinstance(a, dict) and isinstance(a.get("id"), str)}


def _validate_nodes(nodes: Any, spec: dict, errors: List[Issue]) -> List[str]:
    if not isinstance(nodes, list) or not nodes:
        errors.append(issue("WORKFLOW_INVALID", "nodes must be non-empty list", "$.nodes"))
        return []
    action_ids = _action_ids(spec)
    node_ids: List[str] = []
    for idx, node in enumerate(nodes):
        path = f"$.nodes[{idx}]"
        if not isinstance(node, dict) or not isinstance(node.get("id"), str) or not node.get("id"):
            errors.append(issue("WORKFLOW_INVALID", "node.id must be non-empty string", f"{path}.id"))
            continue
        node_id = node["id"]
        if node_id in node_ids:
            errors.append(issue("WORKFLOW_INVALID", f"Duplicate node id: {node_id}", f"{path}.id"))
        node_ids.append(node_id)

        node_type = node.get("type")
        if node_type not in NODE_TYPES:
            errors.append(issue("WORKFLOW_NODE_TYPE_UNKNOWN", f"Unknown node type: {node_type}", f"{path}.type"))
        elif node_type == "action":
            action_id = node.get("actionId")
            if not isinstance(action_id, str) or not action_id:
                errors.append(issue("WORKFLOW_INVALID", "action node requires actionId", f"{path}.actionId"))
            elif action_id not in action_ids:
                errors.append(
                    issue("WORKFLOW_ACTION_UNKNOWN", f"Action {action_id} not found", f"{path}.actionId", {"node_id": node_id})
                )
            if node.get("input") is not None and not isinstance(node.get("input"), dict):
                errors.append(issue("WORKFLOW_INVALID", "node.input must be object", f"{path}.input"))
        elif node_type == "condition":
            if not isinstance(node.get("condition"), (str, dict)) or not node.get("condition"):
                errors.append(issue("WORKFLOW_INVALID", "condition node requires condition", f"{path}.condition"))
        elif node_type == "transform":
            transform = node.get("transform")
            if transform is not None and not isinstance(transform, (str, dict)):
                errors.append(issue("WORKFLOW_INVALID", "transform must be string or object", f"{path}.transform"))
        elif node_type == "wait":
            if not _is_count(node.get("waitMs")):
                errors.append(issue("WORKFLOW_INVALID", "wait node requires waitMs >= 0", f"{path}.waitMs"))
    return node_ids


def _validate_edges(edges: Any, node_ids: List[str], errors: List[Issue]) -> List[dict]:
    if edges is None:
        return []
    if not isinstance(edges, list):
        errors.append(issue("WORKFLOW_INVALID", "edges must be list", "$.edges"))
        return []
    known = set(node_ids)
    valid: List[dict] = []
    for idx, edge in enumerate(edges):
        path = f"$.edges[{idx}]"
        if not isinstance(edge, dict):
            errors.append(issue("WORKFLOW_INVALID", "edge must be object", path))
            continue
        ok = True
        for end in ("from", "to"):
            ref = edge.get(end)
            if ref not in known:
                errors.append(issue("WORKFLOW_EDGE_UNKNOWN_NODE", f"Edge references unknown node: {ref}", f"{path}.{end}"))
                ok = False
        branch = edge.get("branch")
        if branch is not None and branch not in BRANCHES:
            errors.append(issue("WORKFLOW_INVALID", "edge.branch must be 'true' or 'false'", f"{path}.branch"))
            ok = False
        if ok:
            valid.append({"from": edge["from"], "to": edge["to"], "branch": branch})
    return valid


def _validate_policy(workflow: dict, errors: List[Issue]) -> tuple[dict, int]:
    policy = workflow.get("retryPolicy")
    retry_policy = {"max_retries": 0, "backoff_ms": 0, "strategy": "exponential"}
    if policy is not None:
        if not isinstance(policy, dict):
            errors.append(issue("WORKFLOW_INVALID", "retryPolicy must be object", "$.retryPolicy"))
        else:
            max_retries = policy.get("maxRetries", 0)
            backoff_ms = policy.get("backoffMs", 0)
            strategy = policy.get("strategy", "exponential")
            if not _is_count(max_retries):
                errors.append(issue("WORKFLOW_INVALID", "maxRetries must be integer >= 0", "$.retryPolicy.maxRetries"))
            if not _is_count(backoff_ms):
                errors.append(issue("WORKFLOW_INVALID", "backoffMs must be integer >= 0", "$.retryPolicy.backoffMs"))
            if strategy not in BACKOFF_STRATEGIES:
                errors.append(issue("WORKFLOW_INVALID", f"Unknown backoff strategy: {strategy}", "$.retryPolicy.strategy"))
            retry_policy = {"max_retries": max_retries, "backoff_ms": backoff_ms, "strategy": strategy}
    timeout_ms = workflow.get("timeoutMs", 0)
    if timeout_ms is None:
        timeout_ms = 0
    if not _is_count(timeout_ms):
        errors.append(issue("WORKFLOW_INVALID", "timeoutMs must be integer >= 0", "$.timeoutMs"))
    return retry_policy, timeout_ms


def topological_order(node_ids: List[str], edges: List[dict]) -> List[str] | None:
    """Kahn ordering; ties resolved by declaration order. None when cyclic."""
    in_degree = {node_id: 0 for node_id in node_ids}
    outgoing: Dict[str, List[str]] = {node_id: [] for node_id in node_ids}
    for edge in edges:
        outgoing[edge["from"]].append(edge["to"])
        in_degree[edge["to"]] += 1
    queue = deque(node_id for node_id in node_ids if in_degree[node_id] == 0)
    order: List[str] = []
    while queue:
        current = queue.popleft()
        order.append(current)
        for nxt in outgoing[current]:
            in_degree[nxt] -= 1
            if in_degree[nxt] == 0:
                queue.append(nxt)
    if len(order) != len(node_ids):
        return None
    return order


def plan_workflow(workflow: dict, spec: dict) -> dict:
    errors: List[Issue] = []
    warnings: List[Issue] = []

    if not isinstance(workflow, dict):
        errors.append(issue("WORKFLOW_INVALID", "workflow must be object", "$"))
        return {"ok": False, "errors": errors, "warnings": warnings, "plan": None}
    if not isinstance(workflow.get("id"), str) or not workflow.get("id"):
        errors.append(issue("WORKFLOW_INVALID", "workflow.id must be non-empty string", "$.id"))

    node_ids = _validate_nodes(workflow.get("nodes"), spec, errors)
    edges = _validate_edges(workflow.get("edges"), node_ids, errors)
    retry_policy, timeout_ms = _validate_policy(workflow, errors)
    if errors:
        return {"ok": False, "errors": errors, "warnings": warnings, "plan": None}

    order = topological_order(node_ids, edges)
    if order is None:
        errors.append(issue("WORKFLOW_CYCLE", "Workflow graph contains a cycle", "$.edges", {"workflow_id": workflow["id"]}))
        return {"ok": False, "errors": errors, "warnings": warnings, "plan": None}

    nodes = {node["id"]: node for node in workflow["nodes"]}
    incoming: Dict[str, List[dict]] = {node_id: [] for node_id in node_ids}
    outgoing: Dict[str, List[dict]] = {node_id: [] for node_id in node_ids}
    for edge in edges:
        incoming[edge["to"]].append(edge)
        outgoing[edge["from"]].append(edge)
        if edge["branch"] is not None and nodes[edge["from"]].get("type") != "condition":
            warnings.append(
                issue("WORKFLOW_BRANCH_IGNORED", "branch is only meaningful on condition edges", "$.edges", {"from": edge["from"]})
            )

    plan: WorkflowPlan = {
        "workflow_id": workflow["id"],
        "order": order,
        "nodes": nodes,
        "incoming": incoming,
        "outgoing": outgoing,
        "retry_policy": retry_policy,
        "timeout_ms": timeout_ms,
        "warnings": warnings,
    }
    return {"ok": True, "errors": errors, "warnings": warnings, "plan": plan}


def find_workflow(spec: dict, workflow_id: str) -> dict:
    workflows = spec.get("workflows") if isinstance(spec, dict) else None
    for workflow in workflows or []:
        if isinstance(workflow, dict) and workflow.get("id") == workflow_id:
            return workflow
    raise SpecificationError(f"Workflow {workflow_id} not found", "$.workflows", {"workflow_id": workflow_id}, code="WORKFLOW_NOT_FOUND")


def require_plan(workflow: dict, spec: dict) -> WorkflowPlan:
    """plan_workflow, raising the first error as SpecificationError.

    Plan warnings travel on plan["warnings"].
    """
    result = plan_workflow(workflow, spec)
    if not result["ok"]:
        first = result["errors"][0]
        raise SpecificationError(first["message"], first["path"], {"issues": result["errors"]}, code=first["code"])
    return result["plan"]
