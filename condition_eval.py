"""Condition evaluation for workflow condition nodes.

A condition is either a state path string (``"steps.fetch.items"``), truthy
when the resolved value is truthy, optionally negated with a leading ``!``,
or a condition object:

    {"op": "gt", "left": {"var": "steps.fetch.count"}, "right": {"literal": 0}}

Paths walk dicts by key and lists by integer index.
"""

from __future__ import annotations

import math
from dataclasses import dataclass
from typing import Any, Callable, Dict


@dataclass
class ConditionError(Exception):
    code: str
    message: str
    path: str | None = None

    def __str__(self) -> str:  # pragma: no cover - simple formatting
        base = f"{self.code}: {self.message}"
        return f"{base} (path={self.path})" if self.path else base


_MISSING = object()


def resolve_path(ctx: Any, name: str) -> Any:
    """Resolve a dotted path; returns None when any segment is missing."""
    value = _walk(ctx, name)
    return None if value is _MISSING else value


def _walk(ctx: Any, name: str) -> Any:
    current = ctx
    for part in name.split("."):
        if isinstance(current, dict):
            if part not in current:
                return _MISSING
            current = current[part]
        elif isinstance(current, list) and part.lstrip("-").isdigit():
            idx = int(part)
            if idx >= len(current) or idx < -len(current):
                return _MISSING
            current = current[idx]
        else:
            return _MISSING
    return current


def _number(value: Any, path: str) -> float:
    if isinstance(value, bool) or not isinstance(value, (int, float)):
        raise ConditionError("CONDITION_TYPE_ERROR", "Comparison requires numbers", path)
    if isinstance(value, float) and not math.isfinite(value):
        raise ConditionError("CONDITION_TYPE_ERROR", "Non-finite number", path)
    return value


def _contains(left: Any, right: Any, path: str) -> bool:
    if isinstance(left, str) and isinstance(right, str):
        return right in left
    if isinstance(left, list):
        return right in left
    raise ConditionError("CONDITION_TYPE_ERROR", "contains requires string or list left", path)


def _member(left: Any, right: Any, path: str) -> bool:
    if not isinstance(right, list):
        raise ConditionError("CONDITION_TYPE_ERROR", "right must be list", f"{path}.right")
    return left in right


_BINARY: Dict[str, Callable[[Any, Any, str], bool]] = {
    "eq": lambda a, b, p: a == b,
    "neq": lambda a, b, p: a != b,
    "gt": lambda a, b, p: _number(a, p) > _number(b, p),
    "gte": lambda a, b, p: _number(a, p) >= _number(b, p),
    "lt": lambda a, b, p: _number(a, p) < _number(b, p),
    "lte": lambda a, b, p: _number(a, p) <= _number(b, p),
    "contains": _contains,
    "in": _member,
    "not_in": lambda a, b, p: not _member(a, b, p),
}


def eval_value(node: Any, ctx: dict, path: str = "$") -> Any:
    if not isinstance(node, dict):
        raise ConditionError("CONDITION_SCHEMA_ERROR", "Value node must be object", path)
    if "var" in node:
        if not isinstance(node["var"], str):
            raise ConditionError("CONDITION_SCHEMA_ERROR", "var must be string", path)
        value = _walk(ctx, node["var"])
        if value is _MISSING:
            raise ConditionError("CONDITION_VAR_UNRESOLVED", f"Unresolved var: {node['var']}", path)
        return value
    if "literal" in node:
        return node["literal"]
    if "array" in node:
        if not isinstance(node["array"], list):
            raise ConditionError("CONDITION_SCHEMA_ERROR", "array must be list", path)
        return [eval_value(item, ctx, f"{path}.array[{idx}]") for idx, item in enumerate(node["array"])]
    raise ConditionError("CONDITION_SCHEMA_ERROR", "Invalid value node", path)


def eval_condition(cond: Any, ctx: dict, depth_limit: int = 10) -> bool:
    if not isinstance(ctx, dict):
        raise ConditionError("CONDITION_SCHEMA_ERROR", "ctx must be object", "$")
    if isinstance(cond, str):
        text = cond.strip()
        negate = text.startswith("!")
        name = text[1:].strip() if negate else text
        if not name:
            raise ConditionError("CONDITION_SCHEMA_ERROR", "Condition path must be non-empty", "$")
        result = bool(resolve_path(ctx, name))
        return not result if negate else result
    return _eval(cond, ctx, "$", 1, depth_limit)


def _eval(cond: Any, ctx: dict, path: str, depth: int, limit: int) -> bool:
    if depth > limit:
        raise ConditionError("CONDITION_DEPTH_EXCEEDED", "Depth limit exceeded", path)
    if not isinstance(cond, dict):
        raise ConditionError("CONDITION_SCHEMA_ERROR", "Condition must be object", path)
    op = cond.get("op")

    if op in ("and", "or", "not"):
        children = cond.get("children")
        if not isinstance(children, list):
            raise ConditionError("CONDITION_SCHEMA_ERROR", "children must be list", f"{path}.children")
        if op == "not":
            if len(children) != 1:
                raise ConditionError("CONDITION_SCHEMA_ERROR", "not requires single child", f"{path}.children")
            return not _eval(children[0], ctx, f"{path}.children[0]", depth + 1, limit)
        results = (_eval(child, ctx, f"{path}.children[{i}]", depth + 1, limit) for i, child in enumerate(children))
        return all(results) if op == "and" else any(results)

    if op in ("exists", "not_exists"):
        left = cond.get("left")
        if not isinstance(left, dict):
            raise ConditionError("CONDITION_SCHEMA_ERROR", "Missing required field: left", path)
        if isinstance(left.get("var"), str):
            found = resolve_path(ctx, left["var"]) is not None
        else:
            found = eval_value(left, ctx, f"{path}.left") is not None
        return found if op == "exists" else not found

    if op in _BINARY:
        if "left" not in cond or "right" not in cond:
            raise ConditionError("CONDITION_SCHEMA_ERROR", "left and right required", path)
        left = eval_value(cond["left"], ctx, f"{path}.left")
        right = eval_value(cond["right"], ctx, f"{path}.right")
        return _BINARY[op](left, right, path)

    if op is None:
        raise ConditionError("CONDITION_SCHEMA_ERROR", "Missing op", path)
    raise ConditionError("CONDITION_UNKNOWN_OP", f"Unknown op: {op}", path)
