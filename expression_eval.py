"""Pure transform mappings for workflow transform nodes."""

from __future__ import annotations

import copy
import math
from typing import Any

import condition_eval
from condition_eval import ConditionError


class TransformError(ConditionError):
    def __init__(self, message: str, path: str | None = None, code: str = "TRANSFORM_INVALID") -> None:
        super().__init__(code, message, path)


EXPRESSION_KEYS = frozenset({"literal", "var", "array", "object", "op"})


def is_expression(value: Any) -> bool:
    return isinstance(value, dict) and bool(value.keys() & EXPRESSION_KEYS)


def _finite(value: Any, path: str) -> Any:
    if isinstance(value, float) and not math.isfinite(value):
        raise TransformError("Non-finite number", path)
    return value


def _items(value: Any, path: str) -> list:
    if value is None:
        return []
    if not isinstance(value, list):
        raise TransformError("Expected list", path, code="TRANSFORM_TYPE_ERROR")
    return value


def eval_expression(expr: Any, ctx: dict, path: str = "$", depth: int = 1, limit: int = 10) -> Any:
    if depth > limit:
        raise TransformError("Depth limit exceeded", path, code="TRANSFORM_DEPTH_EXCEEDED")
    if not isinstance(expr, dict):
        raise TransformError("Expression must be object", path)

    keys = set(expr.keys())
    if keys == {"literal"}:
        return _finite(copy.deepcopy(expr["literal"]), path)
    if keys == {"var"}:
        if not isinstance(expr["var"], str):
            raise TransformError("var must be string", path)
        return copy.deepcopy(condition_eval.resolve_path(ctx, expr["var"]))
    if keys == {"array"}:
        return [eval_expression(item, ctx, f"{path}.array[{idx}]", depth + 1, limit) for idx, item in enumerate(_items(expr["array"], path))]
    if keys == {"object"}:
        fields = expr["object"]
        if not isinstance(fields, dict):
            raise TransformError("object must be mapping", path)
        return {key: eval_expression(node, ctx, f"{path}.{key}", depth + 1, limit) for key, node in fields.items()}

    op = expr.get("op")
    if op == "count":
        return len(_items(eval_expression(expr.get("of"), ctx, f"{path}.of", depth + 1, limit), f"{path}.of"))
    if op == "first":
        items = _items(eval_expression(expr.get("of"), ctx, f"{path}.of", depth + 1, limit), f"{path}.of")
        return items[0] if items else None
    if op == "pluck":
        field = expr.get("field")
        if not isinstance(field, str) or not field:
            raise TransformError("pluck.field must be non-empty string", f"{path}.field")
        items = _items(eval_expression(expr.get("from"), ctx, f"{path}.from", depth + 1, limit), f"{path}.from")
        return [condition_eval.resolve_path(item, field) for item in items]
    if op == "filter":
        items = _items(eval_expression(expr.get("over"), ctx, f"{path}.over", depth + 1, limit), f"{path}.over")
        where = expr.get("where")
        kept = []
        for item in items:
            child = dict(ctx)
            child["item"] = item
            if condition_eval.eval_condition(where, child, depth_limit=max(1, limit - depth)):
                kept.append(item)
        return kept
    if op == "coalesce":
        args = expr.get("args")
        if not isinstance(args, list) or not args:
            raise TransformError("args must be non-empty list", f"{path}.args")
        for idx, arg in enumerate(args):
            value = eval_expression(arg, ctx, f"{path}.args[{idx}]", depth + 1, limit)
            if value is not None:
                return value
        return None
    raise TransformError(f"Unknown transform op: {op}", path, code="TRANSFORM_UNKNOWN_OP")


def apply_transform(transform: Any, ctx: dict) -> Any:
    """Apply a node's declared transform.

    None passes the run input through; a string is a path; a dict whose
    values are expressions builds an object; otherwise a single expression.
    """
    if transform is None:
        return copy.deepcopy(ctx.get("input"))
    if isinstance(transform, str):
        return copy.deepcopy(condition_eval.resolve_path(ctx, transform))
    if not isinstance(transform, dict):
        raise TransformError("transform must be string or object", "$")
    if is_expression(transform):
        return eval_expression(transform, ctx)
    return {key: eval_expression(node, ctx, f"$.{key}") for key, node in transform.items()}


def resolve_mapping(mapping: dict, ctx: dict) -> dict:
    """Resolve expression values in a mapping; other values are copied as-is."""
    return {
        key: eval_expression(value, ctx, f"$.{key}") if is_expression(value) else copy.deepcopy(value)
        for key, value in mapping.items()
    }
