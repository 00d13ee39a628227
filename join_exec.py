"""Bounded in-memory hash join over two row sets."""

from __future__ import annotations

import math
from typing import Any, Dict, List

from engine_errors import SizeLimitError, SpecificationError


MAX_ROWS_PER_SIDE = 10_000
JOINED_PREFIX = "joined_"
JOIN_TYPES = ("inner", "left")


def join_key(value: Any) -> str | None:
    """Stringify a join value so 1, 1.0 and "1" share a bucket.

    Returns None for absent or empty keys; those never match.
    """
    if value is None:
        return None
    if isinstance(value, bool):
        return "true" if value else "false"
    if isinstance(value, float) and math.isfinite(value) and value.is_integer():
        value = int(value)
    key = str(value)
    return key if key != "" else None


def _validate_definition(definition: dict) -> tuple[str, str, str]:
    if not isinstance(definition, dict):
        raise SpecificationError("join definition must be object", "$")
    left_field = definition.get("leftField")
    right_field = definition.get("rightField")
    join_type = definition.get("joinType", "inner")
    if not isinstance(left_field, str) or not left_field:
        raise SpecificationError("leftField must be non-empty string", "$.leftField")
    if not isinstance(right_field, str) or not right_field:
        raise SpecificationError("rightField must be non-empty string", "$.rightField")
    if join_type not in JOIN_TYPES:
        raise SpecificationError("joinType must be inner or left", "$.joinType")
    return left_field, right_field, join_type


def _prefixed(row: dict) -> dict:
    return {f"{JOINED_PREFIX}{key}": value for key, value in row.items()}


def execute_join(definition: dict, left_rows: List[dict], right_rows: List[dict]) -> dict:
    left_field, right_field, join_type = _validate_definition(definition)

    for side, rows in (("left", left_rows), ("right", right_rows)):
        if not isinstance(rows, list):
            raise SpecificationError(f"{side} rows must be list", f"$.{side}")
        if len(rows) > MAX_ROWS_PER_SIDE:
            raise SizeLimitError(
                f"Join blocked: {side} input exceeds limit of {MAX_ROWS_PER_SIDE} rows",
                f"$.{side}",
                {"rows": len(rows), "limit": MAX_ROWS_PER_SIDE},
            )

    index: Dict[str, List[dict]] = {}
    for row in right_rows:
        key = join_key(row.get(right_field)) if isinstance(row, dict) else None
        if key is None:
            continue
        index.setdefault(key, []).append(row)

    data: List[dict] = []
    matched = 0
    unmatched_left = 0
    for row in left_rows:
        if not isinstance(row, dict):
            raise SpecificationError("left rows must be objects", "$.left")
        key = join_key(row.get(left_field))
        matches = index.get(key) if key is not None else None
        if matches:
            for right in matches:
                merged = dict(row)
                merged.update(_prefixed(right))
                data.append(merged)
                matched += 1
            continue
        unmatched_left += 1
        if join_type == "left":
            data.append(dict(row))

    return {
        "data": data,
        "stats": {
            "left_rows": len(left_rows),
            "right_rows": len(right_rows),
            "matched_rows": matched,
            # Approximation: over-counts when one left row matches several right rows.
            "dropped_rows": len(left_rows) - matched,
            "unmatched_left_rows": unmatched_left,
        },
    }
