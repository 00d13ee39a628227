"""Timeline aggregation over recent runs and synced integration state."""

from __future__ import annotations

import logging
from datetime import datetime, timezone
from types import MappingProxyType
from typing import Any, Callable, Dict, Iterable, List, Mapping


logger = logging.getLogger("toolos.timeline")

RUN_HISTORY_LIMIT = 20
RUN_FALLBACK_INTEGRATION = "system"
TIMELINE_RUN_STATUSES = ("completed", "failed")

TimelineEvent = Dict[str, Any]
Extractor = Callable[[dict], Iterable[TimelineEvent]]


def normalize_timestamp(value: Any) -> str | None:
    """ISO-8601 UTC ("...Z") for ISO strings, datetimes and epoch seconds."""
    if value is None or isinstance(value, bool):
        return None
    parsed: datetime | None = None
    if isinstance(value, datetime):
        parsed = value if value.tzinfo else value.replace(tzinfo=timezone.utc)
    elif isinstance(value, (int, float)):
        try:
            parsed = datetime.fromtimestamp(float(value), tz=timezone.utc)
        except (OverflowError, OSError, ValueError):
            # Out of range (epoch millis, NaN); sorts as untimestamped.
            return None
    elif isinstance(value, str) and value.strip():
        text = value.strip()
        try:
            parsed = datetime.fromisoformat(text.replace("Z", "+00:00"))
        except (OverflowError, ValueError):
            return None
        if parsed.tzinfo is None:
            parsed = parsed.replace(tzinfo=timezone.utc)
    if parsed is None:
        return None
    try:
        parsed = parsed.astimezone(timezone.utc)
    except OverflowError:
        return None
    return parsed.strftime("%Y-%m-%dT%H:%M:%S.%f")[:-3] + "Z"


def _epoch(value: Any) -> str | None:
    # Slack "ts" values are epoch seconds as strings ("1700000000.000100")
    try:
        return normalize_timestamp(float(value))
    except (TypeError, ValueError):
        return None


def _first(*values: Any) -> str | None:
    for value in values:
        stamp = normalize_timestamp(value)
        if stamp is not None:
            return stamp
    return None


def _event(timestamp: str | None, entity: str, source: str, action: str, metadata: dict) -> TimelineEvent:
    return {
        "timestamp": timestamp,
        "entity": entity,
        "source_integration": source,
        "action": action,
        "metadata": metadata,
    }


def _items(state: dict, key: str) -> list:
    items = state.get(key) if isinstance(state, dict) else None
    return [item for item in items if isinstance(item, dict)] if isinstance(items, list) else []


def _github_events(state: dict) -> List[TimelineEvent]:
    events = []
    for item in _items(state, "issues"):
        events.append(
            _event(
                _first(item.get("created_at"), item.get("updated_at")),
                "Issue",
                "github",
                "Issue Updated",
                {"title": item.get("title"), "url": item.get("html_url"), "state": item.get("state")},
            )
        )
    for item in _items(state, "commits"):
        commit = item.get("commit") if isinstance(item.get("commit"), dict) else {}
        author = commit.get("author") if isinstance(commit.get("author"), dict) else {}
        events.append(
            _event(
                _first(author.get("date")),
                "Repo",
                "github",
                "Commit Pushed",
                {"message": commit.get("message"), "author": author.get("name")},
            )
        )
    return events


def _linear_events(state: dict) -> List[TimelineEvent]:
    events = []
    for item in _items(state, "issues"):
        status = item.get("state")
        events.append(
            _event(
                _first(item.get("createdAt"), item.get("updatedAt")),
                "Ticket",
                "linear",
                "Ticket Updated",
                {"title": item.get("title"), "status": status.get("name") if isinstance(status, dict) else status},
            )
        )
    return events


def _slack_events(state: dict) -> List[TimelineEvent]:
    return [
        _event(_epoch(item.get("ts")), "Message", "slack", "Message Sent", {"text": item.get("text"), "user": item.get("user")})
        for item in _items(state, "messages")
    ]


def _notion_events(state: dict) -> List[TimelineEvent]:
    return [
        _event(
            _first(item.get("last_edited_time"), item.get("created_time")),
            "Page",
            "notion",
            "Page Edited",
            {"title": item.get("title"), "url": item.get("url")},
        )
        for item in _items(state, "pages")
    ]


DEFAULT_EXTRACTORS: Mapping[str, Extractor] = MappingProxyType(
    {
        "github": _github_events,
        "linear": _linear_events,
        "slack": _slack_events,
        "notion": _notion_events,
    }
)


def register_extractor(integration_id: str, extractor: Extractor, extractors: Mapping[str, Extractor] = DEFAULT_EXTRACTORS) -> Mapping[str, Extractor]:
    """Return a new extractor table with integration_id bound to extractor."""
    if not isinstance(integration_id, str) or not integration_id:
        raise ValueError("integration_id must be non-empty string")
    table = dict(extractors)
    table[integration_id] = extractor
    return MappingProxyType(table)


def _action_integrations(spec: dict) -> Dict[str, str]:
    actions = spec.get("actions") if isinstance(spec, dict) else None
    out: Dict[str, str] = {}
    for action in actions or []:
        if isinstance(action, dict) and isinstance(action.get("id"), str) and action.get("integrationId"):
            out[action["id"]] = action["integrationId"]
    return out


def _run_events(runs: Iterable[dict], spec: dict) -> List[TimelineEvent]:
    integrations = _action_integrations(spec)
    events = []
    for run in runs:
        if run.get("status") not in TIMELINE_RUN_STATUSES:
            continue
        action_id = run.get("action_id")
        events.append(
            _event(
                normalize_timestamp(run.get("created_at")),
                "Tool",
                integrations.get(action_id, RUN_FALLBACK_INTEGRATION),
                action_id or "Workflow Run",
                {"run_id": run.get("id"), "status": run.get("status"), "trigger_id": run.get("trigger_id")},
            )
        )
    return events


def sort_events(events: List[TimelineEvent]) -> List[TimelineEvent]:
    """Newest first; ties keep input order, untimestamped events go last."""
    return sorted(events, key=lambda event: (event["timestamp"] is not None, event["timestamp"] or ""), reverse=True)


def aggregate_timeline(org_id: str, tool_id: str, spec: dict, deps: dict) -> List[TimelineEvent]:
    runs = deps["runs"].list_runs(org_id, tool_id, limit=RUN_HISTORY_LIMIT)
    events = _run_events(runs, spec)

    state = deps["state"].load_state(org_id, tool_id) or {}
    extractors = deps.get("extractors") or DEFAULT_EXTRACTORS
    for integration_id, extractor in extractors.items():
        section = state.get(integration_id)
        if isinstance(section, dict):
            events.extend(extractor(section))

    ordered = sort_events(events)
    logger.info("timeline_aggregated tool_id=%s runs=%s events=%s", tool_id, len(runs), len(ordered))
    return ordered
