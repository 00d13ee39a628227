"""Static capability table: integration resources, operations and fields."""

from __future__ import annotations

from dataclasses import dataclass, field
from types import MappingProxyType
from typing import Any, Dict, Iterable, List, Mapping, Tuple

from engine_errors import Issue, SpecificationError, issue


READ_OPERATIONS = frozenset({"read", "aggregate", "filter", "group"})
EFFECT_OPERATIONS = {"write": "WRITE", "mutate": "MUTATE", "notify": "NOTIFY"}
ACTION_TYPES = ("READ", "WRITE", "MUTATE", "NOTIFY")

# Input keys that carry a page size and are bounded by constraints.max_limit.
LIMIT_FIELDS = ("limit", "first", "maxResults", "pageSize", "per_page")


@dataclass(frozen=True)
class CapabilityConstraints:
    max_limit: int | None = None
    required_filters: Tuple[str, ...] = ()


@dataclass(frozen=True)
class Capability:
    id: str
    integration_id: str
    resource: str
    allowed_operations: Tuple[str, ...]
    supported_fields: Tuple[str, ...] = ()
    constraints: CapabilityConstraints = field(default_factory=CapabilityConstraints)

    def action_type(self) -> str:
        for op in self.allowed_operations:
            if op in EFFECT_OPERATIONS:
                return EFFECT_OPERATIONS[op]
        return "READ"

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "integration_id": self.integration_id,
            "resource": self.resource,
            "allowed_operations": list(self.allowed_operations),
            "supported_fields": list(self.supported_fields),
            "constraints": {
                "max_limit": self.constraints.max_limit,
                "required_filters": list(self.constraints.required_filters),
            },
        }


def _cap(
    cap_id: str,
    integration_id: str,
    resource: str,
    ops: Iterable[str],
    fields: Iterable[str] = (),
    max_limit: int | None = None,
    required: Iterable[str] = (),
) -> Capability:
    return Capability(
        id=cap_id,
        integration_id=integration_id,
        resource=resource,
        allowed_operations=tuple(ops),
        supported_fields=tuple(fields),
        constraints=CapabilityConstraints(max_limit=max_limit, required_filters=tuple(required)),
    )


DEFAULT_CAPABILITIES: Tuple[Capability, ...] = (
    # GitHub
    _cap("github_issues_list", "github", "issues", ["read", "filter"], ["state", "labels", "assignee", "sort", "direction", "per_page"], max_limit=100),
    _cap("github_repos_list", "github", "repos", ["read", "filter"], ["type", "sort", "direction"]),
    _cap("github_commits_list", "github", "commits", ["read", "filter"], ["repo", "author", "since", "until"], required=["repo"]),
    _cap("github_issue_create", "github", "issues", ["write"], ["repo", "title", "body", "labels", "assignees"], required=["repo", "title"]),
    _cap("github_issue_comment", "github", "comments", ["mutate"], ["repo", "issue_number", "body"], required=["repo", "issue_number", "body"]),
    # Linear
    _cap("linear_issues_list", "linear", "issues", ["read", "filter"], ["first", "includeArchived"], max_limit=250),
    _cap("linear_teams_list", "linear", "teams", ["read"]),
    _cap("linear_issue_update", "linear", "issues", ["mutate"], ["id", "title", "stateId", "priority", "assigneeId"], required=["id"]),
    # Slack
    _cap("slack_channels_list", "slack", "channels", ["read"], ["types", "exclude_archived"]),
    _cap("slack_messages_list", "slack", "messages", ["read"], ["channel", "limit"], max_limit=1000, required=["channel"]),
    _cap("slack_message_post", "slack", "messages", ["notify"], ["channel", "text", "thread_ts"], required=["channel", "text"]),
    # Notion
    _cap("notion_pages_search", "notion", "pages", ["read", "filter"], ["query", "sort"]),
    _cap("notion_databases_list", "notion", "databases", ["read"]),
    _cap("notion_page_create", "notion", "pages", ["write"], ["parent_id", "title", "content"], required=["parent_id", "title"]),
    # Google
    _cap("google_drive_list", "google", "drive", ["read", "filter"], ["q", "orderBy", "pageSize"], max_limit=1000),
    _cap("google_gmail_list", "google", "gmail", ["read", "filter"], ["q", "maxResults", "includeSpamTrash"], max_limit=500),
    _cap("google_gmail_send", "google", "gmail", ["notify"], ["to", "subject", "body", "cc"], required=["to", "subject"]),
)


class CapabilityRegistry:
    """Read-only lookup table, built once and shared by reference."""

    def __init__(self, capabilities: Iterable[Capability]) -> None:
        by_id: Dict[str, Capability] = {}
        by_resource: Dict[Tuple[str, str], List[Capability]] = {}
        for cap in capabilities:
            if cap.id in by_id:
                raise SpecificationError(f"Duplicate capability id: {cap.id}", "capabilities", code="CAPABILITY_DUPLICATE")
            by_id[cap.id] = cap
            by_resource.setdefault((cap.integration_id, cap.resource), []).append(cap)
        self._by_id: Mapping[str, Capability] = MappingProxyType(by_id)
        self._by_resource: Mapping[Tuple[str, str], Tuple[Capability, ...]] = MappingProxyType(
            {key: tuple(items) for key, items in by_resource.items()}
        )

    def __len__(self) -> int:
        return len(self._by_id)

    def get(self, capability_id: str) -> Capability | None:
        return self._by_id.get(capability_id)

    def resolve(self, integration_id: str, resource: str, operation: str) -> Capability | None:
        for cap in self._by_resource.get((integration_id, resource), ()):
            if operation in cap.allowed_operations:
                return cap
        return None

    def for_integration(self, integration_id: str) -> list[Capability]:
        return [cap for cap in self._by_id.values() if cap.integration_id == integration_id]

    def all(self) -> list[Capability]:
        return list(self._by_id.values())


_DEFAULT_REGISTRY: CapabilityRegistry | None = None


def default_registry() -> CapabilityRegistry:
    global _DEFAULT_REGISTRY
    if _DEFAULT_REGISTRY is None:
        _DEFAULT_REGISTRY = CapabilityRegistry(DEFAULT_CAPABILITIES)
    return _DEFAULT_REGISTRY


def capability_from_dict(data: dict) -> Capability:
    if not isinstance(data, dict):
        raise SpecificationError("capability must be object", "$")
    for key in ("id", "integrationId", "resource"):
        if not isinstance(data.get(key), str) or not data.get(key):
            raise SpecificationError(f"capability.{key} must be non-empty string", f"$.{key}")
    ops = data.get("allowedOperations") or []
    unknown = [op for op in ops if op not in READ_OPERATIONS and op not in EFFECT_OPERATIONS]
    if unknown:
        raise SpecificationError("Unknown capability operation", "$.allowedOperations", {"operations": unknown})
    constraints = data.get("constraints") or {}
    return _cap(
        data["id"],
        data["integrationId"],
        data["resource"],
        ops,
        data.get("supportedFields") or [],
        max_limit=constraints.get("maxLimit"),
        required=constraints.get("requiredFilters") or [],
    )


def _is_missing(value: Any) -> bool:
    return value is None or (isinstance(value, str) and not value.strip())


def validate_input(capability: Capability, payload: dict) -> List[Issue]:
    errors: List[Issue] = []
    if not isinstance(payload, dict):
        return [issue("INPUT_INVALID", "input must be object", "input")]

    supported = set(capability.supported_fields)
    unknown = sorted(key for key in payload if key not in supported)
    for key in unknown:
        errors.append(
            issue(
                "INPUT_FIELD_UNSUPPORTED",
                f"Field '{key}' is not supported by {capability.id}",
                f"input.{key}",
                {"capability_id": capability.id, "supported_fields": list(capability.supported_fields)},
            )
        )

    for required in capability.constraints.required_filters:
        if _is_missing(payload.get(required)):
            errors.append(
                issue(
                    "INPUT_FILTER_REQUIRED",
                    f"Filter '{required}' is required by {capability.id}",
                    f"input.{required}",
                    {"capability_id": capability.id},
                )
            )

    max_limit = capability.constraints.max_limit
    if max_limit is not None:
        for key in LIMIT_FIELDS:
            value = payload.get(key)
            if isinstance(value, (int, float)) and not isinstance(value, bool) and value > max_limit:
                errors.append(
                    issue(
                        "INPUT_LIMIT_EXCEEDED",
                        f"'{key}' exceeds max limit {max_limit}",
                        f"input.{key}",
                        {"capability_id": capability.id, "max_limit": max_limit},
                    )
                )
    return errors
