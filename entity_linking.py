"""Cross-system entity link candidates (exact, heuristic and domain rules)."""

from __future__ import annotations

import re
from dataclasses import dataclass
from typing import Any, Callable, Dict, List, Tuple


LinkCandidate = Dict[str, Any]
Matcher = Callable[[dict, str, dict, str], "str | None"]

EXACT_CONFIDENCE = 0.9
HEURISTIC_CONFIDENCE = 0.72

_ISSUE_KEY_RE = re.compile(r"\b([A-Z][A-Z0-9]{1,9}-\d+)\b")
_REPLY_PREFIX_RE = re.compile(r"^\s*((re|fw|fwd)\s*:\s*)+", re.IGNORECASE)
_MIN_TITLE_LEN = 4


def _integration(item: dict) -> str | None:
    value = item.get("sourceIntegration") or item.get("source_integration")
    return value if isinstance(value, str) else None


def _entity(item: dict) -> str | None:
    value = item.get("entity")
    return value if isinstance(value, str) else None


def _text(value: Any) -> str:
    if value is None:
        return ""
    return str(value).strip()


def _issue_keys(*texts: str) -> set[str]:
    keys: set[str] = set()
    for text in texts:
        keys.update(_ISSUE_KEY_RE.findall(text.upper()))
    return keys


def _cross_reference(code_item: dict, code_value: str, ticket_item: dict, ticket_value: str) -> str | None:
    ticket_keys = _issue_keys(ticket_value, _text(ticket_item.get("identifier")))
    if not ticket_keys:
        return None
    shared = sorted(_issue_keys(code_value) & ticket_keys)
    if shared:
        return f"Cross-system ID match ({shared[0]})"
    return None


def _issue_reference(message_item: dict, message_value: str, issue_item: dict, issue_value: str) -> str | None:
    text = message_value.lower()
    url = _text(issue_item.get("html_url") or issue_item.get("url")).lower()
    if url and url in text:
        return "Message links to issue"
    number = issue_item.get("number")
    if isinstance(number, int) and not isinstance(number, bool):
        if re.search(rf"(?<![\w/])#{number}\b", message_value):
            return f"Message references issue #{number}"
    return None


def _normalize_title(value: str) -> str:
    return " ".join(_REPLY_PREFIX_RE.sub("", value).casefold().split())


def _subject_match(email_item: dict, email_value: str, other_item: dict, other_value: str) -> str | None:
    subject = _normalize_title(email_value)
    title = _normalize_title(other_value)
    if len(subject) < _MIN_TITLE_LEN or len(title) < _MIN_TITLE_LEN:
        return None
    if subject == title or title in subject or subject in title:
        return "Email subject matches title"
    return None


@dataclass(frozen=True)
class DomainRule:
    first: str
    second: str
    confidence: float
    matcher: Matcher
    first_entity: str | None = None
    second_entity: str | None = None

    def orient(self, a: dict, b: dict) -> Tuple[bool, bool]:
        """Return (matches, swapped) for the pair (a, b)."""
        if self._fits(a, self.first, self.first_entity) and self._fits(b, self.second, self.second_entity):
            return True, False
        if self._fits(b, self.first, self.first_entity) and self._fits(a, self.second, self.second_entity):
            return True, True
        return False, False

    @staticmethod
    def _fits(item: dict, integration: str, entity_name: str | None) -> bool:
        if _integration(item) != integration:
            return False
        return entity_name is None or _entity(item) == entity_name


DOMAIN_RULES: Tuple[DomainRule, ...] = (
    DomainRule("github", "linear", 0.95, _cross_reference),
    DomainRule("slack", "github", 0.85, _issue_reference, first_entity="Message"),
    DomainRule("google", "linear", 0.8, _subject_match, first_entity="Email"),
    DomainRule("google", "notion", 0.8, _subject_match, first_entity="Email"),
)


def _candidate(source_id: Any, target_id: Any, confidence: float, reason: str) -> LinkCandidate:
    return {"source_id": source_id, "target_id": target_id, "confidence": confidence, "reason": reason}


def _item_id(item: dict, fallback: int) -> Any:
    item_id = item.get("id")
    return item_id if item_id is not None else fallback


def link_entities(
    source: List[dict],
    target: List[dict],
    source_field: str,
    target_field: str,
    rules: Tuple[DomainRule, ...] = DOMAIN_RULES,
) -> List[LinkCandidate]:
    """Propose links between two entity lists.

    O(len(source) * len(target)); callers pre-filter both sides. The result
    may hold several candidates for one pair; see dedupe_candidates().
    """
    candidates: List[LinkCandidate] = []
    for s_idx, s_item in enumerate(source or []):
        if not isinstance(s_item, dict):
            continue
        s_value = _text(s_item.get(source_field))
        if not s_value:
            continue
        s_lower = s_value.lower()
        s_id = _item_id(s_item, s_idx)
        for t_idx, t_item in enumerate(target or []):
            if not isinstance(t_item, dict):
                continue
            t_value = _text(t_item.get(target_field))
            if not t_value:
                continue
            t_lower = t_value.lower()
            t_id = _item_id(t_item, t_idx)

            if s_lower == t_lower:
                candidates.append(_candidate(s_id, t_id, EXACT_CONFIDENCE, "Exact match"))
                continue

            if s_lower in t_lower or t_lower in s_lower:
                candidates.append(_candidate(s_id, t_id, HEURISTIC_CONFIDENCE, "Heuristic match"))

            for rule in rules:
                fits, swapped = rule.orient(s_item, t_item)
                if not fits:
                    continue
                if swapped:
                    reason = rule.matcher(t_item, t_value, s_item, s_value)
                else:
                    reason = rule.matcher(s_item, s_value, t_item, t_value)
                if reason:
                    candidates.append(_candidate(s_id, t_id, rule.confidence, reason))

    # sorted() is stable, so equal confidences keep discovery order.
    return sorted(candidates, key=lambda c: c["confidence"], reverse=True)


def dedupe_candidates(candidates: List[LinkCandidate]) -> List[LinkCandidate]:
    """Keep the highest-confidence candidate per (source_id, target_id)."""
    best: Dict[Tuple[str, str], LinkCandidate] = {}
    order: List[Tuple[str, str]] = []
    for cand in candidates:
        key = (repr(cand.get("source_id")), repr(cand.get("target_id")))
        current = best.get(key)
        if current is None:
            best[key] = cand
            order.append(key)
        elif cand.get("confidence", 0) > current.get("confidence", 0):
            best[key] = cand
    kept = [best[key] for key in order]
    return sorted(kept, key=lambda c: c["confidence"], reverse=True)
