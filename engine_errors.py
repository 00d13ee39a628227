"""Error taxonomy for the tool execution engine."""

from __future__ import annotations

from dataclasses import dataclass
from typing import Any, Dict


Issue = Dict[str, Any]


def issue(code: str, message: str, path: str | None = None, detail: dict | None = None) -> Issue:
    return {"code": code, "message": message, "path": path, "detail": detail}


@dataclass
class EngineError(Exception):
    code: str
    message: str
    path: str | None = None
    detail: dict | None = None

    retryable = False

    def __str__(self) -> str:  # pragma: no cover - simple formatting
        base = f"{self.code}: {self.message}"
        return f"{base} (path={self.path})" if self.path else base

    def to_issue(self) -> Issue:
        return issue(self.code, self.message, self.path, self.detail)


class SpecificationError(EngineError):
    """Malformed spec, unresolvable capability or cyclic workflow graph."""

    def __init__(self, message: str, path: str | None = None, detail: dict | None = None, code: str = "SPEC_INVALID") -> None:
        super().__init__(code, message, path, detail)


class ValidationError(EngineError):
    """Input violates a capability's field constraints."""

    def __init__(self, message: str, path: str | None = None, detail: dict | None = None, code: str = "INPUT_INVALID") -> None:
        super().__init__(code, message, path, detail)


class TransientIntegrationError(EngineError):
    retryable = True

    def __init__(self, message: str, path: str | None = None, detail: dict | None = None, code: str = "INTEGRATION_TRANSIENT") -> None:
        super().__init__(code, message, path, detail)


class PermanentIntegrationError(EngineError):
    def __init__(self, message: str, path: str | None = None, detail: dict | None = None, code: str = "INTEGRATION_PERMANENT") -> None:
        super().__init__(code, message, path, detail)


class SizeLimitError(EngineError):
    def __init__(self, message: str, path: str | None = None, detail: dict | None = None) -> None:
        super().__init__("JOIN_SIZE_LIMIT", message, path, detail)


class AuditPersistenceError(EngineError):
    """Never propagated past the audit logger."""

    def __init__(self, message: str, detail: dict | None = None) -> None:
        super().__init__("AUDIT_PERSIST_FAILED", message, None, detail)
