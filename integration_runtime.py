"""Integration runtime seam: invoke a capability, classify failures."""

from __future__ import annotations

from types import MappingProxyType
from typing import Any, Dict, Mapping

import httpx

from engine_errors import EngineError, PermanentIntegrationError, TransientIntegrationError


TRANSIENT_STATUSES = frozenset({408, 425, 429})


class IntegrationRuntime:
    """Resolves credentials and performs the actual call for one integration."""

    def invoke(self, integration_id: str, capability_id: str, payload: dict, timeout: float | None = None) -> dict:
        """Call the integration and return a {status, data} result.

        Implementations must bound the call by timeout (seconds) and raise a
        timeout error when it elapses; the executor does not cancel calls
        itself.
        """
        raise NotImplementedError


class IntegrationRuntimes:
    def __init__(self, runtimes: Mapping[str, IntegrationRuntime] | None = None) -> None:
        self._runtimes: Mapping[str, IntegrationRuntime] = MappingProxyType(dict(runtimes or {}))

    def get(self, integration_id: str) -> IntegrationRuntime | None:
        return self._runtimes.get(integration_id)

    def ids(self) -> list[str]:
        return sorted(self._runtimes)


def classify_status(status: int, message: str, detail: dict | None = None) -> EngineError:
    detail = {"status": status, **(detail or {})}
    if status >= 500 or status in TRANSIENT_STATUSES:
        return TransientIntegrationError(message, detail=detail, code="INTEGRATION_UNAVAILABLE")
    if status in (401, 403):
        return PermanentIntegrationError(message, detail=detail, code="INTEGRATION_UNAUTHORIZED")
    return PermanentIntegrationError(message, detail=detail, code="INTEGRATION_REJECTED")


def classify_error(exc: BaseException) -> EngineError:
    if isinstance(exc, EngineError):
        return exc
    if isinstance(exc, httpx.TimeoutException):
        return TransientIntegrationError(f"Integration call timed out: {exc}", code="INTEGRATION_TIMEOUT")
    if isinstance(exc, httpx.HTTPStatusError):
        return classify_status(exc.response.status_code, f"Integration returned {exc.response.status_code}")
    if isinstance(exc, httpx.TransportError):
        return TransientIntegrationError(f"Integration network error: {exc}", code="INTEGRATION_NETWORK")
    if isinstance(exc, TimeoutError):
        return TransientIntegrationError(f"Integration call timed out: {exc}", code="INTEGRATION_TIMEOUT")
    if isinstance(exc, ConnectionError):
        return TransientIntegrationError(f"Integration network error: {exc}", code="INTEGRATION_NETWORK")
    status = getattr(exc, "status_code", None) or getattr(exc, "status", None)
    if isinstance(status, int) and not isinstance(status, bool):
        return classify_status(status, str(exc) or f"Integration returned {status}")
    return PermanentIntegrationError(str(exc) or exc.__class__.__name__, detail={"type": exc.__class__.__name__}, code="INTEGRATION_ERROR")


def unwrap_result(result: Any) -> Any:
    """Return the data of a {status, data} result, raising on error statuses."""
    if not isinstance(result, dict) or "status" not in result:
        return result
    status = result.get("status")
    if isinstance(status, int) and not isinstance(status, bool) and status >= 400:
        raise classify_status(status, f"Integration returned {status}", {"data": result.get("data")})
    return result.get("data")


class HttpIntegrationRuntime(IntegrationRuntime):
    """Forwards capability calls to an HTTP gateway that holds the credentials."""

    def __init__(
        self,
        base_url: str,
        headers: Dict[str, str] | None = None,
        client: httpx.Client | None = None,
        default_timeout: float = 30.0,
    ) -> None:
        self._base_url = base_url.rstrip("/")
        self._headers = dict(headers or {})
        self._client = client
        self._default_timeout = default_timeout

    def invoke(self, integration_id: str, capability_id: str, payload: dict, timeout: float | None = None) -> dict:
        url = f"{self._base_url}/{integration_id}/{capability_id}"
        body = {"input": payload}
        effective = timeout if timeout is not None else self._default_timeout
        if self._client is not None:
            resp = self._client.post(url, json=body, headers=self._headers, timeout=effective)
        else:
            resp = httpx.post(url, json=body, headers=self._headers, timeout=effective)
        if resp.status_code >= 400:
            raise classify_status(resp.status_code, f"{integration_id} error: {resp.status_code} {resp.text[:200]}")
        data: Any = None
        if resp.content:
            try:
                data = resp.json()
            except ValueError as exc:
                raise PermanentIntegrationError("Integration returned invalid JSON", code="INTEGRATION_BAD_RESPONSE") from exc
        if isinstance(data, dict) and "data" in data:
            data = data["data"]
        return {"status": resp.status_code, "data": data}
