"""HTTP client a device uses to reach the sync server."""

from __future__ import annotations

import logging
from typing import Any, Optional

import httpx

from .errors import HttpStatusError, NetworkError, RequestTimeoutError
from .settings import settings

log = logging.getLogger(__name__)

SYNC_PATH = "/api/v1/sync"
FAULTS_PATH = "/api/v1/faults"
TOKEN_PATH = "/api/v1/auth/token"


class ApiClient:
    """Thin wrapper over :class:`httpx.Client` with a hard per-request timeout.

    Failures are raised as three distinct errors: :class:`RequestTimeoutError`
    when the timeout fires, :class:`NetworkError` when no response arrived
    for any other reason, and :class:`HttpStatusError` for non-2xx answers.
    """

    def __init__(
        self,
        base_url: str = settings.RACESYNC_API_BASE_URL,
        *,
        timeout: float = settings.RACESYNC_FETCH_TIMEOUT,
        token: Optional[str] = None,
        transport: Optional[httpx.BaseTransport] = None,
    ) -> None:
        self.timeout = timeout
        self.token = token
        self._http = httpx.Client(base_url=base_url, timeout=timeout, transport=transport)

    def close(self) -> None:
        self._http.close()

    def __enter__(self) -> "ApiClient":
        return self

    def __exit__(self, *exc) -> None:
        self.close()

    def _headers(self) -> dict[str, str]:
        return {"Authorization": f"Bearer {self.token}"} if self.token else {}

    def request(
        self,
        method: str,
        path: str,
        *,
        params: Optional[dict[str, Any]] = None,
        json: Optional[dict[str, Any]] = None,
    ) -> Any:
        try:
            response = self._http.request(method, path, params=params, json=json, headers=self._headers())
        except httpx.TimeoutException:
            raise RequestTimeoutError(path, self.timeout)
        except httpx.TransportError as exc:
            raise NetworkError(f"{method} {path} failed: {exc}") from exc

        if response.is_success:
            return response.json() if response.content else None

        message, expired = "", False
        try:
            body = response.json()
        except ValueError:
            body = None
        if isinstance(body, dict):
            message = str(body.get("error") or "")
            expired = body.get("expired") is True
        raise HttpStatusError(response.status_code, message or f"HTTP {response.status_code}", expired=expired)

    def get(self, path: str, params: Optional[dict[str, Any]] = None) -> Any:
        return self.request("GET", path, params=params)

    def post(self, path: str, json: dict[str, Any], params: Optional[dict[str, Any]] = None) -> Any:
        return self.request("POST", path, params=params, json=json)

    def delete(self, path: str, json: dict[str, Any], params: Optional[dict[str, Any]] = None) -> Any:
        return self.request("DELETE", path, params=params, json=json)

    def authenticate(self, pin: str, role: Optional[str] = None) -> str:
        """Exchange a PIN for a token and use it for every later request."""
        payload: dict[str, Any] = {"pin": pin}
        if role:
            payload["role"] = role
        data = self.post(TOKEN_PATH, payload)
        self.token = data["token"]
        log.info("device_authenticated", extra={"role": data.get("role")})
        return self.token
