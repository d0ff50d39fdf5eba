from __future__ import annotations

import logging
from typing import Any, Dict, Optional, Tuple

import httpx
from pydantic import ValidationError

from state.models import RemoteFlags


log = logging.getLogger(__name__)


class SyncError(RuntimeError):
    """Base error for the state API client."""


class SyncApiError(SyncError):
    """The API answered with a non-2xx status or an unexpected body."""

    def __init__(self, status_code: int, text: str) -> None:
        super().__init__(f"HTTP {status_code} from state API: {text[:200]}")
        self.status_code = status_code
        self.text = text


def _parse_flags(raw: Any) -> RemoteFlags:
    if not isinstance(raw, dict):
        return RemoteFlags()
    try:
        return RemoteFlags.model_validate(raw)
    except ValidationError:
        log.warning("Ignoring malformed flags from state API: %r", raw)
        return RemoteFlags()


class StateApiClient:
    """
    HTTP client for the application's own API routes.

    Notes
    - One attempt per call; no retries or backoff. Callers decide how to
      degrade (the synchronizer logs and falls back to local state).
    - Transport failures raise `SyncError`; non-2xx answers raise `SyncApiError`.
    """

    def __init__(
        self,
        base_url: str,
        *,
        timeout: float = 10.0,
        client: Optional[httpx.Client] = None,
    ) -> None:
        if not base_url:
            raise ValueError("base_url is required")
        self._owns_client = client is None
        self._client = client or httpx.Client(base_url=base_url.rstrip("/"), timeout=timeout)

    def close(self) -> None:
        if self._owns_client:
            self._client.close()

    def __enter__(self) -> "StateApiClient":
        return self

    def __exit__(self, exc_type, exc, tb) -> None:
        self.close()

    # --------------- Public API ---------------
    def load_state(self, session_id: str) -> Tuple[Optional[Dict[str, Any]], RemoteFlags]:
        """GET the persisted document and remote flags; state is None when unknown."""
        data = self._json(self._send("GET", "/api/state", params={"sessionId": session_id}))
        if not isinstance(data, dict):
            raise SyncApiError(200, "Malformed state response")
        state = data.get("state")
        if state is not None and not isinstance(state, dict):
            raise SyncApiError(200, "Malformed state document")
        return state, _parse_flags(data.get("flags"))

    def save_state(self, session_id: str, doc: Dict[str, Any]) -> None:
        self._send("POST", "/api/state", json={"sessionId": session_id, "state": doc})

    def upload_avatar(self, data_url: str) -> Optional[str]:
        data = self._json(self._send("POST", "/api/upload-avatar", json={"dataUrl": data_url}))
        url = data.get("url") if isinstance(data, dict) else None
        return url if isinstance(url, str) and url else None

    def record_session_analytics(self, payload: Dict[str, Any]) -> None:
        self._send("POST", "/api/session-analytics", json=payload)

    def register_membership(self, payload: Dict[str, Any]) -> str:
        return self._send("POST", "/api/register-membership", json=payload).text

    # --------------- Internal ---------------
    def _send(self, method: str, path: str, **kwargs: Any) -> httpx.Response:
        try:
            resp = self._client.request(method, path, **kwargs)
        except (httpx.TimeoutException, httpx.TransportError) as exc:
            raise SyncError(f"{method} {path} failed") from exc
        if not resp.is_success:
            raise SyncApiError(resp.status_code, resp.text)
        return resp

    @staticmethod
    def _json(resp: httpx.Response) -> Any:
        try:
            return resp.json()
        except Exception as exc:  # JSON decode error
            raise SyncApiError(resp.status_code, "Failed to parse JSON from state API") from exc


__all__ = [
    "StateApiClient",
    "SyncError",
    "SyncApiError",
]
