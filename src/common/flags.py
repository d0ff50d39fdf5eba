from __future__ import annotations

import logging
from typing import Any, Optional
from urllib.parse import parse_qs, urlsplit

import httpx

from state.models import RemoteFlags


log = logging.getLogger(__name__)

_MISSING = object()


class FlagServiceError(RuntimeError):
    """Feature-flag store unreachable or returned an unexpected response."""


class EdgeConfigClient:
    """
    Read-only client for a Vercel Edge Config store.

    The connection string has the form
    `https://edge-config.vercel.com/<config-id>?token=<read-token>`; single
    items are read from `<config-id>/item/<key>`.
    """

    def __init__(
        self,
        connection_string: str,
        *,
        timeout: float = 3.0,
        client: Optional[httpx.Client] = None,
    ) -> None:
        parts = urlsplit(connection_string)
        token = (parse_qs(parts.query).get("token") or [None])[0]
        if not parts.scheme or not parts.netloc or not token:
            raise ValueError("connection string must be a URL carrying a token")
        self._base = f"{parts.scheme}://{parts.netloc}{parts.path.rstrip('/')}"
        self._token = token
        self._owns_client = client is None
        self._client = client or httpx.Client(timeout=timeout)

    def close(self) -> None:
        if self._owns_client:
            self._client.close()

    def __enter__(self) -> "EdgeConfigClient":
        return self

    def __exit__(self, exc_type, exc, tb) -> None:
        self.close()

    def get(self, key: str, default: Any = None) -> Any:
        """Return the item value, or `default` when the key is not defined."""
        try:
            resp = self._client.get(
                f"{self._base}/item/{key}",
                headers={"Authorization": f"Bearer {self._token}"},
            )
        except (httpx.TimeoutException, httpx.TransportError) as exc:
            raise FlagServiceError(f"Edge Config request for {key!r} failed") from exc

        if resp.status_code == 404:
            return default
        if resp.status_code != 200:
            raise FlagServiceError(f"HTTP {resp.status_code} from Edge Config: {resp.text[:200]}")
        try:
            return resp.json()
        except Exception as exc:
            raise FlagServiceError("Failed to parse JSON from Edge Config") from exc


def read_flags(client: Optional[EdgeConfigClient]) -> RemoteFlags:
    """Read remote flags, degrading to defaults when the store is absent or down."""
    if client is None:
        return RemoteFlags()
    try:
        maintenance = client.get("maintenance_mode", _MISSING)
        analytics = client.get("analytics_enabled", _MISSING)
    except FlagServiceError:
        log.warning("Edge config unavailable", exc_info=True)
        return RemoteFlags()
    return RemoteFlags(
        maintenance_mode=maintenance is not _MISSING and bool(maintenance),
        analytics_enabled=analytics is not False,
    )


def analytics_enabled(client: Optional[EdgeConfigClient]) -> bool:
    if client is None:
        return True
    try:
        return client.get("analytics_enabled", True) is not False
    except FlagServiceError:
        log.warning("Edge config unavailable; assuming analytics enabled", exc_info=True)
        return True


__all__ = [
    "EdgeConfigClient",
    "FlagServiceError",
    "read_flags",
    "analytics_enabled",
]
