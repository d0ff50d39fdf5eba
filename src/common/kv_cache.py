from __future__ import annotations

from typing import Any, Dict, List, Optional

import httpx


class KvCacheError(RuntimeError):
    """Base error for the key-value cache client."""


class KvCacheApiError(KvCacheError):
    """REST endpoint returned an error payload or unexpected structure."""


class KvCacheClient:
    """
    Minimal client for a Redis-compatible key-value REST API (Upstash / Vercel KV).

    Notes
    - Commands are POSTed as a JSON array, e.g. ["SET", key, value, "EX", "1800"],
      and the endpoint answers `{ "result": ... }` or `{ "error": "..." }`.
    - Authenticates with a bearer token.
    - No retries: callers treat the cache as best-effort.
    """

    def __init__(
        self,
        url: str,
        token: str,
        *,
        timeout: float = 5.0,
        client: Optional[httpx.Client] = None,
    ) -> None:
        if not url:
            raise ValueError("url is required")
        if not token:
            raise ValueError("token is required")
        self._owns_client = client is None
        self._client = client or httpx.Client(
            base_url=url.rstrip("/"),
            timeout=timeout,
            headers={"Authorization": f"Bearer {token}"},
        )

    def close(self) -> None:
        if self._owns_client:
            self._client.close()

    def __enter__(self) -> "KvCacheClient":
        return self

    def __exit__(self, exc_type, exc, tb) -> None:
        self.close()

    # --------------- Public API ---------------
    def get(self, key: str) -> Optional[str]:
        result = self._command(["GET", key])
        if result is None:
            return None
        return result if isinstance(result, str) else str(result)

    def set(self, key: str, value: str, *, ex: Optional[int] = None) -> None:
        cmd: List[Any] = ["SET", key, value]
        if ex is not None:
            cmd += ["EX", str(int(ex))]
        result = self._command(cmd)
        if result != "OK":
            raise KvCacheApiError(f"Unexpected SET result: {result!r}")

    def delete(self, key: str) -> int:
        result = self._command(["DEL", key])
        return int(result or 0)

    # --------------- Internal ---------------
    def _command(self, cmd: List[Any]) -> Any:
        try:
            resp = self._client.post("/", json=cmd)
        except (httpx.TimeoutException, httpx.TransportError) as exc:
            raise KvCacheError(f"{cmd[0]} request failed") from exc

        try:
            data: Dict[str, Any] = resp.json()
        except Exception as exc:
            raise KvCacheApiError(
                f"HTTP {resp.status_code} from KV with non-JSON body: {resp.text[:200]}"
            ) from exc

        if not isinstance(data, dict):
            raise KvCacheApiError("Malformed response from KV REST API")
        if resp.status_code != 200 or "error" in data:
            raise KvCacheApiError(f"HTTP {resp.status_code} from KV: {data.get('error')}")
        return data.get("result")


__all__ = [
    "KvCacheClient",
    "KvCacheError",
    "KvCacheApiError",
]
