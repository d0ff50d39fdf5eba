from __future__ import annotations

from dataclasses import dataclass
from typing import Any, Dict, Optional

import httpx


REGISTER_MEMBER_PATH = "/wp-json/penda/v1/register-member"


class WordPressError(RuntimeError):
    """Base error for the WordPress membership client."""


class WordPressApiError(WordPressError):
    """The CMS answered with a non-2xx status; status and body are relayed."""

    def __init__(self, status_code: int, text: str) -> None:
        super().__init__(f"HTTP {status_code} from WordPress: {text[:200]}")
        self.status_code = status_code
        self.text = text


@dataclass(frozen=True)
class MembershipRegistration:
    display_name: str
    email: str
    password: str
    state: Optional[str] = None
    emergency_name: Optional[str] = None
    emergency_phone: Optional[str] = None
    emergency_relation: Optional[str] = None

    def to_payload(self, level_id: str) -> Dict[str, Any]:
        return {
            "displayName": self.display_name,
            "email": self.email,
            "password": self.password,
            "state": self.state,
            "emergencyName": self.emergency_name,
            "emergencyPhone": self.emergency_phone,
            "emergencyRelation": self.emergency_relation,
            "levelId": level_id,
        }


class WordPressClient:
    """
    Client for the membership-registration REST route of a WordPress site
    running Paid Memberships Pro.

    Authenticates with an application password over HTTP basic auth. Signup
    fields are forwarded as JSON together with the membership level id.
    """

    def __init__(
        self,
        base_url: str,
        app_user: str,
        app_password: str,
        *,
        level_id: str = "1",
        timeout: float = 15.0,
        client: Optional[httpx.Client] = None,
    ) -> None:
        if not base_url:
            raise ValueError("base_url is required")
        self._url = base_url.rstrip("/") + REGISTER_MEMBER_PATH
        self._auth = httpx.BasicAuth(app_user, app_password)
        self._level_id = level_id
        self._owns_client = client is None
        self._client = client or httpx.Client(timeout=timeout)

    def close(self) -> None:
        if self._owns_client:
            self._client.close()

    def __enter__(self) -> "WordPressClient":
        return self

    def __exit__(self, exc_type, exc, tb) -> None:
        self.close()

    def register_member(self, reg: MembershipRegistration) -> str:
        """Create the member; returns the CMS response text."""
        try:
            resp = self._client.post(
                self._url,
                json=reg.to_payload(self._level_id),
                auth=self._auth,
            )
        except (httpx.TimeoutException, httpx.TransportError) as exc:
            raise WordPressError("Membership registration request failed") from exc

        if resp.is_success:
            return resp.text
        raise WordPressApiError(resp.status_code, resp.text)


__all__ = [
    "MembershipRegistration",
    "WordPressClient",
    "WordPressError",
    "WordPressApiError",
]
