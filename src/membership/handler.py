from __future__ import annotations

import logging
from typing import Any, Dict, Optional

from common import config, http
from common.wordpress import (
    MembershipRegistration,
    WordPressApiError,
    WordPressClient,
    WordPressError,
)


log = logging.getLogger(__name__)

REQUIRED_FIELDS = ("displayName", "email", "password")


def _opt(body: Dict[str, Any], name: str) -> Optional[str]:
    val = body.get(name)
    return val if isinstance(val, str) else None


def _parse_registration(body: Any) -> Optional[MembershipRegistration]:
    if not isinstance(body, dict):
        return None
    if any(not isinstance(body.get(f), str) or not body.get(f) for f in REQUIRED_FIELDS):
        return None
    return MembershipRegistration(
        display_name=body["displayName"],
        email=body["email"],
        password=body["password"],
        state=_opt(body, "state"),
        emergency_name=_opt(body, "emergencyName"),
        emergency_phone=_opt(body, "emergencyPhone"),
        emergency_relation=_opt(body, "emergencyRelation"),
    )


def handle(event: Dict[str, Any], client: Optional[WordPressClient] = None) -> Dict[str, Any]:
    """
    Proxy a membership signup to the CMS.

    The CMS status and body are relayed verbatim on failure so the client can
    show the CMS's own message (e.g. "email already registered").
    """
    if http.method_of(event) != "POST":
        return http.method_not_allowed(["POST"])

    if client is None:
        settings = config.wordpress_settings()
        if settings is None:
            return http.text_response(500, "WordPress credentials are not configured.")
        client = WordPressClient(
            settings.base_url,
            settings.app_user,
            settings.app_password,
            level_id=settings.level_id,
        )

    try:
        body = http.json_body(event)
    except http.BadRequest:
        body = None
    reg = _parse_registration(body)
    if reg is None:
        return http.text_response(400, "displayName, email, and password are required")

    with client:
        try:
            text = client.register_member(reg)
        except WordPressApiError as ex:
            log.warning("WordPress rejected membership registration: HTTP %s", ex.status_code)
            return http.text_response(ex.status_code, ex.text or "Failed to create membership")
        except WordPressError:
            log.error("Failed to register membership", exc_info=True)
            return http.text_response(500, "Unable to register membership at this time")
    return http.text_response(200, text or "ok")


def lambda_handler(event: Dict[str, Any], context: Any) -> Dict[str, Any]:
    """AWS Lambda entry for `/api/register-membership`.

    Environment:
    - WORDPRESS_BASE_URL, WORDPRESS_APP_USER, WORDPRESS_APP_PASSWORD (or SSM
      `wordpress_app_password` under PARAM_PREFIX)
    - PMPRO_LEVEL_ID: membership level (default "1")
    """
    return handle(event)
