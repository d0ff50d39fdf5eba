from __future__ import annotations

import logging
from typing import Any, Dict, Optional

from pydantic import ValidationError

from common import config, http
from common.flags import EdgeConfigClient, analytics_enabled
from state.analytics import AnalyticsStoreError, PostgresAnalyticsStore
from state.models import SessionAnalytics


log = logging.getLogger(__name__)

# Country headers set by the edge in front of the API, first match wins
REGION_HEADERS = ("x-vercel-ip-country", "cloudfront-viewer-country")


def _region(event: Dict[str, Any]) -> Optional[str]:
    for name in REGION_HEADERS:
        val = http.header(event, name)
        if val:
            return val
    return None


def _analytics_flag() -> bool:
    url = config.edge_config_url()
    if not url:
        return True
    try:
        client = EdgeConfigClient(url)
    except ValueError:
        log.warning("EDGE_CONFIG is not a valid connection string; analytics stays enabled")
        return True
    with client:
        return analytics_enabled(client)


def handle(event: Dict[str, Any], store: Optional[PostgresAnalyticsStore] = None) -> Dict[str, Any]:
    if http.method_of(event) != "POST":
        return http.method_not_allowed(["POST"])

    if store is None:
        if not config.postgres_url():
            # Keep clients happy without a database; the record is simply dropped
            return http.response(200, {"ok": True, "stored": "memory", "reason": "database unavailable"})
        store = PostgresAnalyticsStore.from_env()

    if not _analytics_flag():
        return http.response(200, {"skipped": True})

    try:
        body = http.json_body(event)
    except http.BadRequest:
        return http.error(400, "missing fields")
    if not isinstance(body, dict):
        return http.error(400, "missing fields")

    try:
        rec = SessionAnalytics.model_validate({**body, "region": _region(event)})
    except ValidationError:
        return http.error(400, "missing fields")

    try:
        store.record(rec)
    except AnalyticsStoreError:
        log.error("Analytics insert failed", exc_info=True)
        return http.error(500, "Unable to record analytics")
    return http.response(200, {"ok": True})


def lambda_handler(event: Dict[str, Any], context: Any) -> Dict[str, Any]:
    """AWS Lambda entry for `/api/session-analytics` (fire-and-forget session durations)."""
    return handle(event)
