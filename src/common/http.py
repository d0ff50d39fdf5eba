"""
Helpers for API Gateway proxy events (REST v1 and HTTP API v2 payloads).

Handlers receive the raw Lambda `event` dict and return the proxy response
shape `{statusCode, headers, body}`.
"""

from __future__ import annotations

import base64
import json
from typing import Any, Dict, Iterable, Optional


class BadRequest(ValueError):
    """Raised while parsing a request that should be answered with 400."""


def method_of(event: Dict[str, Any]) -> str:
    method = event.get("httpMethod")
    if not method:
        ctx = event.get("requestContext") or {}
        method = (ctx.get("http") or {}).get("method")
    return str(method or "GET").upper()


def query_param(event: Dict[str, Any], name: str) -> Optional[str]:
    params = event.get("queryStringParameters") or {}
    val = params.get(name) if isinstance(params, dict) else None
    return val if isinstance(val, str) and val != "" else None


def header(event: Dict[str, Any], name: str) -> Optional[str]:
    headers = event.get("headers") or {}
    if not isinstance(headers, dict):
        return None
    wanted = name.lower()
    for k, v in headers.items():
        if isinstance(k, str) and k.lower() == wanted:
            return v if isinstance(v, str) else None
    return None


def json_body(event: Dict[str, Any]) -> Any:
    """Decode the JSON request body. An absent body yields None."""
    raw = event.get("body")
    if raw is None or raw == "":
        return None
    if isinstance(raw, (dict, list)):
        return raw
    if event.get("isBase64Encoded"):
        try:
            raw = base64.b64decode(raw).decode("utf-8")
        except Exception as ex:
            raise BadRequest("body is not valid base64") from ex
    try:
        return json.loads(raw)
    except json.JSONDecodeError as ex:
        raise BadRequest("body is not valid JSON") from ex


def response(status: int, body: Any = None, *, headers: Optional[Dict[str, str]] = None) -> Dict[str, Any]:
    out_headers = {"Content-Type": "application/json"}
    if headers:
        out_headers.update(headers)
    return {
        "statusCode": status,
        "headers": out_headers,
        "body": json.dumps(body),
    }


def text_response(status: int, text: str) -> Dict[str, Any]:
    return {
        "statusCode": status,
        "headers": {"Content-Type": "text/plain; charset=utf-8"},
        "body": text,
    }


def error(status: int, message: str) -> Dict[str, Any]:
    return response(status, {"error": message})


def method_not_allowed(allowed: Iterable[str]) -> Dict[str, Any]:
    resp = text_response(405, "Method not allowed")
    resp["headers"]["Allow"] = ",".join(allowed)
    return resp


__all__ = [
    "BadRequest",
    "method_of",
    "query_param",
    "header",
    "json_body",
    "response",
    "text_response",
    "error",
    "method_not_allowed",
]
