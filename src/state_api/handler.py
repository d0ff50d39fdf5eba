from __future__ import annotations

import logging
from typing import Any, Dict, Optional, Tuple

from botocore.exceptions import BotoCoreError, ClientError
from pydantic import ValidationError

from common import config, http
from common.flags import EdgeConfigClient, read_flags
from state.models import PersistedState, RemoteFlags
from state.store import StateStoreError, build_state_store


log = logging.getLogger(__name__)

ALLOWED_METHODS = ("GET", "POST", "PUT")


def _session_id(event: Dict[str, Any], body: Any) -> Optional[str]:
    # `userId` is the key name used by the older PUT-based client
    sid = http.query_param(event, "sessionId") or http.query_param(event, "userId")
    if sid is None and isinstance(body, dict):
        for name in ("sessionId", "userId"):
            val = body.get(name)
            if isinstance(val, str) and val:
                return val
    return sid


def _state_payload(method: str, body: Any) -> Optional[Dict[str, Any]]:
    """Extract the state document from a write request.

    POST carries `{sessionId, state}`. PUT carries the whole document as the
    body, or `{state}` like POST.
    """
    if not isinstance(body, dict):
        return None
    if "state" in body:
        state = body.get("state")
        return state if isinstance(state, dict) else None
    if method == "PUT":
        doc = {k: v for k, v in body.items() if k not in ("sessionId", "userId")}
        return doc or None
    return None


def _validate(doc: Dict[str, Any]) -> Optional[str]:
    try:
        PersistedState.model_validate(doc)
    except ValidationError as ve:
        return f"invalid state payload: {ve.error_count()} validation error(s)"
    return None


def _flags() -> RemoteFlags:
    url = config.edge_config_url()
    if not url:
        return RemoteFlags()
    try:
        client = EdgeConfigClient(url)
    except ValueError:
        log.warning("EDGE_CONFIG is not a valid connection string; using default flags")
        return RemoteFlags()
    with client:
        return read_flags(client)


def load_state(store, session_id: str) -> Tuple[Optional[Dict[str, Any]], RemoteFlags]:
    return store.read(session_id), _flags()


def save_state(store, session_id: str, doc: Dict[str, Any]) -> None:
    """Replace the session's document wholesale (last write wins)."""
    store.write(session_id, doc)


def handle(event: Dict[str, Any], store=None) -> Dict[str, Any]:
    """
    Serve `/api/state`.

    - GET  ?sessionId=<id>          → 200 {state, flags}; state is null when unknown
    - POST {sessionId, state}       → 200 {ok: true}
    - PUT  ?sessionId=<id> <document> → 200 {ok: true}

    Missing identifiers or payloads answer 400; downstream failures answer a
    generic 500 and are not retried.
    """
    method = http.method_of(event)
    if method not in ALLOWED_METHODS:
        return http.method_not_allowed(ALLOWED_METHODS)

    try:
        body = http.json_body(event) if method != "GET" else None
    except http.BadRequest as ex:
        return http.error(400, str(ex))

    session_id = _session_id(event, body)
    if not session_id:
        return http.error(400, "sessionId required")

    if store is not None:
        return _serve(method, session_id, body, store)

    try:
        store = build_state_store()
    except (RuntimeError, ValueError, BotoCoreError, ClientError):
        log.error("State store configuration failed", exc_info=True)
        return http.error(500, "State store unavailable")
    try:
        return _serve(method, session_id, body, store)
    finally:
        store.close()


def _serve(method: str, session_id: str, body: Any, store) -> Dict[str, Any]:
    if method == "GET":
        try:
            state, flags = load_state(store, session_id)
        except StateStoreError:
            log.error("State load failed", exc_info=True)
            return http.error(500, "Unable to load state")
        return http.response(200, {"state": state, "flags": flags.to_wire()})

    doc = _state_payload(method, body)
    if doc is None:
        return http.error(400, "state payload missing")
    problem = _validate(doc)
    if problem:
        return http.error(400, problem)

    try:
        save_state(store, session_id, doc)
    except StateStoreError:
        log.error("State save failed", exc_info=True)
        return http.error(500, "Unable to save state")

    if store.kind == "memory":
        return http.response(200, {"ok": True, "stored": "memory"})
    return http.response(200, {"ok": True})


def lambda_handler(event: Dict[str, Any], context: Any) -> Dict[str, Any]:
    """AWS Lambda entry for `/api/state` behind API Gateway.

    Environment:
    - POSTGRES_URL (or POSTGRES_PRISMA_URL / POSTGRES_URL_NON_POOLING); absent → in-memory store
    - KV_REST_API_URL, KV_REST_API_TOKEN: optional cache-aside layer
    - STATE_FERNET_KEY: optional encryption of cached documents
    - EDGE_CONFIG: optional feature-flag store
    """
    return handle(event)
