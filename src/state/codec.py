from __future__ import annotations

import json
from typing import Any, Dict, Optional

from cryptography.fernet import Fernet, InvalidToken


# Prefix marking a Fernet-encrypted cache value; plain values are bare JSON
ENCRYPTED_PREFIX = "fernet:"


def to_fernet(key: str | bytes) -> Fernet:
    """Construct a Fernet instance from a user-provided key.

    The key must be a URL-safe base64-encoded 32-byte key (str or bytes),
    as returned by `cryptography.fernet.Fernet.generate_key()`.
    """
    if isinstance(key, str):
        key_bytes = key.encode("utf-8")
    else:
        key_bytes = key
    return Fernet(key_bytes)


def dump_document(doc: Dict[str, Any]) -> str:
    # Deterministic JSON: stable key order, no extra whitespace
    return json.dumps(doc, separators=(",", ":"), sort_keys=True)


def load_document(raw: str | bytes) -> Optional[Dict[str, Any]]:
    """Parse a stored JSON document. `null` yields None; non-objects are rejected."""
    if isinstance(raw, bytes):
        raw = raw.decode("utf-8")
    data = json.loads(raw)
    if data is None:
        return None
    if not isinstance(data, dict):
        raise ValueError("Stored state is not a JSON object")
    return data


def encode_cache_value(doc: Dict[str, Any], fernet: Optional[Fernet] = None) -> str:
    """Serialize a state document for the cache, encrypting it when a key is configured."""
    payload = dump_document(doc)
    if fernet is None:
        return payload
    token = fernet.encrypt(payload.encode("utf-8"))
    return ENCRYPTED_PREFIX + token.decode("ascii")


def decode_cache_value(raw: Any, fernet: Optional[Fernet] = None) -> Optional[Dict[str, Any]]:
    """Inverse of `encode_cache_value`.

    Raises ValueError when the value is encrypted but no key (or the wrong key)
    is available, or when the payload is not a JSON object.
    """
    if raw is None:
        return None
    if isinstance(raw, dict):
        # Some REST cache clients hand back already-decoded JSON
        return raw
    if isinstance(raw, bytes):
        raw = raw.decode("utf-8")
    if not isinstance(raw, str):
        raise ValueError(f"Unexpected cache value type: {type(raw).__name__}")

    if raw.startswith(ENCRYPTED_PREFIX):
        if fernet is None:
            raise ValueError("Encrypted cache value but no Fernet key configured")
        try:
            raw = fernet.decrypt(raw[len(ENCRYPTED_PREFIX):].encode("ascii")).decode("utf-8")
        except InvalidToken as ex:
            raise ValueError("Failed to decrypt cached state: invalid Fernet token") from ex

    try:
        return load_document(raw)
    except json.JSONDecodeError as ex:
        raise ValueError("Failed to parse cached state JSON") from ex
