from __future__ import annotations

import copy
import logging
from typing import Any, Callable, Dict, Optional

import psycopg2
from psycopg2.extras import Json

from common import config
from common.kv_cache import KvCacheClient, KvCacheError
from .codec import decode_cache_value, encode_cache_value, load_document, to_fernet


log = logging.getLogger(__name__)

STATE_TABLE = "user_state"
CACHE_TTL_SECONDS = 1800
CACHE_KEY_PREFIX = "state:"

Document = Dict[str, Any]

# Process-local fallback used when no datastore is configured. Survives only as
# long as the warm Lambda container; never meant for production traffic.
_MEMORY_STATE: Dict[str, Document] = {}


class StateStoreError(RuntimeError):
    """Durable datastore failed to read or write a state document."""


def connect_factory(dsn: str, *, connect_timeout: int = 10) -> Callable[[], Any]:
    def _connect():
        return psycopg2.connect(dsn, connect_timeout=connect_timeout)

    return _connect


class MemoryStateStore:
    """Dict-backed store; documents are copied in and out to avoid aliasing."""

    kind = "memory"

    def __init__(self, backing: Optional[Dict[str, Document]] = None) -> None:
        self._docs = _MEMORY_STATE if backing is None else backing

    def read(self, session_id: str) -> Optional[Document]:
        doc = self._docs.get(session_id)
        return copy.deepcopy(doc) if doc is not None else None

    def write(self, session_id: str, doc: Document) -> None:
        self._docs[session_id] = copy.deepcopy(doc)

    def close(self) -> None:
        pass


class PostgresStateStore:
    """
    Relational persistence: one row per session identifier holding the whole
    state document as jsonb.

    - `read()` returns None when no row exists for the session.
    - `write()` upserts the row, replacing the previous document wholesale.
      Concurrent writers race and the last write wins; there is no locking.
    - The table is created on first use by each store instance.
    """

    kind = "postgres"

    def __init__(self, *, connect: Callable[[], Any], table: str = STATE_TABLE) -> None:
        self._connect = connect
        self._table = table
        self._schema_ready = False

    @classmethod
    def from_env(cls) -> "PostgresStateStore":
        dsn = config._require(config.postgres_url(), " or ".join(config.ENV_POSTGRES_URLS))
        return cls(connect=connect_factory(dsn))

    def _ensure_schema(self, cur) -> None:
        if self._schema_ready:
            return
        cur.execute(
            f"""
            CREATE TABLE IF NOT EXISTS "{self._table}" (
              session_id text PRIMARY KEY,
              data jsonb NOT NULL,
              updated_at timestamptz DEFAULT now()
            )
            """
        )
        self._schema_ready = True

    def read(self, session_id: str) -> Optional[Document]:
        try:
            conn = self._connect()
            try:
                with conn, conn.cursor() as cur:
                    self._ensure_schema(cur)
                    cur.execute(
                        f'SELECT data FROM "{self._table}" WHERE session_id = %s LIMIT 1',
                        (session_id,),
                    )
                    row = cur.fetchone()
            finally:
                conn.close()
        except psycopg2.Error as ex:
            raise StateStoreError(f"Failed to read state for session {session_id}") from ex

        if row is None:
            return None
        data = row[0]
        # jsonb is decoded by psycopg2; a text column would hand back a string
        if isinstance(data, str):
            return load_document(data)
        return data

    def write(self, session_id: str, doc: Document) -> None:
        try:
            conn = self._connect()
            try:
                with conn, conn.cursor() as cur:
                    self._ensure_schema(cur)
                    cur.execute(
                        f"""
                        INSERT INTO "{self._table}" (session_id, data)
                        VALUES (%s, %s)
                        ON CONFLICT (session_id)
                        DO UPDATE SET data = EXCLUDED.data, updated_at = now()
                        """,
                        (session_id, Json(doc)),
                    )
            finally:
                conn.close()
        except psycopg2.Error as ex:
            raise StateStoreError(f"Failed to write state for session {session_id}") from ex

    def close(self) -> None:
        pass


class CachedStateStore:
    """
    Cache-aside wrapper around a durable store.

    Reads check `state:<session_id>` in the key-value cache first and fall back
    to the durable store on a miss, populating the cache with a fixed expiry.
    Writes go to the durable store, then refresh the cache entry; when the
    refresh fails the entry is deleted instead. Cache errors are logged and
    never fail the operation.
    """

    def __init__(
        self,
        durable,
        cache: KvCacheClient,
        *,
        fernet=None,
        ttl_seconds: int = CACHE_TTL_SECONDS,
    ) -> None:
        self._durable = durable
        self._cache = cache
        self._fernet = fernet
        self._ttl = ttl_seconds
        self.kind = durable.kind

    @staticmethod
    def cache_key(session_id: str) -> str:
        return f"{CACHE_KEY_PREFIX}{session_id}"

    def read(self, session_id: str) -> Optional[Document]:
        key = self.cache_key(session_id)
        try:
            cached = decode_cache_value(self._cache.get(key), self._fernet)
        except (KvCacheError, ValueError):
            log.warning("State cache read failed for %s; falling back to datastore", key, exc_info=True)
            cached = None
        if cached is not None:
            return cached

        doc = self._durable.read(session_id)
        if doc is not None:
            self._refresh(key, doc)
        return doc

    def write(self, session_id: str, doc: Document) -> None:
        self._durable.write(session_id, doc)
        self._refresh(self.cache_key(session_id), doc)

    def close(self) -> None:
        self._cache.close()
        self._durable.close()

    def _refresh(self, key: str, doc: Document) -> None:
        try:
            self._cache.set(key, encode_cache_value(doc, self._fernet), ex=self._ttl)
        except KvCacheError:
            log.warning("State cache refresh failed for %s; invalidating", key, exc_info=True)
        else:
            return
        # A stale entry would shadow the newer durable row until it expires
        try:
            self._cache.delete(key)
        except KvCacheError:
            log.error("State cache invalidation failed for %s", key, exc_info=True)


def build_state_store():
    """Assemble the store for this invocation from the environment.

    No datastore URL configured → process-local memory store. A configured
    cache wraps the durable store cache-aside; `STATE_FERNET_KEY` encrypts the
    cached copies.
    """
    if not config.postgres_url():
        return MemoryStateStore()

    store = PostgresStateStore.from_env()
    kv = config.kv_settings()
    if kv is None:
        return store
    key = config.fernet_key()
    return CachedStateStore(
        store,
        KvCacheClient(kv.url, kv.token),
        fernet=to_fernet(key) if key else None,
    )


__all__ = [
    "CACHE_TTL_SECONDS",
    "STATE_TABLE",
    "CachedStateStore",
    "MemoryStateStore",
    "PostgresStateStore",
    "StateStoreError",
    "build_state_store",
    "connect_factory",
]
