from __future__ import annotations

from typing import Any, Dict, List, Optional

import psycopg2
import pytest
from cryptography.fernet import Fernet

from common.kv_cache import KvCacheError
from state.codec import encode_cache_value
from state.store import (
    CACHE_TTL_SECONDS,
    CachedStateStore,
    MemoryStateStore,
    PostgresStateStore,
    StateStoreError,
    build_state_store,
)


# --- Fake psycopg2 connection: understands the three statements the store issues ---

class _FakeCursor:
    def __init__(self, db: "_FakeDb") -> None:
        self._db = db
        self._result: Optional[tuple] = None

    def __enter__(self):
        return self

    def __exit__(self, exc_type, exc, tb):  # noqa: ARG002
        return False

    def execute(self, sql: str, params: tuple = ()) -> None:
        self._db.statements.append(sql)
        head = " ".join(sql.split()).upper()
        if head.startswith("CREATE TABLE"):
            self._db.created += 1
        elif head.startswith("SELECT"):
            (sid,) = params
            doc = self._db.rows.get(sid)
            self._result = (doc,) if doc is not None else None
        elif head.startswith("INSERT"):
            sid, json_adapter = params
            self._db.rows[sid] = json_adapter.adapted
        else:  # pragma: no cover - unexpected statement
            raise AssertionError(f"unexpected SQL: {sql}")

    def fetchone(self):
        return self._result


class _FakeConn:
    def __init__(self, db: "_FakeDb") -> None:
        self._db = db

    def __enter__(self):
        return self

    def __exit__(self, exc_type, exc, tb):  # noqa: ARG002
        if exc_type is None:
            self._db.commits += 1
        return False

    def cursor(self):
        return _FakeCursor(self._db)

    def close(self) -> None:
        self._db.closed += 1


class _FakeDb:
    def __init__(self) -> None:
        self.rows: Dict[str, Any] = {}
        self.statements: List[str] = []
        self.created = 0
        self.commits = 0
        self.closed = 0

    def connect(self):
        return _FakeConn(self)


class _FakeKv:
    def __init__(self) -> None:
        self.values: Dict[str, str] = {}
        self.ttls: Dict[str, Optional[int]] = {}
        self.fail_get = False
        self.fail_set = False
        self.fail_delete = False
        self.closed = False

    def get(self, key: str) -> Optional[str]:
        if self.fail_get:
            raise KvCacheError("down")
        return self.values.get(key)

    def set(self, key: str, value: str, *, ex: Optional[int] = None) -> None:
        if self.fail_set:
            raise KvCacheError("down")
        self.values[key] = value
        self.ttls[key] = ex

    def delete(self, key: str) -> int:
        if self.fail_delete:
            raise KvCacheError("down")
        return 1 if self.values.pop(key, None) is not None else 0

    def close(self) -> None:
        self.closed = True


def _doc(name: str = "Sam") -> Dict[str, Any]:
    return {
        "user": {"id": "s1", "displayName": name},
        "journals": [{"id": "j1", "date": "2025-01-01T10:00:00+00:00", "mood": "calm", "text": "day one"}],
        "streak": {"current": 2, "longest": 5, "lastCheckInDate": None},
    }


def test_postgres_read_unknown_session_returns_none():
    db = _FakeDb()
    store = PostgresStateStore(connect=db.connect)

    assert store.read("nobody") is None
    assert db.created == 1
    assert db.closed == 1


def test_postgres_write_then_read_roundtrip_and_schema_created_once():
    db = _FakeDb()
    store = PostgresStateStore(connect=db.connect)

    store.write("s1", _doc())
    assert store.read("s1") == _doc()
    assert db.created == 1
    assert any("ON CONFLICT (session_id)" in s for s in db.statements)


def test_postgres_second_write_wins():
    db = _FakeDb()
    store = PostgresStateStore(connect=db.connect)

    store.write("s1", _doc("first"))
    store.write("s1", _doc("second"))
    assert store.read("s1")["user"]["displayName"] == "second"


def test_postgres_errors_are_wrapped():
    def broken_connect():
        raise psycopg2.OperationalError("could not connect")

    store = PostgresStateStore(connect=broken_connect)
    with pytest.raises(StateStoreError):
        store.read("s1")
    with pytest.raises(StateStoreError):
        store.write("s1", _doc())


def test_memory_store_copies_documents():
    backing: Dict[str, Any] = {}
    store = MemoryStateStore(backing)
    doc = _doc()
    store.write("s1", doc)
    doc["user"]["displayName"] = "mutated"

    loaded = store.read("s1")
    assert loaded["user"]["displayName"] == "Sam"
    loaded["journals"].clear()
    assert store.read("s1")["journals"]


def test_cached_read_hit_skips_datastore():
    db = _FakeDb()
    kv = _FakeKv()
    kv.values["state:s1"] = encode_cache_value(_doc("cached"))
    store = CachedStateStore(PostgresStateStore(connect=db.connect), kv)

    assert store.read("s1")["user"]["displayName"] == "cached"
    assert db.statements == []


def test_cached_read_miss_populates_cache_with_ttl():
    db = _FakeDb()
    db.rows["s1"] = _doc()
    kv = _FakeKv()
    store = CachedStateStore(PostgresStateStore(connect=db.connect), kv)

    assert store.read("s1") == _doc()
    assert "state:s1" in kv.values
    assert kv.ttls["state:s1"] == CACHE_TTL_SECONDS


def test_cached_read_miss_for_unknown_session_does_not_cache():
    kv = _FakeKv()
    store = CachedStateStore(PostgresStateStore(connect=_FakeDb().connect), kv)

    assert store.read("nobody") is None
    assert kv.values == {}


def test_cache_failures_do_not_fail_operations():
    db = _FakeDb()
    kv = _FakeKv()
    kv.fail_get = True
    kv.fail_set = True
    store = CachedStateStore(PostgresStateStore(connect=db.connect), kv)

    store.write("s1", _doc())
    assert store.read("s1") == _doc()


def test_write_refreshes_encrypted_cache_entry():
    key = Fernet.generate_key()
    fernet = Fernet(key)
    db = _FakeDb()
    kv = _FakeKv()
    store = CachedStateStore(PostgresStateStore(connect=db.connect), kv, fernet=fernet)

    store.write("s1", _doc("first"))
    store.write("s1", _doc("second"))

    raw = kv.values["state:s1"]
    assert raw.startswith("fernet:")
    assert "second" not in raw
    # Served from the cache, decrypted
    db.rows.clear()
    assert store.read("s1")["user"]["displayName"] == "second"


def test_build_state_store_without_database_uses_memory(monkeypatch: pytest.MonkeyPatch):
    for name in ("POSTGRES_URL", "POSTGRES_PRISMA_URL", "POSTGRES_URL_NON_POOLING"):
        monkeypatch.delenv(name, raising=False)

    assert isinstance(build_state_store(), MemoryStateStore)


def test_build_state_store_wraps_cache_when_configured(monkeypatch: pytest.MonkeyPatch):
    monkeypatch.setenv("POSTGRES_URL", "postgresql://u:p@localhost/db")
    monkeypatch.setenv("KV_REST_API_URL", "https://kv.example.com")
    monkeypatch.setenv("KV_REST_API_TOKEN", "tok")
    monkeypatch.delenv("STATE_FERNET_KEY", raising=False)
    monkeypatch.delenv("PARAM_PREFIX", raising=False)

    store = build_state_store()
    assert isinstance(store, CachedStateStore)
    assert store.kind == "postgres"


def test_build_state_store_without_cache_is_plain_postgres(monkeypatch: pytest.MonkeyPatch):
    monkeypatch.setenv("POSTGRES_PRISMA_URL", "postgresql://u:p@localhost/db")
    monkeypatch.delenv("POSTGRES_URL", raising=False)
    monkeypatch.delenv("KV_REST_API_URL", raising=False)
    monkeypatch.delenv("KV_REST_API_TOKEN", raising=False)

    assert isinstance(build_state_store(), PostgresStateStore)


def test_failed_cache_refresh_invalidates_stale_entry():
    db = _FakeDb()
    kv = _FakeKv()
    store = CachedStateStore(PostgresStateStore(connect=db.connect), kv)

    store.write("s1", _doc("First"))
    kv.fail_set = True
    store.write("s1", _doc("Second"))

    assert "state:s1" not in kv.values
    assert store.read("s1")["user"]["displayName"] == "Second"


def test_failed_invalidation_does_not_fail_write():
    db = _FakeDb()
    kv = _FakeKv()
    kv.fail_set = True
    kv.fail_delete = True
    store = CachedStateStore(PostgresStateStore(connect=db.connect), kv)

    store.write("s1", _doc())
    assert db.rows["s1"] == _doc()


def test_closing_cached_store_closes_cache_client():
    kv = _FakeKv()
    store = CachedStateStore(PostgresStateStore(connect=_FakeDb().connect), kv)

    store.close()
    assert kv.closed
