from __future__ import annotations

import base64
import json
from datetime import UTC, datetime, timedelta
from typing import Any, Dict, List

import httpx
import pytest

from state.store import MemoryStateStore
from sync import LocalStateFile, StateApiClient, StateSynchronizer, SyncApiError


class _Clock:
    def __init__(self, start: datetime) -> None:
        self.now = start

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kw) -> None:
        self.now += timedelta(**kw)


class _Backend:
    """Routes client requests to the real `/api/state` handler over a memory store."""

    def __init__(self) -> None:
        self.store = MemoryStateStore({})
        self.requests: List[httpx.Request] = []
        self.down = False
        self.avatar_url = "https://cdn.example.com/avatars/1.png"
        self.analytics: List[Dict[str, Any]] = []
        self.membership_status = 200
        self.flags_override: Dict[str, Any] | None = None

    def __call__(self, request: httpx.Request) -> httpx.Response:
        from state_api import handler as state_handler

        self.requests.append(request)
        if self.down:
            raise httpx.ConnectError("offline", request=request)

        path = request.url.path
        if path == "/api/state":
            event = {
                "httpMethod": request.method,
                "queryStringParameters": dict(request.url.params) or None,
                "headers": dict(request.headers),
                "body": request.content.decode("utf-8") or None,
            }
            resp = state_handler.handle(event, store=self.store)
            if self.flags_override is not None and request.method == "GET":
                payload = json.loads(resp["body"])
                payload["flags"] = self.flags_override
                return httpx.Response(resp["statusCode"], json=payload)
            return httpx.Response(resp["statusCode"], content=resp["body"].encode("utf-8"))
        if path == "/api/upload-avatar":
            return httpx.Response(200, json={"url": self.avatar_url})
        if path == "/api/session-analytics":
            self.analytics.append(json.loads(request.content))
            return httpx.Response(200, json={"ok": True})
        if path == "/api/register-membership":
            if self.membership_status != 200:
                return httpx.Response(self.membership_status, text="Email already registered")
            return httpx.Response(200, text="ok")
        return httpx.Response(404)

    def saves(self) -> List[Dict[str, Any]]:
        return [
            json.loads(r.content)
            for r in self.requests
            if r.url.path == "/api/state" and r.method == "POST"
        ]


@pytest.fixture(autouse=True)
def _no_integrations(monkeypatch: pytest.MonkeyPatch):
    for name in ("EDGE_CONFIG", "POSTGRES_URL", "POSTGRES_PRISMA_URL", "POSTGRES_URL_NON_POOLING"):
        monkeypatch.delenv(name, raising=False)


@pytest.fixture()
def backend() -> _Backend:
    return _Backend()


@pytest.fixture()
def clock() -> _Clock:
    return _Clock(datetime(2025, 3, 10, 18, 0, tzinfo=UTC))


def _sync(backend: _Backend, clock: _Clock, *, sid: str = "sid-1", local: LocalStateFile | None = None):
    api = StateApiClient("https://app.example.com", client=httpx.Client(
        base_url="https://app.example.com", transport=httpx.MockTransport(backend)
    ))
    return StateSynchronizer(api, sid, local=local, clock=clock)


def test_hydrate_unknown_session_uses_defaults(backend, clock):
    s = _sync(backend, clock)
    state = s.hydrate()

    assert s.hydrated
    assert state.user.id == "sid-1"
    assert state.user.display_name == "Guest"
    assert state.journals == []
    assert backend.saves() == []  # hydration alone does not write


def test_hydrate_merges_remote_and_defaults_missing_fields(backend, clock):
    backend.store.write("sid-1", {"sobrietyDate": "2024-01-01", "journals": [{"id": "j", "date": "d"}]})

    state = _sync(backend, clock).hydrate()
    assert state.sobriety_date == "2024-01-01"
    assert state.journals[0].id == "j"
    assert state.streak.current == 0
    assert state.notifications_enabled is True
    assert state.user.id == "sid-1"


def test_every_tracked_change_persists_full_document(backend, clock):
    s = _sync(backend, clock)
    s.hydrate()

    s.add_journal_entry("hopeful", "Went to a meeting")
    s.add_contact("Pat", "Sponsor", "555-0100", "AA")
    s.set_sobriety_date("2024-06-01")

    saves = backend.saves()
    assert len(saves) == 3
    last = saves[-1]
    assert last["sessionId"] == "sid-1"
    assert last["state"]["journals"][0]["text"] == "Went to a meeting"
    assert last["state"]["contacts"][0]["role"] == "Sponsor"
    assert last["state"]["sobrietyDate"] == "2024-06-01"
    # The server now holds exactly the last document
    assert backend.store.read("sid-1") == last["state"]


def test_changes_before_hydration_are_not_sent(backend, clock):
    s = _sync(backend, clock)
    s.set_notifications_enabled(False)
    assert backend.saves() == []


def test_hydrate_then_reload_roundtrip(backend, clock):
    s = _sync(backend, clock)
    s.hydrate()
    s.add_step_work(sponsor_name="Pat", current_step="Step 4", weekly_plan="Inventory")
    s.check_in("Downtown Hall")

    reloaded = _sync(backend, clock).hydrate()
    assert reloaded.to_wire() == s.state.to_wire()


def test_check_in_updates_streak_and_check_out_does_not(backend, clock):
    s = _sync(backend, clock)
    s.hydrate()

    s.check_in("Hall")
    clock.advance(days=1)
    s.check_in("Hall")
    s.check_out("Hall")

    assert s.state.streak.current == 2
    assert s.state.streak.longest == 2
    assert [m.type for m in s.state.meeting_logs] == ["Check-In", "Check-In", "Check-Out"]


def test_offline_hydrate_falls_back_to_local_file(backend, clock, tmp_path):
    local = LocalStateFile(tmp_path / "state.json")
    online = _sync(backend, clock, local=local)
    online.hydrate()
    online.add_journal_entry("calm", "saved locally too")

    backend.down = True
    offline = _sync(backend, clock, local=local)
    state = offline.hydrate()

    assert offline.hydrated
    assert state.journals[0].text == "saved locally too"


def test_offline_without_local_copy_uses_defaults_and_save_does_not_raise(backend, clock):
    backend.down = True
    s = _sync(backend, clock)
    state = s.hydrate()
    assert state.user.display_name == "Guest"

    assert s.persist() is False
    s.add_journal_entry("tired", "still writing")  # logged, not raised


def test_rejected_save_returns_false(backend, clock, monkeypatch: pytest.MonkeyPatch):
    s = _sync(backend, clock)
    s.hydrate()

    def rejecting_save(session_id, doc):  # noqa: ARG001
        raise SyncApiError(500, '{"error": "Unable to save state"}')

    monkeypatch.setattr(s._api, "save_state", rejecting_save)
    assert s.persist() is False


def test_inline_avatar_is_uploaded_before_save(backend, clock):
    s = _sync(backend, clock)
    s.hydrate()
    inline = "data:image/png;base64," + base64.b64encode(b"img").decode()

    s.update_profile(avatar=inline, display_name="Sam")

    saved = backend.saves()[-1]["state"]["user"]
    assert saved["avatar"] == backend.avatar_url
    assert saved["displayName"] == "Sam"


def test_reset_overwrites_with_defaults(backend, clock):
    s = _sync(backend, clock)
    s.hydrate()
    s.add_journal_entry("ok", "entry")
    s.sign_in({"displayName": "Sam", "email": "sam@example.com"})
    assert s.state.user.is_logged_in

    s.reset()

    stored = backend.store.read("sid-1")
    assert stored["journals"] == []
    assert stored["user"]["displayName"] == "Guest"
    assert stored["user"]["isLoggedIn"] is False
    assert stored["user"]["id"] == "sid-1"


def test_delete_unknown_ids_do_not_persist(backend, clock):
    s = _sync(backend, clock)
    s.hydrate()
    c = s.add_contact("Kim", "Peer", "555", "NA")
    before = len(backend.saves())

    assert s.delete_contact("nope") is False
    assert s.delete_step_work("nope") is False
    assert len(backend.saves()) == before
    assert s.delete_contact(c.id) is True
    assert s.state.contacts == []


def test_record_session_posts_duration(backend, clock):
    s = _sync(backend, clock)
    s.hydrate()
    clock.advance(minutes=5)

    s.record_session()

    rec = backend.analytics[0]
    assert rec["sessionId"] == "sid-1"
    assert rec["durationMs"] == 300000


def test_record_session_skipped_when_flag_off(backend, clock):
    s = _sync(backend, clock)
    s.hydrate()
    s._flags = s.flags.model_copy(update={"analytics_enabled": False})

    s.record_session()
    assert backend.analytics == []


def test_register_membership_signs_user_in(backend, clock):
    s = _sync(backend, clock)
    s.hydrate()

    s.register_membership({"displayName": "Sam", "email": "sam@example.com", "password": "pw"})
    assert s.state.user.is_logged_in
    assert s.state.user.display_name == "Sam"
    assert s.state.user.joined_at == clock.now.isoformat()

    backend.membership_status = 409
    with pytest.raises(SyncApiError) as ei:
        s.register_membership({"displayName": "Sam", "email": "sam@example.com", "password": "pw"})
    assert ei.value.text == "Email already registered"


def test_one_invalid_record_does_not_wipe_the_document(backend, clock):
    backend.store.write(
        "sid-1",
        {
            "journals": [{"id": "j1", "date": "2025-01-01", "text": "first entry"}],
            "contacts": [{"id": "c1", "name": "Pat", "role": "Friend"}, {"id": "c2", "name": "Kim"}],
            "streak": None,
        },
    )
    s = _sync(backend, clock)
    state = s.hydrate()

    assert [j.text for j in state.journals] == ["first entry"]
    assert [c.id for c in state.contacts] == ["c2"]
    assert state.streak.current == 0

    s.set_notifications_enabled(False)
    stored = backend.store.read("sid-1")
    assert [j["text"] for j in stored["journals"]] == ["first entry"]
    assert stored["notificationsEnabled"] is False


def test_malformed_flags_fall_back_to_defaults(backend, clock):
    backend.store.write("sid-1", {"sobrietyDate": "2024-01-01"})
    backend.flags_override = {"maintenanceMode": "maybe"}

    s = _sync(backend, clock)
    state = s.hydrate()

    assert state.sobriety_date == "2024-01-01"
    assert s.flags.maintenance_mode is False
    assert s.flags.analytics_enabled is True


def test_toggle_sign_in_flips_login_and_keeps_join_date(backend, clock):
    s = _sync(backend, clock)
    s.hydrate()

    s.toggle_sign_in()
    joined = s.state.user.joined_at
    assert s.state.user.is_logged_in is True
    assert joined == clock.now.isoformat()
    assert backend.store.read("sid-1")["user"]["isLoggedIn"] is True

    clock.advance(days=1)
    s.toggle_sign_in()
    assert s.state.user.is_logged_in is False
    assert s.state.user.joined_at == joined
    assert backend.store.read("sid-1")["user"]["isLoggedIn"] is False
