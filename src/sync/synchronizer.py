from __future__ import annotations

import logging
from datetime import UTC, datetime
from typing import Any, Callable, Dict, Optional
from uuid import uuid4

from state.models import (
    Contact,
    JournalEntry,
    MeetingLog,
    PersistedState,
    RemoteFlags,
    StepWork,
    UserProfile,
)
from .client import StateApiClient, SyncApiError, SyncError
from .local import LocalStateFile
from .streak import streak_after_check_in


log = logging.getLogger(__name__)


def _utcnow() -> datetime:
    return datetime.now(UTC)


def _new_id() -> str:
    return uuid4().hex


class StateSynchronizer:
    """
    Client-side owner of one session's `PersistedState`.

    Lifecycle
    - `hydrate()` loads the remote document, defaulting absent fields. On any
      failure it falls back to the local copy (or defaults) and logs a warning.
    - Every tracked mutation below serializes the whole document and sends it
      back (`persist()`), once hydration has completed.

    Guarantees are deliberately thin: no debouncing, batching, retries or
    conflict detection. Two devices editing the same session race and the last
    write silently wins; a read right after a write may not observe it.
    """

    def __init__(
        self,
        api: StateApiClient,
        session_id: str,
        *,
        local: Optional[LocalStateFile] = None,
        clock: Callable[[], datetime] = _utcnow,
    ) -> None:
        self._api = api
        self._session_id = session_id
        self._local = local
        self._clock = clock
        self._state = PersistedState.default(session_id)
        self._flags = RemoteFlags()
        self._hydrated = False
        self._started_at = clock()

    # -------- Accessors --------
    @property
    def session_id(self) -> str:
        return self._session_id

    @property
    def state(self) -> PersistedState:
        return self._state

    @property
    def flags(self) -> RemoteFlags:
        return self._flags

    @property
    def hydrated(self) -> bool:
        return self._hydrated

    # -------- Sync cycle --------
    def hydrate(self) -> PersistedState:
        """Load state for the session; never raises."""
        try:
            remote, flags = self._api.load_state(self._session_id)
        except SyncError:
            log.warning("State load failed; falling back to local state", exc_info=True)
            self._state = self._from_doc(self._local.load() if self._local else None)
        else:
            self._flags = flags
            self._state = self._from_doc(remote)
        self._hydrated = True
        return self._state

    def persist(self) -> bool:
        """Send the full document to the store. Returns False when the save failed."""
        self._state.user.id = self._session_id
        self._upload_inline_avatar()
        doc = self._state.to_wire()
        if self._local is not None:
            self._local.save(doc)
        try:
            self._api.save_state(self._session_id, doc)
        except SyncApiError as ex:
            log.warning("State save failed: HTTP %s %s", ex.status_code, ex.text[:200])
            return False
        except SyncError:
            log.warning("State save crashed", exc_info=True)
            return False
        return True

    def record_session(self, *, ended_at: Optional[datetime] = None) -> None:
        """Fire-and-forget session duration record; skipped when analytics is off."""
        if not self._flags.analytics_enabled:
            return
        end = ended_at or self._clock()
        payload = {
            "sessionId": self._session_id,
            "userId": self._state.user.id or self._session_id,
            "startedAt": self._started_at.isoformat(),
            "endedAt": end.isoformat(),
            "durationMs": int((end - self._started_at).total_seconds() * 1000),
        }
        try:
            self._api.record_session_analytics(payload)
        except SyncError:
            log.warning("Analytics submit failed", exc_info=True)

    def register_membership(self, fields: Dict[str, Any]) -> str:
        """Create a CMS membership; raises SyncApiError with the CMS's message on rejection."""
        text = self._api.register_membership(fields)
        self.sign_up(
            {
                k: fields[k]
                for k in ("displayName", "email", "state")
                if isinstance(fields.get(k), str) and fields.get(k)
            }
        )
        return text

    # -------- Tracked mutations --------
    def add_journal_entry(self, mood: str, text: str, *, ai_reflection: Optional[str] = None) -> JournalEntry:
        entry = JournalEntry(
            id=_new_id(),
            date=self._clock().isoformat(),
            mood=mood,
            text=text,
            ai_reflection=ai_reflection,
            user_id=self._state.user.id or self._session_id,
        )
        self._state.journals.append(entry)
        self._changed()
        return entry

    def check_in(self, location: str) -> MeetingLog:
        now = self._clock()
        log_entry = MeetingLog(id=_new_id(), timestamp=now.isoformat(), type="Check-In", location=location)
        self._state.meeting_logs.append(log_entry)
        self._state.streak = streak_after_check_in(self._state.streak, now)
        self._changed()
        return log_entry

    def check_out(self, location: str) -> MeetingLog:
        log_entry = MeetingLog(
            id=_new_id(), timestamp=self._clock().isoformat(), type="Check-Out", location=location
        )
        self._state.meeting_logs.append(log_entry)
        self._changed()
        return log_entry

    def add_contact(self, name: str, role: str, phone: str, fellowship: str) -> Contact:
        contact = Contact(id=_new_id(), name=name, role=role, phone=phone, fellowship=fellowship)
        self._state.contacts.append(contact)
        self._changed()
        return contact

    def delete_contact(self, contact_id: str) -> bool:
        before = len(self._state.contacts)
        self._state.contacts = [c for c in self._state.contacts if c.id != contact_id]
        if len(self._state.contacts) == before:
            return False
        self._changed()
        return True

    def add_step_work(
        self,
        *,
        sponsor_name: str = "",
        sponsor_phone: str = "",
        sponsor_email: str = "",
        current_step: str = "",
        weekly_plan: str = "",
    ) -> StepWork:
        work = StepWork(
            id=_new_id(),
            sponsor_name=sponsor_name,
            sponsor_phone=sponsor_phone,
            sponsor_email=sponsor_email,
            current_step=current_step,
            weekly_plan=weekly_plan,
        )
        self._state.step_work_list.append(work)
        self._changed()
        return work

    def delete_step_work(self, work_id: str) -> bool:
        before = len(self._state.step_work_list)
        self._state.step_work_list = [w for w in self._state.step_work_list if w.id != work_id]
        if len(self._state.step_work_list) == before:
            return False
        self._changed()
        return True

    def set_sobriety_date(self, value: Optional[str]) -> None:
        self._state.sobriety_date = value
        self._changed()

    def set_notifications_enabled(self, enabled: bool) -> None:
        self._state.notifications_enabled = enabled
        self._changed()

    def update_profile(self, **changes: Any) -> None:
        """Apply profile field changes (python or wire names) to the user."""
        fields = UserProfile.model_fields
        wire = {(fields[k].alias or k) if k in fields else k: v for k, v in changes.items()}
        merged = {**self._state.user.model_dump(by_alias=True), **wire}
        self._state.user = UserProfile.model_validate(merged)
        self._changed()

    def sign_in(self, profile: Optional[Dict[str, Any]] = None) -> None:
        self._login(profile or {})

    def sign_up(self, profile: Optional[Dict[str, Any]] = None) -> None:
        self._login(profile or {})

    def toggle_sign_in(self) -> None:
        user = self._state.user
        user.is_logged_in = not user.is_logged_in
        user.joined_at = user.joined_at or self._clock().isoformat()
        self._changed()

    def reset(self) -> None:
        """Overwrite the session's document with the defaults."""
        self._state = PersistedState.default(self._session_id)
        self._changed()

    # -------- Internal --------
    def _login(self, profile: Dict[str, Any]) -> None:
        merged = {**self._state.user.model_dump(by_alias=True), **profile}
        merged.update({"id": self._session_id, "isLoggedIn": True})
        merged["joinedAt"] = merged.get("joinedAt") or self._clock().isoformat()
        self._state.user = UserProfile.model_validate(merged)
        self._changed()

    def _changed(self) -> None:
        if self._hydrated:
            self.persist()

    def _from_doc(self, doc: Optional[Dict[str, Any]]) -> PersistedState:
        if doc is None:
            return PersistedState.default(self._session_id)
        state, repaired = PersistedState.from_document(doc)
        if repaired:
            log.warning("Stored state had invalid fields, defaulted: %s", ", ".join(repaired))
        if not state.user.id:
            state.user.id = self._session_id
        return state

    def _upload_inline_avatar(self) -> None:
        avatar = self._state.user.avatar
        if not avatar or not avatar.startswith("data:image"):
            return
        try:
            url = self._api.upload_avatar(avatar)
        except SyncError:
            log.warning("Avatar upload failed, keeping inline data URL", exc_info=True)
            return
        if url:
            self._state.user.avatar = url
