from __future__ import annotations

from typing import Any, Dict, List, Literal, Optional, Tuple, Union

from pydantic import (
    BaseModel,
    ConfigDict,
    Field,
    StrictFloat,
    StrictInt,
    ValidationError,
    model_validator,
)


DEFAULT_AVATAR = "https://i.pravatar.cc/100?img=65"


class _Record(BaseModel):
    # camelCase on the wire, unknown keys kept so whole-document writes never lose data
    model_config = ConfigDict(populate_by_name=True, extra="allow")


class EmergencyContact(_Record):
    name: str = ""
    phone: str = ""
    relation: str = ""


class UserProfile(_Record):
    id: str = ""
    display_name: str = Field(default="Guest", alias="displayName")
    email: str = "guest@example.com"
    avatar: str = DEFAULT_AVATAR
    homegroup: Optional[str] = ""
    service_position: Optional[str] = Field(default="", alias="servicePosition")
    state: Optional[str] = ""
    emergency_contact: Optional[EmergencyContact] = Field(default=None, alias="emergencyContact")
    joined_at: Optional[str] = Field(default=None, alias="joinedAt")
    is_logged_in: bool = Field(default=False, alias="isLoggedIn")


class JournalEntry(_Record):
    id: str
    date: str = Field(..., description="ISO 8601 timestamp")
    mood: str = ""
    text: str = ""
    ai_reflection: Optional[str] = Field(default=None, alias="aiReflection")
    user_id: Optional[str] = Field(default=None, alias="userId")


class MeetingLog(_Record):
    id: str
    timestamp: str
    location: Optional[str] = None
    type: Literal["Check-In", "Check-Out"]


class Contact(_Record):
    id: str
    name: str
    role: Literal["Sponsor", "Peer", "Therapist", "Family"] = "Peer"
    phone: str = ""
    fellowship: Literal["AA", "NA", "CA", "Other"] = "Other"


class StepWork(_Record):
    id: str
    sponsor_name: str = Field(default="", alias="sponsorName")
    sponsor_phone: str = Field(default="", alias="sponsorPhone")
    sponsor_email: str = Field(default="", alias="sponsorEmail")
    current_step: str = Field(default="", alias="currentStep")
    weekly_plan: str = Field(default="", alias="weeklyPlan")


class Streak(_Record):
    current: int = 0
    longest: int = 0
    last_check_in_date: Optional[str] = Field(default=None, alias="lastCheckInDate")


class PersistedState(_Record):
    """
    The single JSON document persisted per session identifier.

    Fields
    - user: profile of the (possibly guest) user owning the session.
    - sobriety_date: ISO date the user started their sobriety, if set.
    - journals / meeting_logs: insertion-ordered lists, oldest first.
    - contacts / step_work_list: user-managed records keyed by `id`.
    - streak: meeting check-in streak counter.
    - notifications_enabled: client notification preference.

    Notes
    - Every field is optional on the wire; absent fields take the defaults below.
    - The document is always replaced wholesale. Concurrent writers race and the
      last write silently wins; there is no field-level merge.
    """

    user: UserProfile = Field(default_factory=UserProfile)
    sobriety_date: Optional[str] = Field(default=None, alias="sobrietyDate")
    journals: List[JournalEntry] = Field(default_factory=list)
    meeting_logs: List[MeetingLog] = Field(default_factory=list, alias="meetingLogs")
    contacts: List[Contact] = Field(default_factory=list)
    streak: Streak = Field(default_factory=Streak)
    step_work_list: List[StepWork] = Field(default_factory=list, alias="stepWorkList")
    notifications_enabled: bool = Field(default=True, alias="notificationsEnabled")
    session_started_at: Optional[str] = Field(default=None, alias="sessionStartedAt")

    @model_validator(mode="before")
    @classmethod
    def _null_means_absent(cls, data: Any) -> Any:
        # JSON null on a non-nullable field takes that field's default
        if not isinstance(data, dict):
            return data
        return {k: v for k, v in data.items() if v is not None or k not in _NON_NULL_KEYS}

    @classmethod
    def from_document(cls, doc: Dict[str, Any]) -> Tuple["PersistedState", List[str]]:
        """
        Validate a stored document field by field.

        Returns the state and the names of the keys that were repaired. A list
        field keeps its valid records and drops the invalid ones; any other
        field that fails validation takes its default. The rest of the document
        is kept as-is.
        """
        try:
            return cls.model_validate(doc), []
        except ValidationError:
            pass

        kept: Dict[str, Any] = {}
        repaired: List[str] = []
        for key, value in doc.items():
            record = _RECORD_LISTS.get(key)
            if record is not None and isinstance(value, list):
                valid = [item for item in value if _is_valid(record, item)]
                if len(valid) != len(value):
                    repaired.append(key)
                value = valid
            try:
                cls.model_validate({key: value})
            except ValidationError:
                if key not in repaired:
                    repaired.append(key)
                continue
            kept[key] = value
        return cls.model_validate(kept), repaired

    @classmethod
    def default(cls, session_id: str) -> "PersistedState":
        """Fresh default document for a session, as written by a reset."""
        return cls(user=UserProfile(id=session_id))

    def to_wire(self) -> dict:
        return self.model_dump(by_alias=True, mode="json")


def _is_valid(model, item: Any) -> bool:
    try:
        model.model_validate(item)
    except ValidationError:
        return False
    return True


def _both_names(*names: str) -> set:
    out = set()
    for name in names:
        field = PersistedState.model_fields[name]
        out.update({name, field.alias or name})
    return out


_NON_NULL_KEYS = _both_names(
    "user", "journals", "meeting_logs", "contacts", "streak", "step_work_list", "notifications_enabled"
)

_RECORD_LISTS = {
    key: model
    for name, model in (
        ("journals", JournalEntry),
        ("meeting_logs", MeetingLog),
        ("contacts", Contact),
        ("step_work_list", StepWork),
    )
    for key in _both_names(name)
}


class RemoteFlags(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    maintenance_mode: bool = Field(default=False, alias="maintenanceMode")
    analytics_enabled: bool = Field(default=True, alias="analyticsEnabled")

    def to_wire(self) -> dict:
        return self.model_dump(by_alias=True)


class SessionAnalytics(BaseModel):
    """Session duration record posted by the client when a session ends."""

    model_config = ConfigDict(populate_by_name=True)

    session_id: str = Field(..., alias="sessionId", min_length=1)
    user_id: Optional[str] = Field(default=None, alias="userId")
    started_at: str = Field(..., alias="startedAt", min_length=1)
    ended_at: str = Field(..., alias="endedAt", min_length=1)
    duration_ms: Union[StrictInt, StrictFloat] = Field(..., alias="durationMs")
    region: Optional[str] = None
