from __future__ import annotations

import os
from pathlib import Path
from typing import Optional
from uuid import uuid4


DEFAULT_HOME_ENV = "RECOVERY_BUDDY_HOME"


def default_home() -> Path:
    # Prefer explicit env var, else a dot-folder in the user's home
    base = os.environ.get(DEFAULT_HOME_ENV)
    if base:
        return Path(base)
    return Path.home() / ".recovery-buddy"


def new_session_id() -> str:
    return uuid4().hex


def get_or_create_session_id(path: Optional[os.PathLike[str] | str] = None) -> str:
    """Return the session identifier stored at `path`, creating one if absent.

    The identifier is an opaque random token. It keys the remote state
    document but is not a credential: anyone holding it can read and write
    that session's data.
    """
    p = Path(path) if path else default_home() / "session_id"
    try:
        existing = p.read_text(encoding="utf-8").strip()
    except FileNotFoundError:
        existing = ""
    if existing:
        return existing

    sid = new_session_id()
    p.parent.mkdir(parents=True, exist_ok=True)
    p.write_text(sid + "\n", encoding="utf-8")
    return sid
