from __future__ import annotations

import json
import logging
import os
from pathlib import Path
from typing import Any, Dict, Optional


log = logging.getLogger(__name__)


class LocalStateFile:
    """
    Local JSON copy of the last known state document.

    - Backed by a single JSON file holding the wire form of `PersistedState`.
    - Used when the remote store is unreachable; best-effort in both directions.
    """

    def __init__(self, path: os.PathLike[str] | str) -> None:
        self._path = Path(path)

    @property
    def path(self) -> Path:
        return self._path

    def load(self) -> Optional[Dict[str, Any]]:
        try:
            with self._path.open("r", encoding="utf-8") as f:
                raw = json.load(f)
        except FileNotFoundError:
            return None
        except (OSError, ValueError):
            # Corrupt local copy: ignore and start fresh
            log.warning("Ignoring unreadable local state at %s", self._path, exc_info=True)
            return None
        return raw if isinstance(raw, dict) else None

    def save(self, doc: Dict[str, Any]) -> None:
        try:
            self._path.parent.mkdir(parents=True, exist_ok=True)
            tmp = self._path.with_suffix(self._path.suffix + ".tmp")
            with tmp.open("w", encoding="utf-8") as f:
                json.dump(doc, f, indent=2, sort_keys=True)
            tmp.replace(self._path)
        except OSError:
            log.warning("Failed to write local state to %s", self._path, exc_info=True)
