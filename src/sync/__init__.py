"""
Client-side state synchronizer.

Hydrates one session's `PersistedState` from the state API on start and
writes the whole document back after every tracked change, falling back to
a local JSON copy when the API is unreachable.
"""

from .client import StateApiClient, SyncApiError, SyncError
from .local import LocalStateFile
from .session import get_or_create_session_id
from .synchronizer import StateSynchronizer

__all__ = [
    "LocalStateFile",
    "StateApiClient",
    "StateSynchronizer",
    "SyncApiError",
    "SyncError",
    "get_or_create_session_id",
]
