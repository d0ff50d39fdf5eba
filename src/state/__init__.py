"""
Persisted application state: models, cache codec and stores.

One JSON document per session identifier lives in a relational table, with
an optional key-value cache in front of it (cache-aside) whose entries can
be encrypted with Fernet.
"""

from .models import PersistedState, RemoteFlags, SessionAnalytics

__all__ = ["PersistedState", "RemoteFlags", "SessionAnalytics"]
