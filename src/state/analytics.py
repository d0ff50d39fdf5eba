from __future__ import annotations

from typing import Any, Callable

import psycopg2

from common import config
from .models import SessionAnalytics
from .store import connect_factory


ANALYTICS_TABLE = "session_analytics"


class AnalyticsStoreError(RuntimeError):
    """Session analytics row could not be inserted."""


class PostgresAnalyticsStore:
    """Append-only table of session duration records."""

    def __init__(self, *, connect: Callable[[], Any], table: str = ANALYTICS_TABLE) -> None:
        self._connect = connect
        self._table = table

    @classmethod
    def from_env(cls) -> "PostgresAnalyticsStore":
        dsn = config._require(config.postgres_url(), " or ".join(config.ENV_POSTGRES_URLS))
        return cls(connect=connect_factory(dsn))

    def record(self, rec: SessionAnalytics) -> None:
        try:
            conn = self._connect()
            try:
                with conn, conn.cursor() as cur:
                    cur.execute(
                        f"""
                        CREATE TABLE IF NOT EXISTS "{self._table}" (
                          id bigserial PRIMARY KEY,
                          session_id text,
                          user_id text,
                          started_at timestamptz,
                          ended_at timestamptz,
                          duration_ms bigint,
                          region text,
                          created_at timestamptz DEFAULT now()
                        )
                        """
                    )
                    cur.execute(
                        f"""
                        INSERT INTO "{self._table}"
                          (session_id, user_id, started_at, ended_at, duration_ms, region)
                        VALUES (%s, %s, %s, %s, %s, %s)
                        """,
                        (
                            rec.session_id,
                            rec.user_id or None,
                            rec.started_at,
                            rec.ended_at,
                            int(rec.duration_ms),
                            rec.region,
                        ),
                    )
            finally:
                conn.close()
        except psycopg2.Error as ex:
            raise AnalyticsStoreError(f"Failed to record analytics for session {rec.session_id}") from ex
