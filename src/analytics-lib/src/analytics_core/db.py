"""
analytics_core.db — PostgreSQL connection settings and warm-connection cache.

ConnectionCache is an explicit collaborator handed to the load stage.  A warm
Lambda reuses its connection; a cold one (or one whose connection dropped)
reconnects.  Either way the behaviour is identical, only latency differs.
"""

from __future__ import annotations

import os
from collections.abc import Callable
from dataclasses import dataclass
from typing import Any

import psycopg
from aws_lambda_powertools import Logger

logger = Logger(service="analytics-core")


@dataclass(frozen=True)
class DbSettings:
    host: str
    port: int
    dbname: str
    user: str
    password: str | None
    sslmode: str = "require"
    connect_timeout: int = 10

    @classmethod
    def from_env(cls) -> DbSettings:
        host = os.environ.get("DB_HOST", "").strip()
        if not host:
            raise RuntimeError("DB_HOST environment variable not set")
        return cls(
            host=host,
            port=int(os.environ.get("DB_PORT", "5432")),
            dbname=os.environ.get("DB_NAME", "analytics"),
            user=os.environ.get("DB_USER", "analytics"),
            password=os.environ.get("DB_PASS"),
            sslmode=os.environ.get("DB_SSLMODE", "require"),
        )


def _connect(settings: DbSettings) -> Any:
    # autocommit: each statement commits on its own, so a failed batch keeps
    # the rows inserted before the failure.
    return psycopg.connect(
        host=settings.host,
        port=settings.port,
        dbname=settings.dbname,
        user=settings.user,
        password=settings.password,
        sslmode=settings.sslmode,
        connect_timeout=settings.connect_timeout,
        autocommit=True,
    )


class ConnectionCache:
    """Holds at most one open connection plus a per-connection "schema ready" flag."""

    def __init__(
        self,
        *,
        settings_factory: Callable[[], DbSettings] = DbSettings.from_env,
        connect: Callable[[DbSettings], Any] = _connect,
    ) -> None:
        self._settings_factory = settings_factory
        self._connect = connect
        self._conn: Any = None
        self.schema_ready = False

    def get(self) -> Any:
        if self._conn is not None and not getattr(self._conn, "closed", False):
            return self._conn
        settings = self._settings_factory()
        logger.info("Opening database connection", host=settings.host, dbname=settings.dbname)
        self._conn = self._connect(settings)
        self.schema_ready = False
        return self._conn

    def reset(self) -> None:
        """Drop the cached connection; the next get() reconnects."""
        if self._conn is not None:
            try:
                self._conn.close()
            except psycopg.Error:
                logger.warning("Error closing cached connection", exc_info=True)
        self._conn = None
        self.schema_ready = False
