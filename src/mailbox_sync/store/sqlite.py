"""SQLite-backed store for token records and sync cursors.

One row per account in each table. Token records are stored as their
serialized fields; scopes as a space-separated string, expiry as ISO-8601 UTC.
"""

from __future__ import annotations

import sqlite3
from collections.abc import Iterator
from contextlib import contextmanager
from datetime import datetime, timezone
from pathlib import Path

import structlog

from mailbox_sync.models import TokenRecord

logger = structlog.get_logger()


_SCHEMA_VERSION = 1


class SQLiteMailboxStore:
    """Persist tokens and cursors for many accounts in one SQLite file."""

    def __init__(self, db_path: Path) -> None:
        """Create a store.

        Args:
            db_path: Path to the SQLite database file.
        """

        self._db_path = Path(db_path)

    def initialize(self) -> None:
        """Create or verify the schema."""

        self._db_path.parent.mkdir(parents=True, exist_ok=True)

        with self._connect() as conn:
            conn.execute("PRAGMA journal_mode=WAL;")
            conn.execute(
                """
                CREATE TABLE IF NOT EXISTS _schema_meta (
                    key TEXT PRIMARY KEY,
                    value TEXT NOT NULL
                );
                """
            )

            current_version = self._get_schema_version(conn)
            if current_version is None:
                self._create_schema_v1(conn)
                self._set_schema_version(conn, _SCHEMA_VERSION)
                conn.commit()
                logger.info("mailbox_store_schema_created", version=_SCHEMA_VERSION)
                return

            if current_version != _SCHEMA_VERSION:
                raise RuntimeError(
                    f"Unsupported schema version {current_version}; expected {_SCHEMA_VERSION}"
                )

    # -- tokens ------------------------------------------------------------

    def load(self, account_id: str) -> TokenRecord | None:
        with self._connect() as conn:
            row = conn.execute(
                """
                SELECT access_token, refresh_token, expires_at_iso, scope
                FROM tokens WHERE account_id = ?;
                """,
                (account_id,),
            ).fetchone()

        if row is None:
            return None
        return TokenRecord(
            access_token=row["access_token"],
            refresh_token=row["refresh_token"],
            expires_at=datetime.fromisoformat(row["expires_at_iso"]),
            scope=row["scope"] or "",
        )

    def save(self, account_id: str, record: TokenRecord) -> None:
        with self._connect() as conn:
            conn.execute(
                """
                INSERT INTO tokens (account_id, access_token, refresh_token, expires_at_iso, scope, updated_at_iso)
                VALUES (?, ?, ?, ?, ?, ?)
                ON CONFLICT(account_id) DO UPDATE SET
                    access_token=excluded.access_token,
                    refresh_token=excluded.refresh_token,
                    expires_at_iso=excluded.expires_at_iso,
                    scope=excluded.scope,
                    updated_at_iso=excluded.updated_at_iso;
                """,
                (
                    account_id,
                    record.access_token,
                    record.refresh_token,
                    record.expires_at.isoformat(),
                    record.scope_string,
                    _now_iso(),
                ),
            )
            conn.commit()

    def delete(self, account_id: str) -> None:
        with self._connect() as conn:
            conn.execute("DELETE FROM tokens WHERE account_id = ?;", (account_id,))
            conn.commit()

    # -- cursors -----------------------------------------------------------

    def load_cursor(self, account_id: str) -> str | None:
        with self._connect() as conn:
            row = conn.execute(
                "SELECT history_id FROM cursors WHERE account_id = ?;",
                (account_id,),
            ).fetchone()
        return None if row is None else str(row["history_id"])

    def save_cursor(self, account_id: str, cursor: str) -> None:
        with self._connect() as conn:
            conn.execute(
                """
                INSERT INTO cursors (account_id, history_id, updated_at_iso)
                VALUES (?, ?, ?)
                ON CONFLICT(account_id) DO UPDATE SET
                    history_id=excluded.history_id,
                    updated_at_iso=excluded.updated_at_iso;
                """,
                (account_id, cursor, _now_iso()),
            )
            conn.commit()

    def delete_cursor(self, account_id: str) -> None:
        with self._connect() as conn:
            conn.execute("DELETE FROM cursors WHERE account_id = ?;", (account_id,))
            conn.commit()

    # -- internals ---------------------------------------------------------

    @contextmanager
    def _connect(self) -> Iterator[sqlite3.Connection]:
        conn = sqlite3.connect(self._db_path)
        try:
            conn.row_factory = sqlite3.Row
            yield conn
        finally:
            conn.close()

    def _get_schema_version(self, conn: sqlite3.Connection) -> int | None:
        row = conn.execute(
            "SELECT value FROM _schema_meta WHERE key = 'schema_version'"
        ).fetchone()
        if row is None:
            return None
        return int(row[0])

    def _set_schema_version(self, conn: sqlite3.Connection, version: int) -> None:
        conn.execute(
            "INSERT OR REPLACE INTO _schema_meta(key, value) VALUES('schema_version', ?) ",
            (str(version),),
        )

    def _create_schema_v1(self, conn: sqlite3.Connection) -> None:
        conn.executescript(
            """
            CREATE TABLE IF NOT EXISTS tokens (
                account_id TEXT PRIMARY KEY,
                access_token TEXT NOT NULL,
                refresh_token TEXT,
                expires_at_iso TEXT NOT NULL,
                scope TEXT NOT NULL DEFAULT '',
                updated_at_iso TEXT NOT NULL
            );

            CREATE TABLE IF NOT EXISTS cursors (
                account_id TEXT PRIMARY KEY,
                history_id TEXT NOT NULL,
                updated_at_iso TEXT NOT NULL
            );
            """
        )


def _now_iso() -> str:
    return datetime.now(timezone.utc).isoformat()
