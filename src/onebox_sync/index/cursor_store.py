"""Persisted watch cursors.

A cursor records the UIDVALIDITY and highest processed UID per account and
folder, so a restart resumes where the previous run stopped instead of
re-running the historical backfill.
"""

from __future__ import annotations

import sqlite3
from collections.abc import Iterator
from contextlib import contextmanager
from datetime import datetime, timezone
from pathlib import Path

import structlog

from onebox_sync.exceptions import SearchIndexError
from onebox_sync.models import MailboxCursor

logger = structlog.get_logger()


class SqliteCursorStore:
    """Stores one :class:`MailboxCursor` per ``(account_id, folder)``."""

    def __init__(self, db_path: Path) -> None:
        self._db_path = db_path

    def initialize(self) -> None:
        self._db_path.parent.mkdir(parents=True, exist_ok=True)
        with self._connect() as conn:
            conn.execute(
                """
                CREATE TABLE IF NOT EXISTS mailbox_cursors (
                    account_id TEXT NOT NULL,
                    folder TEXT NOT NULL,
                    uidvalidity INTEGER NOT NULL,
                    last_uid INTEGER NOT NULL,
                    updated_at_iso TEXT NOT NULL,
                    PRIMARY KEY (account_id, folder)
                );
                """
            )
            conn.commit()

    def load(self, account_id: str, folder: str) -> MailboxCursor | None:
        with self._connect() as conn:
            row = conn.execute(
                """
                SELECT uidvalidity, last_uid
                FROM mailbox_cursors
                WHERE account_id = ? AND folder = ?;
                """,
                (account_id, folder),
            ).fetchone()
        if row is None:
            return None
        return MailboxCursor(folder=folder, uidvalidity=row[0], last_uid=row[1])

    def save(self, account_id: str, cursor: MailboxCursor) -> None:
        with self._connect() as conn:
            conn.execute(
                """
                INSERT INTO mailbox_cursors (account_id, folder, uidvalidity, last_uid, updated_at_iso)
                VALUES (?, ?, ?, ?, ?)
                ON CONFLICT(account_id, folder) DO UPDATE SET
                    uidvalidity=excluded.uidvalidity,
                    last_uid=excluded.last_uid,
                    updated_at_iso=excluded.updated_at_iso
                """,
                (
                    account_id,
                    cursor.folder,
                    cursor.uidvalidity,
                    cursor.last_uid,
                    datetime.now(timezone.utc).isoformat(),
                ),
            )
            conn.commit()
        logger.debug(
            "cursor_saved",
            account_id=account_id,
            folder=cursor.folder,
            last_uid=cursor.last_uid,
        )

    @contextmanager
    def _connect(self) -> Iterator[sqlite3.Connection]:
        try:
            conn = sqlite3.connect(self._db_path)
        except sqlite3.Error as exc:
            raise SearchIndexError(f"Cannot open cursor store {self._db_path}: {exc}") from exc
        try:
            yield conn
        except sqlite3.Error as exc:
            raise SearchIndexError(str(exc)) from exc
        finally:
            conn.close()
