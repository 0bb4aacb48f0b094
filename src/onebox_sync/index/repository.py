"""SQLite-backed search index for classified emails.

Each email is stored once under its deterministic id; re-ingesting the same
message replaces the row. Subject and body are indexed with FTS5, and the
account, folder and category columns back the exact-match filters.
"""

from __future__ import annotations

import json
import sqlite3
from collections.abc import Iterator
from contextlib import contextmanager
from datetime import datetime, timezone
from pathlib import Path
from typing import Any

import structlog

from onebox_sync.exceptions import SearchIndexError
from onebox_sync.models import Category, ClassifiedEmail, EmailQuery, SearchPage

logger = structlog.get_logger()


_SCHEMA_VERSION = 1

_FILTER_FIELDS = ("account_id", "folder", "category")
_UPDATABLE_FIELDS = frozenset({"category"})


class EmailIndexRepository:
    """Repository for storing and querying classified emails."""

    def __init__(self, db_path: Path) -> None:
        """Create a repository.

        Args:
            db_path: Path to the SQLite database file.
        """

        self._db_path = db_path

    def initialize(self) -> None:
        """Create or upgrade the index schema."""

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
                logger.info("email_index_schema_created", version=_SCHEMA_VERSION)
                return

            if current_version != _SCHEMA_VERSION:
                raise SearchIndexError(
                    f"Unsupported schema version {current_version}; expected {_SCHEMA_VERSION}"
                )

    def upsert(self, email_id: str, record: dict[str, Any]) -> None:
        """Insert or replace the document stored under ``email_id``."""

        params = self._record_to_params(email_id, record)
        with self._connect() as conn:
            conn.execute(
                """
                INSERT INTO emails (
                    email_id,
                    account_id,
                    folder,
                    subject,
                    body,
                    from_raw,
                    to_addrs_json,
                    cc_addrs_json,
                    bcc_addrs_json,
                    date_iso,
                    date_utc,
                    message_id,
                    has_attachments,
                    category,
                    indexed_at_iso,
                    updated_at_iso
                )
                VALUES (
                    :email_id,
                    :account_id,
                    :folder,
                    :subject,
                    :body,
                    :from_raw,
                    :to_addrs_json,
                    :cc_addrs_json,
                    :bcc_addrs_json,
                    :date_iso,
                    :date_utc,
                    :message_id,
                    :has_attachments,
                    :category,
                    :indexed_at_iso,
                    :updated_at_iso
                )
                ON CONFLICT(email_id) DO UPDATE SET
                    account_id=excluded.account_id,
                    folder=excluded.folder,
                    subject=excluded.subject,
                    body=excluded.body,
                    from_raw=excluded.from_raw,
                    to_addrs_json=excluded.to_addrs_json,
                    cc_addrs_json=excluded.cc_addrs_json,
                    bcc_addrs_json=excluded.bcc_addrs_json,
                    date_iso=excluded.date_iso,
                    date_utc=excluded.date_utc,
                    message_id=excluded.message_id,
                    has_attachments=excluded.has_attachments,
                    category=excluded.category,
                    indexed_at_iso=excluded.indexed_at_iso,
                    updated_at_iso=excluded.updated_at_iso
                """,
                params,
            )
            conn.commit()

    def get(self, email_id: str) -> ClassifiedEmail | None:
        """Return the email stored under ``email_id``, if any."""

        with self._connect() as conn:
            row = conn.execute("SELECT * FROM emails WHERE email_id = ?", (email_id,)).fetchone()
        return self._row_to_email(row) if row is not None else None

    def query(self, filters: EmailQuery, page: int = 1, limit: int = 20) -> SearchPage:
        """Search the index.

        Args:
            filters: Free text (matched against subject and body) and exact
                account / folder / category filters.
            page: 1-based page number.
            limit: Page size.

        Returns:
            One page of matches, newest first.
        """

        page = max(1, page)
        limit = max(1, limit)
        where, params = self._where(filters)

        with self._connect() as conn:
            (total,) = conn.execute(f"SELECT COUNT(*) FROM emails e {where}", params).fetchone()
            rows = conn.execute(
                f"""
                SELECT e.*
                FROM emails e
                {where}
                ORDER BY e.date_utc DESC, e.rowid DESC
                LIMIT ? OFFSET ?;
                """,
                (*params, limit, (page - 1) * limit),
            ).fetchall()

        return SearchPage(
            total=int(total or 0),
            items=[self._row_to_email(row) for row in rows],
            page=page,
            limit=limit,
        )

    def distinct_values(self, field: str, filters: EmailQuery | None = None) -> list[str]:
        """Return the distinct values of an account, folder or category column."""

        if field not in _FILTER_FIELDS:
            raise ValueError(f"Cannot list values of {field!r}")

        where, params = self._where(filters or EmailQuery())
        with self._connect() as conn:
            rows = conn.execute(
                f"SELECT DISTINCT e.{field} FROM emails e {where} ORDER BY e.{field};",
                params,
            ).fetchall()
        return [row[0] for row in rows if row[0]]

    def update_field(self, email_id: str, field: str, value: Any) -> bool:
        """Set one field of a stored email.

        Returns:
            True if the email exists and was updated.

        Raises:
            ValueError: If the field cannot be updated or the value is invalid.
        """

        if field not in _UPDATABLE_FIELDS:
            raise ValueError(f"Field {field!r} cannot be updated")
        if field == "category":
            value = Category(value).value

        with self._connect() as conn:
            cursor = conn.execute(
                f"UPDATE emails SET {field} = ?, updated_at_iso = ? WHERE email_id = ?",
                (value, datetime.now(timezone.utc).isoformat(), email_id),
            )
            conn.commit()
            updated = cursor.rowcount > 0

        logger.info("email_field_updated", email_id=email_id, field=field, updated=updated)
        return updated

    @contextmanager
    def _connect(self) -> Iterator[sqlite3.Connection]:
        try:
            conn = sqlite3.connect(self._db_path)
        except sqlite3.Error as exc:
            raise SearchIndexError(f"Cannot open index {self._db_path}: {exc}") from exc
        try:
            conn.row_factory = sqlite3.Row
            yield conn
        except sqlite3.Error as exc:
            raise SearchIndexError(str(exc)) from exc
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
            CREATE TABLE IF NOT EXISTS emails (
                rowid INTEGER PRIMARY KEY,
                email_id TEXT NOT NULL UNIQUE,
                account_id TEXT NOT NULL,
                folder TEXT NOT NULL,
                subject TEXT NOT NULL,
                body TEXT NOT NULL,
                from_raw TEXT NOT NULL,
                to_addrs_json TEXT NOT NULL,
                cc_addrs_json TEXT NOT NULL,
                bcc_addrs_json TEXT NOT NULL,
                date_iso TEXT NOT NULL,
                date_utc TEXT NOT NULL,
                message_id TEXT NOT NULL,
                has_attachments INTEGER NOT NULL,
                category TEXT NOT NULL,
                indexed_at_iso TEXT NOT NULL,
                updated_at_iso TEXT NOT NULL
            );

            CREATE INDEX IF NOT EXISTS idx_emails_account_folder
                ON emails(account_id, folder);

            CREATE INDEX IF NOT EXISTS idx_emails_category
                ON emails(category);

            CREATE INDEX IF NOT EXISTS idx_emails_date_utc
                ON emails(date_utc);

            CREATE VIRTUAL TABLE IF NOT EXISTS emails_fts USING fts5(
                subject,
                body,
                content='emails',
                content_rowid='rowid'
            );

            CREATE TRIGGER IF NOT EXISTS emails_ai
            AFTER INSERT ON emails
            BEGIN
                INSERT INTO emails_fts(rowid, subject, body)
                VALUES (new.rowid, new.subject, new.body);
            END;

            CREATE TRIGGER IF NOT EXISTS emails_ad
            AFTER DELETE ON emails
            BEGIN
                INSERT INTO emails_fts(emails_fts, rowid, subject, body)
                VALUES('delete', old.rowid, old.subject, old.body);
            END;

            CREATE TRIGGER IF NOT EXISTS emails_au
            AFTER UPDATE ON emails
            BEGIN
                INSERT INTO emails_fts(emails_fts, rowid, subject, body)
                VALUES('delete', old.rowid, old.subject, old.body);

                INSERT INTO emails_fts(rowid, subject, body)
                VALUES (new.rowid, new.subject, new.body);
            END;
            """
        )

    def _where(self, filters: EmailQuery) -> tuple[str, tuple[Any, ...]]:
        clauses: list[str] = []
        params: list[Any] = []

        match = _fts_query(filters.q)
        if match:
            clauses.append("e.rowid IN (SELECT rowid FROM emails_fts WHERE emails_fts MATCH ?)")
            params.append(match)
        if filters.account_id:
            clauses.append("e.account_id = ?")
            params.append(filters.account_id)
        if filters.folder:
            clauses.append("e.folder = ?")
            params.append(filters.folder)
        if filters.category is not None:
            clauses.append("e.category = ?")
            params.append(filters.category.value)

        where = f"WHERE {' AND '.join(clauses)}" if clauses else ""
        return where, tuple(params)

    def _record_to_params(self, email_id: str, record: dict[str, Any]) -> dict[str, Any]:
        try:
            date_iso = str(record["date"])
            date_utc = datetime.fromisoformat(date_iso).astimezone(timezone.utc).isoformat()
        except (KeyError, ValueError) as exc:
            raise SearchIndexError(f"{email_id}: record has no valid date") from exc

        return {
            "email_id": email_id,
            "account_id": record.get("account_id", ""),
            "folder": record.get("folder", ""),
            "subject": record.get("subject", ""),
            "body": record.get("body", ""),
            "from_raw": record.get("from", ""),
            "to_addrs_json": json.dumps(record.get("to") or []),
            "cc_addrs_json": json.dumps(record.get("cc") or []),
            "bcc_addrs_json": json.dumps(record.get("bcc") or []),
            "date_iso": date_iso,
            "date_utc": date_utc,
            "message_id": record.get("message_id") or "",
            "has_attachments": 1 if record.get("has_attachments") else 0,
            "category": Category.coerce(record.get("category")).value,
            "indexed_at_iso": str(record.get("indexed_at") or datetime.now(timezone.utc).isoformat()),
            "updated_at_iso": datetime.now(timezone.utc).isoformat(),
        }

    def _row_to_email(self, row: sqlite3.Row) -> ClassifiedEmail:
        return ClassifiedEmail(
            id=row["email_id"],
            account_id=row["account_id"],
            folder=row["folder"],
            subject=row["subject"],
            body=row["body"],
            from_=row["from_raw"],
            to=json.loads(row["to_addrs_json"]),
            cc=json.loads(row["cc_addrs_json"]),
            bcc=json.loads(row["bcc_addrs_json"]),
            date=datetime.fromisoformat(row["date_iso"]),
            message_id=row["message_id"],
            has_attachments=bool(row["has_attachments"]),
            indexed_at=datetime.fromisoformat(row["indexed_at_iso"]),
            category=Category.coerce(row["category"]),
        )


def _fts_query(text: str | None) -> str:
    """Quote every term so user input is never parsed as FTS5 syntax."""
    if not text:
        return ""
    terms = [term.replace('"', '""') for term in text.split()]
    return " ".join(f'"{term}"' for term in terms if term)
