"""Local search index for classified emails.

This package stores every classified email in SQLite with an FTS5 index
over subject and body, and persists the per-account watch cursors.
"""

from .cursor_store import SqliteCursorStore
from .repository import EmailIndexRepository

__all__ = ["EmailIndexRepository", "SqliteCursorStore"]
