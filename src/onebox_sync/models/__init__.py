"""Data models for onebox-sync.

This module contains Pydantic models for data validation and serialization.
"""

from __future__ import annotations

from datetime import datetime, timezone
from enum import Enum
from typing import Any

from pydantic import BaseModel, ConfigDict, Field

from onebox_sync.models.mailbox import (
    AccountConfig,
    MailboxCursor,
    MailboxStatus,
    MessageRef,
    RawMessage,
    SessionSignal,
    SessionState,
)

NO_SUBJECT = "(No Subject)"


class Category(str, Enum):
    """Closed set of classification labels."""

    INTERESTED = "Interested"
    MEETING_BOOKED = "Meeting Booked"
    NOT_INTERESTED = "Not Interested"
    SPAM = "Spam"
    OUT_OF_OFFICE = "Out of Office"
    UNCATEGORIZED = "Uncategorized"

    @classmethod
    def coerce(cls, value: object) -> "Category":
        """Map any classifier output onto the closed label set.

        Unknown labels, wrong types and ``None`` all become ``Uncategorized``.
        Matching is case-insensitive and ignores surrounding whitespace.
        """
        if isinstance(value, Category):
            return value
        if not isinstance(value, str):
            return cls.UNCATEGORIZED
        folded = value.strip().casefold()
        for member in cls:
            if member.value.casefold() == folded:
                return member
        return cls.UNCATEGORIZED

    @classmethod
    def assignable(cls) -> list["Category"]:
        """Labels accepted for a manual correction."""
        return [member for member in cls if member is not cls.UNCATEGORIZED]


def email_id(account_id: str, message_id: str | None, fallback: datetime | None = None) -> str:
    """Derive the deterministic document id for a message.

    The protocol Message-ID keeps re-ingestion idempotent. Messages without
    one fall back to the ingestion timestamp in milliseconds.
    """
    if message_id:
        return f"{account_id}-{message_id}"
    moment = fallback or datetime.now(timezone.utc)
    return f"{account_id}-{int(moment.timestamp() * 1000)}"


class NormalizedEmail(BaseModel):
    """A parsed message, independent of the transport it came from."""

    model_config = ConfigDict(frozen=True, populate_by_name=True)

    id: str = Field(description="Deterministic id: <account_id>-<message_id>")
    account_id: str = Field(description="Account the message was fetched from")
    folder: str = Field(description="Mailbox the message was fetched from")
    subject: str = Field(default=NO_SUBJECT, description="Subject header")
    body: str = Field(default="", description="Text body, falling back to HTML")
    from_: str = Field(default="", alias="from", description="Raw From header")
    to: list[str] = Field(default_factory=list, description="Parsed To addresses")
    cc: list[str] = Field(default_factory=list, description="Parsed Cc addresses")
    bcc: list[str] = Field(default_factory=list, description="Parsed Bcc addresses")
    date: datetime = Field(description="Message date")
    message_id: str = Field(default="", description="Protocol Message-ID header")
    has_attachments: bool = Field(default=False, description="Whether attachments are present")
    indexed_at: datetime = Field(
        default_factory=lambda: datetime.now(timezone.utc),
        description="Normalization timestamp",
    )


class ClassifiedEmail(NormalizedEmail):
    """A normalized email with its classification label."""

    category: Category = Field(default=Category.UNCATEGORIZED, description="Assigned label")

    @classmethod
    def from_normalized(cls, email: NormalizedEmail, category: Category) -> "ClassifiedEmail":
        return cls(**email.model_dump(), category=category)

    def to_record(self) -> dict[str, Any]:
        """Return the JSON-compatible document stored in the search index."""
        return self.model_dump(mode="json", by_alias=True)


class EmailQuery(BaseModel):
    """Filters accepted by the search index query API."""

    q: str | None = Field(default=None, description="Full-text query over subject and body")
    account_id: str | None = Field(default=None, description="Restrict to one account")
    folder: str | None = Field(default=None, description="Restrict to one folder")
    category: Category | None = Field(default=None, description="Restrict to one label")


class SearchPage(BaseModel):
    """One page of search results."""

    total: int = Field(ge=0)
    items: list[ClassifiedEmail] = Field(default_factory=list)
    page: int = Field(default=1, ge=1)
    limit: int = Field(default=20, ge=1)


__all__ = [
    "NO_SUBJECT",
    "AccountConfig",
    "Category",
    "ClassifiedEmail",
    "EmailQuery",
    "MailboxCursor",
    "MailboxStatus",
    "MessageRef",
    "NormalizedEmail",
    "RawMessage",
    "SearchPage",
    "SessionSignal",
    "SessionState",
    "email_id",
]
