"""Mailbox, transport and session lifecycle models.

These models describe what the sync engine exchanges with the mail
transport: account credentials, protocol-level message references, raw
message payloads and the cursor used to resume a watch.
"""

from __future__ import annotations

from enum import Enum

from pydantic import BaseModel, ConfigDict, Field, SecretStr, model_validator


class AccountConfig(BaseModel):
    """Credentials and location of one synchronized mailbox."""

    model_config = ConfigDict(frozen=True)

    account_id: str = Field(default="", description="Stable account identifier (defaults to user)")
    user: str = Field(min_length=1, description="Login user, usually the email address")
    password: SecretStr = Field(description="Login password or app password")
    host: str = Field(min_length=1, description="IMAP server host")
    port: int = Field(default=993, ge=1, le=65535, description="IMAP server port")
    mailbox: str = Field(default="INBOX", min_length=1, description="Mailbox to synchronize")
    use_ssl: bool = Field(default=True, description="Connect over implicit TLS")

    @model_validator(mode="before")
    @classmethod
    def _default_account_id(cls, data: object) -> object:
        if isinstance(data, dict) and not data.get("account_id"):
            return {**data, "account_id": data.get("user", "")}
        return data


class MessageRef(BaseModel):
    """Protocol-level reference to one message (an IMAP UID)."""

    model_config = ConfigDict(frozen=True)

    uid: int = Field(ge=1, description="Message UID within the selected mailbox")


class RawMessage(BaseModel):
    """Unparsed message bytes for one pipeline invocation."""

    model_config = ConfigDict(frozen=True)

    account_id: str
    folder: str
    uid: int
    data: bytes = Field(repr=False)


class MailboxStatus(BaseModel):
    """State of a mailbox reported when it is opened."""

    model_config = ConfigDict(frozen=True)

    uidvalidity: int = Field(description="UIDVALIDITY of the selected mailbox")
    exists: int = Field(default=0, description="Number of messages in the mailbox")


class MailboxCursor(BaseModel):
    """Last processed position in a mailbox.

    A cursor is only meaningful while the server keeps the same UIDVALIDITY
    for the folder; a changed UIDVALIDITY renumbers every UID.
    """

    model_config = ConfigDict(frozen=True)

    folder: str
    uidvalidity: int
    last_uid: int = Field(default=0, ge=0)

    def advance(self, uid: int) -> "MailboxCursor":
        if uid <= self.last_uid:
            return self
        return self.model_copy(update={"last_uid": uid})

    def matches(self, folder: str, status: MailboxStatus) -> bool:
        return self.folder == folder and self.uidvalidity == status.uidvalidity


class SessionState(str, Enum):
    """Lifecycle states of an account session."""

    DISCONNECTED = "disconnected"
    CONNECTING = "connecting"
    BACKFILLING = "backfilling"
    WATCHING = "watching"
    REFRESHING = "refreshing"
    RECONNECTING = "reconnecting"


class SessionSignal(str, Enum):
    """Lifecycle signals a session reports to its supervisor."""

    STARTED = "started"
    WATCHING = "watching"
    FATAL = "fatal"
    CLOSED = "closed"
