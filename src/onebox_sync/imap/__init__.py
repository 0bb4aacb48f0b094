"""IMAP transport and RFC 822 parsing."""

from .client import ImapMailboxClient
from .parsing import Rfc822MessageParser

__all__ = ["ImapMailboxClient", "Rfc822MessageParser"]
