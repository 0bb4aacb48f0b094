"""Custom exceptions for the mailbox synchronization engine."""


class OneboxSyncError(Exception):
    """Base exception for all onebox-sync errors."""


class TransportError(OneboxSyncError):
    """Exception raised when the mail transport fails (connect, auth, fetch, watch)."""


class ParseError(OneboxSyncError):
    """Exception raised when a raw message cannot be normalized."""


class ClassificationError(OneboxSyncError):
    """Exception raised when the classifier fails or returns malformed output."""


class SearchIndexError(OneboxSyncError):
    """Exception raised for search index read/write failures."""


class NotifyError(OneboxSyncError):
    """Exception raised when a notification sink fails to deliver."""


class ConfigurationError(OneboxSyncError):
    """Exception raised for configuration related errors."""


class InvalidTransitionError(OneboxSyncError):
    """Exception raised when a session attempts an illegal state transition."""
