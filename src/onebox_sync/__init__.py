"""onebox-sync - multi-account mailbox synchronization engine.

This package keeps several IMAP mailboxes in sync through IDLE, classifies
each new message with a local Ollama model, indexes it for search and
alerts on interested leads.
"""

__version__ = "0.1.0"

from onebox_sync.config import Settings, get_settings

__all__ = ["Settings", "get_settings", "__version__"]
