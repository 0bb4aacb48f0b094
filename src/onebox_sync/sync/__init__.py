"""Account sessions, their supervisor and the shared ingestion pipeline."""

from .backoff import BackoffPolicy
from .keepalive import KeepaliveScheduler, RenewalInFlightError
from .pipeline import IngestionPipeline, PipelineStats
from .session import AccountSession, SessionEvent, WatchReason
from .supervisor import SessionHandle, SyncSupervisor

__all__ = [
    "AccountSession",
    "BackoffPolicy",
    "IngestionPipeline",
    "KeepaliveScheduler",
    "PipelineStats",
    "RenewalInFlightError",
    "SessionEvent",
    "SessionHandle",
    "SyncSupervisor",
    "WatchReason",
]
