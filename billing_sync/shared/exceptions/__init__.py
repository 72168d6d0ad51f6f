"""
Excepciones del pipeline de sincronización.
"""
from billing_sync.shared.exceptions.base import SyncException
from billing_sync.shared.exceptions.sync import (
    DestinationError,
    MissingParentError,
    PageLimitReached,
    PaginationCeilingReached,
    RateLimitedError,
    RecordAlreadyExistsError,
    RemoteCallError,
    SourceApiError,
    SyncConfigError,
    SystemicSyncError,
    TransientDestinationError,
    TransientRemoteError,
)

__all__ = [
    "SyncException",
    "SyncConfigError",
    "RemoteCallError",
    "TransientRemoteError",
    "RateLimitedError",
    "SourceApiError",
    "PaginationCeilingReached",
    "PageLimitReached",
    "DestinationError",
    "TransientDestinationError",
    "MissingParentError",
    "RecordAlreadyExistsError",
    "SystemicSyncError",
]
