"""
Cloud sync -- push the local state to one remote document, pull it back.

Every upload is a CloudSyncEnvelope carrying per-section hashes so a pull
only imports the sections that actually changed. Encryption is optional
and uses the same envelope as encrypted backups.

Transports: WebDAV (HTTP PUT/GET) and a local file path.
"""

from .engine import CloudSyncEngine, PullResult, SyncNotConfigured
from .transport import RemoteNotFound, TransportError

__all__ = [
    "CloudSyncEngine",
    "PullResult",
    "RemoteNotFound",
    "SyncNotConfigured",
    "TransportError",
]
