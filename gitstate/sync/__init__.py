"""Remote synchronisation of version labels."""

from gitstate.sync.credentials import CredentialProvider, NoCredentials, StaticCredentials
from gitstate.sync.manager import SyncManager, SyncResult

__all__ = [
    "CredentialProvider",
    "NoCredentials",
    "StaticCredentials",
    "SyncManager",
    "SyncResult",
]
