"""gitstate — a transactional, version-controlled resource store on git objects."""

__version__ = "0.1.0"

from gitstate.api.facade import StateStore
from gitstate.config import StoreSettings, load_settings
from gitstate.errors import (
    Conflict,
    CorruptedObject,
    DivergedHistory,
    InvalidIdentity,
    NotFound,
    OversizedResource,
    Rejected,
    StateStoreError,
    StorageExhausted,
    TransactionClosed,
)
from gitstate.models.identity import ResourceIdentity, Scope
from gitstate.models.resource import Resource, fingerprint_of
from gitstate.models.snapshot import (
    ChangeSet,
    ChangeSummary,
    HistoryRange,
    Provenance,
    SnapshotSummary,
)
from gitstate.store.provenance import ProvenanceDetector, SourceInfo
from gitstate.store.transaction import Transaction, TransactionState
from gitstate.sync.credentials import CredentialProvider, StaticCredentials
from gitstate.sync.manager import SyncResult

__all__ = [
    "__version__",
    # Facade
    "StateStore",
    # Configuration
    "StoreSettings",
    "load_settings",
    # Models
    "ChangeSet",
    "ChangeSummary",
    "HistoryRange",
    "Provenance",
    "Resource",
    "ResourceIdentity",
    "Scope",
    "SnapshotSummary",
    "fingerprint_of",
    # Transactions
    "ProvenanceDetector",
    "SourceInfo",
    "Transaction",
    "TransactionState",
    # Sync
    "CredentialProvider",
    "StaticCredentials",
    "SyncResult",
    # Errors
    "Conflict",
    "CorruptedObject",
    "DivergedHistory",
    "InvalidIdentity",
    "NotFound",
    "OversizedResource",
    "Rejected",
    "StateStoreError",
    "StorageExhausted",
    "TransactionClosed",
]
