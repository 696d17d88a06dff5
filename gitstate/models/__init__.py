"""Data models for resources, scopes and snapshots."""

from gitstate.models.identity import ResourceIdentity, Scope
from gitstate.models.resource import Resource, fingerprint_of
from gitstate.models.snapshot import (
    ChangeSet,
    ChangeSummary,
    HistoryRange,
    Provenance,
    SnapshotSummary,
)

__all__ = [
    "ChangeSet",
    "ChangeSummary",
    "HistoryRange",
    "Provenance",
    "Resource",
    "ResourceIdentity",
    "Scope",
    "SnapshotSummary",
    "fingerprint_of",
]
