"""Snapshot summaries, provenance records and change sets."""

from __future__ import annotations

from datetime import datetime, timezone

from pydantic import BaseModel, Field

from gitstate.models.identity import ResourceIdentity

UNKNOWN = "unknown"


def _utc_now() -> datetime:
    return datetime.now(timezone.utc)


class Provenance(BaseModel):
    """Links a snapshot to the external source revision that produced it."""

    repository: str = UNKNOWN
    ref: str = UNKNOWN
    revision: str = UNKNOWN
    operation: str = "save"
    actor: str = UNKNOWN
    timestamp: datetime = Field(default_factory=_utc_now)
    detected: bool = True
    """False when the source could not be determined and ``unknown`` was recorded."""

    detector: str = ""
    """Name of the probe (or ``caller``) that supplied the source fields."""

    warnings: list[str] = Field(default_factory=list)

    @property
    def is_unknown(self) -> bool:
        return self.repository == UNKNOWN and self.revision == UNKNOWN


class ChangeSummary(BaseModel):
    """Which identities one transaction created, updated and deleted."""

    created: list[ResourceIdentity] = Field(default_factory=list)
    updated: list[ResourceIdentity] = Field(default_factory=list)
    deleted: list[ResourceIdentity] = Field(default_factory=list)

    @property
    def counts(self) -> dict[str, int]:
        return {
            "created": len(self.created),
            "updated": len(self.updated),
            "deleted": len(self.deleted),
        }

    @property
    def total(self) -> int:
        return len(self.created) + len(self.updated) + len(self.deleted)

    def describe(self) -> str:
        c = self.counts
        return f"{c['created']} created, {c['updated']} updated, {c['deleted']} deleted"


class ChangeSet(ChangeSummary):
    """Result of comparing two snapshots (``from`` → ``to``)."""

    @property
    def is_empty(self) -> bool:
        return self.total == 0

    def inverted(self) -> ChangeSet:
        """The change set that undoes this one (``to`` → ``from``)."""
        return ChangeSet(
            created=list(self.deleted),
            updated=list(self.updated),
            deleted=list(self.created),
        )


class SnapshotSummary(BaseModel):
    """A committed, immutable state of one scope root."""

    snapshot_id: str
    tree_id: str
    parents: list[str] = Field(default_factory=list)
    scope: str = ""
    message: str = ""
    timestamp: datetime | None = None
    provenance: Provenance | None = None
    changes: ChangeSummary = Field(default_factory=ChangeSummary)
    rollback_target: str | None = None

    @property
    def parent(self) -> str | None:
        return self.parents[0] if self.parents else None

    @property
    def short_id(self) -> str:
        return self.snapshot_id[:12]


class HistoryRange(BaseModel):
    """Bounds for a history listing.

    ``start`` is the newest snapshot to include (defaults to the current
    label), ``stop`` is an ancestor at which the walk ends (exclusive),
    ``max_count`` caps the number of returned entries.
    """

    start: str | None = None
    stop: str | None = None
    max_count: int | None = Field(default=None, ge=1)
