"""Commit message helpers — provenance metadata in and out of commits.

A snapshot commit message has a human-readable summary line, a blank
line, and one ``Gitstate-Metadata:`` line holding compact JSON::

    save: 2 created, 0 updated, 1 deleted in radius/default

    Gitstate-Metadata: {"changes": {...}, "provenance": {...}, "scope": "radius/default"}
"""

from __future__ import annotations

import json
import logging

from pydantic import ValidationError

from gitstate.config import METADATA_TRAILER
from gitstate.errors import CorruptedObject, InvalidIdentity
from gitstate.models.snapshot import ChangeSummary, Provenance, SnapshotSummary
from gitstate.vcs.objects import CommitInfo

logger = logging.getLogger(__name__)


def summary_line(operation: str, scope: str, changes: ChangeSummary) -> str:
    return f"{operation}: {changes.describe()} in {scope}"


def render_message(
    scope: str,
    provenance: Provenance,
    changes: ChangeSummary,
    *,
    rollback_target: str | None = None,
) -> str:
    """Build the full commit message for a snapshot."""
    metadata: dict = {
        "scope": scope,
        "provenance": provenance.model_dump(mode="json"),
        "changes": changes.model_dump(mode="json"),
    }
    if rollback_target is not None:
        metadata["rollback_target"] = rollback_target
    payload = json.dumps(metadata, sort_keys=True, separators=(",", ":"))
    head = summary_line(provenance.operation, scope, changes)
    if rollback_target is not None:
        head += f" (rollback to {rollback_target[:12]})"
    return f"{head}\n\n{METADATA_TRAILER} {payload}\n"


def parse_commit(info: CommitInfo) -> SnapshotSummary:
    """Turn a commit into a :class:`SnapshotSummary`.

    Commits written by other tools carry no metadata line; they are
    summarised with no provenance and empty change lists.

    Raises
    ------
    CorruptedObject
        If the metadata line is present but cannot be decoded.
    """
    lines = info.message.splitlines()
    head = lines[0] if lines else ""
    summary = SnapshotSummary(
        snapshot_id=info.commit_id,
        tree_id=info.tree_id,
        parents=list(info.parents),
        message=head,
        timestamp=info.timestamp,
    )

    raw = next((ln[len(METADATA_TRAILER):].strip() for ln in lines if ln.startswith(METADATA_TRAILER)), None)
    if raw is None:
        logger.debug("Commit %s has no metadata line", info.commit_id[:12])
        return summary

    try:
        metadata = json.loads(raw)
        provenance = Provenance.model_validate(metadata["provenance"])
        changes = ChangeSummary.model_validate(metadata.get("changes", {}))
    except (json.JSONDecodeError, KeyError, TypeError, ValidationError, InvalidIdentity) as exc:
        raise CorruptedObject(
            f"snapshot {info.commit_id} has malformed metadata: {exc}",
            snapshot=info.commit_id,
        ) from exc

    summary.scope = metadata.get("scope", "")
    summary.provenance = provenance
    summary.changes = changes
    summary.timestamp = provenance.timestamp
    summary.rollback_target = metadata.get("rollback_target")
    return summary
