"""Index maintainer — flat per-scope listings stored beside the resources.

Every tree node of a snapshot carries a ``.index`` blob listing the
identity and fingerprint of each resource below it.  The index is derived
data: it is rebuilt from the authoritative tree whenever a transaction
touches the node, and a missing or unreadable index is reconstructed by
walking the tree.
"""

from __future__ import annotations

import json
import logging
from dataclasses import dataclass, field

from gitstate.config import INDEX_ENTRY_NAME, INDEX_FORMAT_VERSION
from gitstate.errors import CorruptedObject, InvalidIdentity, NotFound
from gitstate.models.identity import ResourceIdentity, Scope
from gitstate.models.resource import fingerprint_of
from gitstate.store.paths import from_path, scope_path, unescape_segment
from gitstate.vcs.objects import ObjectAdapter, TreeEntry

logger = logging.getLogger(__name__)

# Depth of the tree level whose entries are resource blobs
LEAF_DEPTH = 4


@dataclass(frozen=True)
class IndexEntry:
    """Identity and fingerprint of one resource."""

    identity: ResourceIdentity
    fingerprint: str

    def to_dict(self) -> dict[str, str]:
        data = self.identity.model_dump()
        data["fingerprint"] = self.fingerprint
        return data

    @classmethod
    def from_dict(cls, data: dict) -> IndexEntry:
        fingerprint = data["fingerprint"]
        identity = ResourceIdentity(**{k: v for k, v in data.items() if k != "fingerprint"})
        return cls(identity=identity, fingerprint=fingerprint)


@dataclass
class IndexReport:
    """Outcome of validating stored indexes against the tree."""

    snapshot_id: str
    scope: str
    nodes_checked: int = 0
    missing: list[str] = field(default_factory=list)
    mismatched: list[str] = field(default_factory=list)

    @property
    def is_valid(self) -> bool:
        return not self.missing and not self.mismatched


def _sort_key(entry: IndexEntry) -> tuple[str, ...]:
    return entry.identity.segments


class IndexMaintainer:
    """Build, read, query and validate scope indexes.

    Parameters
    ----------
    objects:
        Object adapter of the backing repository.
    """

    def __init__(self, objects: ObjectAdapter) -> None:
        self.objects = objects
        # blob id -> sha256 of its content; blob ids never change meaning
        self._fingerprints: dict[str, str] = {}

    def blob_fingerprint(self, blob_id: str) -> str:
        """Fingerprint of a resource blob, read from the object store once."""
        fingerprint = self._fingerprints.get(blob_id)
        if fingerprint is None:
            fingerprint = fingerprint_of(self.objects.read_object(blob_id))
            self._fingerprints[blob_id] = fingerprint
        return fingerprint

    def remember_fingerprint(self, blob_id: str, fingerprint: str) -> None:
        """Record the fingerprint of a blob this process has just written."""
        self._fingerprints[blob_id] = fingerprint

    # -- Writing --------------------------------------------------------------

    @staticmethod
    def encode(prefix: tuple[str, ...], entries: list[IndexEntry]) -> bytes:
        """Serialize an index deterministically."""
        doc = {
            "version": INDEX_FORMAT_VERSION,
            "prefix": list(prefix),
            "entries": [e.to_dict() for e in sorted(entries, key=_sort_key)],
        }
        return json.dumps(doc, sort_keys=True, separators=(",", ":")).encode("utf-8")

    def build_index(self, prefix: tuple[str, ...], entries: list[IndexEntry]) -> str:
        """Write the index for the node at raw *prefix* and return its blob id."""
        return self.objects.write_blob(self.encode(prefix, entries))

    # -- Reading --------------------------------------------------------------

    def read_index(self, tree_id: str) -> list[IndexEntry] | None:
        """Return the stored index of a tree node, or *None* if unusable."""
        entry = next(
            (e for e in self.objects.list_tree(tree_id) if e.name == INDEX_ENTRY_NAME),
            None,
        )
        if entry is None:
            return None
        try:
            doc = json.loads(self.objects.read_object(entry.oid).decode("utf-8"))
            if doc.get("version") != INDEX_FORMAT_VERSION:
                raise ValueError(f"unsupported index version {doc.get('version')!r}")
            return [IndexEntry.from_dict(item) for item in doc["entries"]]
        except (CorruptedObject, NotFound, InvalidIdentity, ValueError, KeyError, TypeError) as exc:
            logger.warning("Index %s in tree %s is unusable: %s", entry.oid[:12], tree_id[:12], exc)
            return None

    def walk_entries(self, tree_id: str, prefix: tuple[str, ...]) -> list[IndexEntry]:
        """Reconstruct the listing of a node by walking its subtree.

        *prefix* is the escaped tree path of the node.
        """
        return self._walk(tree_id, prefix, {})

    def _walk(
        self,
        tree_id: str,
        prefix: tuple[str, ...],
        memo: dict[tuple[tuple[str, ...], str], list[IndexEntry]],
    ) -> list[IndexEntry]:
        key = (prefix, tree_id)
        if key in memo:
            return memo[key]

        entries: list[IndexEntry] = []
        for child in self.objects.list_tree(tree_id):
            if child.name.startswith("."):
                continue
            path = (*prefix, child.name)
            if len(prefix) == LEAF_DEPTH:
                if child.is_tree:
                    raise CorruptedObject(
                        f"unexpected subtree at resource path {'/'.join(path)}", snapshot=tree_id,
                    )
                fingerprint = self.blob_fingerprint(child.oid)
                entries.append(IndexEntry(identity=from_path(path), fingerprint=fingerprint))
            elif child.is_tree:
                entries.extend(self._walk(child.oid, path, memo))
            else:
                raise CorruptedObject(
                    f"unexpected blob at scope path {'/'.join(path)}", snapshot=tree_id,
                )
        entries.sort(key=_sort_key)
        memo[key] = entries
        return entries

    def entries_for(self, tree_id: str, prefix: tuple[str, ...]) -> list[IndexEntry]:
        """Return the listing of a node, preferring the stored index."""
        stored = self.read_index(tree_id)
        if stored is not None:
            return stored
        logger.warning(
            "Rebuilding missing index for %s by tree walk",
            "/".join(unescape_segment(p) for p in prefix) or "<root>",
        )
        return self.walk_entries(tree_id, prefix)

    # -- Queries --------------------------------------------------------------

    def scope_entries(self, snapshot_id: str, scope: Scope) -> list[IndexEntry]:
        """All index entries under *scope* in the given snapshot."""
        tree_id = self.objects.tree_of(snapshot_id)
        path = scope_path(scope)
        node = self.objects.entry_at(tree_id, path)
        if node is None:
            return []
        if not node.is_tree:
            raise CorruptedObject(f"scope {scope} is not a tree", scope=scope, snapshot=snapshot_id)
        return self.entries_for(node.oid, path)

    def query_index(
        self,
        snapshot_id: str,
        scope: Scope,
        type_filter: str | None = None,
    ) -> list[ResourceIdentity]:
        """Identities under *scope*, optionally limited to one resource type."""
        return [
            e.identity
            for e in self.scope_entries(snapshot_id, scope)
            if type_filter is None or e.identity.resource_type == type_filter
        ]

    # -- Validation -----------------------------------------------------------

    def validate(self, snapshot_id: str, scope: Scope) -> IndexReport:
        """Compare every stored index under *scope* with a full tree walk."""
        report = IndexReport(snapshot_id=snapshot_id, scope=str(scope))
        tree_id = self.objects.tree_of(snapshot_id)
        path = scope_path(scope)
        node = self.objects.entry_at(tree_id, path)
        if node is None:
            return report
        self._validate_node(node, path, report, {})
        if not report.is_valid:
            logger.warning(
                "Index validation of %s at %s: %d missing, %d mismatched",
                scope, snapshot_id[:12], len(report.missing), len(report.mismatched),
            )
        return report

    def _validate_node(
        self,
        node: TreeEntry,
        prefix: tuple[str, ...],
        report: IndexReport,
        memo: dict[tuple[tuple[str, ...], str], list[IndexEntry]],
    ) -> None:
        report.nodes_checked += 1
        label = "/".join(prefix)
        stored = self.read_index(node.oid)
        actual = self._walk(node.oid, prefix, memo)
        if stored is None:
            report.missing.append(label)
        elif sorted(stored, key=_sort_key) != actual:
            report.mismatched.append(label)

        if len(prefix) >= LEAF_DEPTH:
            return
        for child in self.objects.list_tree(node.oid):
            if child.is_tree and not child.name.startswith("."):
                self._validate_node(child, (*prefix, child.name), report, memo)
