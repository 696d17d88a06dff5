"""History, diff and rollback over snapshot ancestry.

History is append-only: rollback never moves a label backwards.  It
replays the target's resource set as a new transaction on top of the
current snapshot, so the old snapshots stay reachable.
"""

from __future__ import annotations

import logging

from gitstate.config import INDEX_ENTRY_NAME
from gitstate.errors import NotFound
from gitstate.models.identity import ResourceIdentity, Scope
from gitstate.models.resource import Resource
from gitstate.models.snapshot import ChangeSet, HistoryRange, SnapshotSummary
from gitstate.store.index import LEAF_DEPTH
from gitstate.store.paths import from_path, scope_path
from gitstate.store.provenance import SourceInfo
from gitstate.store.transaction import TransactionEngine
from gitstate.vcs.commits import parse_commit
from gitstate.vcs.objects import TreeEntry

logger = logging.getLogger(__name__)


class HistoryEngine:
    """Walks, compares and restores snapshots of a store.

    Parameters
    ----------
    engine:
        The transaction engine whose labels and objects are inspected.
    """

    def __init__(self, engine: TransactionEngine) -> None:
        self.engine = engine
        self.objects = engine.objects

    # -- Snapshots ------------------------------------------------------------

    def snapshot(self, snapshot_id: str) -> SnapshotSummary:
        """Summary of a single snapshot."""
        commit_id = self.objects.resolve_commit(snapshot_id)
        return parse_commit(self.objects.commit_info(commit_id))

    def list_history(self, scope: Scope, span: HistoryRange | None = None) -> list[SnapshotSummary]:
        """Snapshots of *scope*'s root, newest first.

        Follows first parents from ``span.start`` (default: the current
        label) until ``span.stop`` (exclusive) or ``span.max_count``.
        """
        span = span or HistoryRange()
        start = span.start or self.engine.current(scope.root)
        if start is None:
            return []
        start = self.objects.resolve_commit(start)
        stop = self.objects.resolve_commit(span.stop) if span.stop else None
        commit_ids = self.objects.rev_list(start, stop=stop, max_count=span.max_count)
        return [parse_commit(self.objects.commit_info(cid)) for cid in commit_ids]

    def resources_at(self, snapshot_id: str, scope: Scope | None = None) -> dict[ResourceIdentity, Resource]:
        """Materialize every resource of a snapshot (optionally under *scope*)."""
        tree_id = self.objects.tree_of(self.objects.resolve_commit(snapshot_id))
        prefix: tuple[str, ...] = ()
        if scope is not None:
            prefix = scope_path(scope)
            node = self.objects.entry_at(tree_id, prefix)
            if node is None or not node.is_tree:
                return {}
            tree_id = node.oid

        resources: dict[ResourceIdentity, Resource] = {}
        self._collect(tree_id, prefix, resources)
        return resources

    def _collect(
        self,
        tree_id: str,
        prefix: tuple[str, ...],
        out: dict[ResourceIdentity, Resource],
    ) -> None:
        for entry in self.objects.list_tree(tree_id):
            if entry.name.startswith("."):
                continue
            path = (*prefix, entry.name)
            if len(prefix) == LEAF_DEPTH:
                identity = from_path(path)
                out[identity] = Resource(identity=identity, payload=self.objects.read_object(entry.oid))
            elif entry.is_tree:
                self._collect(entry.oid, path, out)

    # -- Diff -----------------------------------------------------------------

    def diff(
        self,
        snapshot_a: str | None,
        snapshot_b: str | None,
        scope: Scope | None = None,
    ) -> ChangeSet:
        """Changes that turn snapshot *a* into snapshot *b*.

        Either side may be *None* for the empty state.  With *scope* only
        the subtrees at that scope's path are compared.  Subtrees with
        equal ids are skipped without being read.
        """
        prefix = scope_path(scope) if scope is not None else ()
        tree_a = self._subtree(snapshot_a, prefix)
        tree_b = self._subtree(snapshot_b, prefix)
        result = ChangeSet()
        self._diff_trees(tree_a, tree_b, prefix, result)
        for bucket in (result.created, result.updated, result.deleted):
            bucket.sort(key=lambda i: i.segments)
        return result

    def _subtree(self, snapshot_id: str | None, prefix: tuple[str, ...]) -> str | None:
        if not snapshot_id:
            return None
        tree_id = self.objects.tree_of(self.objects.resolve_commit(snapshot_id))
        if not prefix:
            return tree_id
        node = self.objects.entry_at(tree_id, prefix)
        return node.oid if node is not None and node.is_tree else None

    def _entries(self, tree_id: str | None) -> dict[str, TreeEntry]:
        if tree_id is None:
            return {}
        return {e.name: e for e in self.objects.list_tree(tree_id) if e.name != INDEX_ENTRY_NAME}

    def _diff_trees(
        self,
        tree_a: str | None,
        tree_b: str | None,
        prefix: tuple[str, ...],
        result: ChangeSet,
    ) -> None:
        if tree_a == tree_b:
            return
        entries_a = self._entries(tree_a)
        entries_b = self._entries(tree_b)
        leaf = len(prefix) == LEAF_DEPTH

        for name in sorted(entries_a.keys() | entries_b.keys()):
            if name.startswith("."):
                continue
            a = entries_a.get(name)
            b = entries_b.get(name)
            if a is not None and b is not None and a.oid == b.oid:
                continue
            path = (*prefix, name)
            if leaf:
                identity = from_path(path)
                if a is None:
                    result.created.append(identity)
                elif b is None:
                    result.deleted.append(identity)
                else:
                    result.updated.append(identity)
            else:
                self._diff_trees(
                    a.oid if a is not None and a.is_tree else None,
                    b.oid if b is not None and b.is_tree else None,
                    path,
                    result,
                )

    # -- Rollback -------------------------------------------------------------

    def preview(self, scope: Scope, target: str) -> ChangeSet:
        """What a rollback of *scope* to *target* would change.

        Only resources under *scope* are listed; the rest of the scope
        root is left as it is.
        """
        current = self.engine.current(scope.root)
        target_id = self._reachable_target(scope, current, target)
        return self.diff(current, target_id, scope)

    def _reachable_target(self, scope: Scope, current: str | None, target: str) -> str:
        target_id = self.objects.resolve_commit(target)
        if current is None or not self.objects.is_ancestor(target_id, current):
            raise NotFound(
                f"snapshot {target} is not in the history of {scope.root}",
                scope=scope.root,
                snapshot=target,
            )
        return target_id

    def rollback(
        self,
        scope: Scope,
        target: str,
        *,
        source: SourceInfo | None = None,
        actor: str | None = None,
    ) -> SnapshotSummary:
        """Restore the resources under *scope* to their state at *target*.

        Resources outside *scope* keep their current content.  The new
        snapshot's parent is the current snapshot, never *target*.

        Raises
        ------
        NotFound
            If *target* is not reachable from the current label.
        Conflict
            If the label moves while the rollback is being committed.
        """
        txn = self.engine.open(scope, operation="rollback", source=source, actor=actor)
        target_id = self._reachable_target(scope, txn.baseline, target)
        txn.rollback_target = target_id

        changes = self.diff(txn.baseline, target_id, scope)
        target_tree = self.objects.tree_of(target_id)
        for identity in [*changes.created, *changes.updated]:
            resource = self.engine.read_resource(target_tree, identity)
            if resource is None:
                raise NotFound(f"{identity} vanished from {target_id}", identity=identity, snapshot=target_id)
            txn.save(resource)
        for identity in changes.deleted:
            txn.delete(identity)

        summary = txn.commit()
        logger.info(
            "Rolled back %s to %s as %s (%s)",
            scope.root, target_id[:12], summary.snapshot_id[:12], changes.describe(),
        )
        return summary
