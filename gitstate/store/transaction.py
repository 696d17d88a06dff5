"""Transaction engine — batches of saves and deletes as one atomic snapshot.

A transaction captures the current version label of its scope root when
it opens.  Operations accumulate in memory; nothing is written until
commit.  Commit rebuilds only the tree nodes on the paths from changed
resources to the root (unchanged subtrees are reused by id), rewrites the
index of every rebuilt node, creates a commit whose parent is the
captured baseline, and publishes it with a compare-and-swap on the label.

Lifecycle::

    OPEN -> ACCUMULATING -> COMMITTING -> COMMITTED
                                       -> CONFLICT
    OPEN / ACCUMULATING -> CLOSED   (abort)
"""

from __future__ import annotations

import enum
import logging
import random
import threading
import time
from datetime import datetime, timezone

from gitstate.config import INDEX_ENTRY_NAME, StoreSettings
from gitstate.errors import (
    Conflict,
    CorruptedObject,
    InvalidIdentity,
    NotFound,
    OversizedResource,
    TransactionClosed,
)
from gitstate.models.identity import ResourceIdentity, Scope
from gitstate.models.resource import Resource
from gitstate.models.snapshot import ChangeSummary, SnapshotSummary
from gitstate.store.index import LEAF_DEPTH, IndexEntry, IndexMaintainer
from gitstate.store.paths import (
    check_collision,
    ref_name,
    to_path,
    unescape_segment,
)
from gitstate.store.provenance import ProvenanceDetector, SourceInfo
from gitstate.vcs.commits import render_message
from gitstate.vcs.objects import CasOutcome, ObjectAdapter, TreeEntry

logger = logging.getLogger(__name__)

# Changes relative to one tree node: escaped path below the node -> new value
_Changes = dict[tuple[str, ...], "Resource | None"]


class TransactionState(str, enum.Enum):
    OPEN = "open"
    ACCUMULATING = "accumulating"
    COMMITTING = "committing"
    COMMITTED = "committed"
    CONFLICT = "conflict"
    CLOSED = "closed"


_PENDING_STATES = (TransactionState.OPEN, TransactionState.ACCUMULATING)


class TransactionEngine:
    """Opens transactions and turns them into published snapshots.

    Parameters
    ----------
    objects:
        Object adapter of the backing repository.
    settings:
        Store settings (size limit, CAS retry bounds, ref prefix).
    detector:
        Provenance probe chain used when callers supply no source.
    """

    def __init__(
        self,
        objects: ObjectAdapter,
        settings: StoreSettings | None = None,
        detector: ProvenanceDetector | None = None,
    ) -> None:
        self.objects = objects
        self.settings = settings or StoreSettings()
        self.index = IndexMaintainer(objects)
        self.detector = detector or ProvenanceDetector(source_dir=self.settings.provenance_dir)
        self._scope_locks: dict[str, threading.Lock] = {}
        self._scope_locks_guard = threading.Lock()

    # -- Labels ---------------------------------------------------------------

    def label(self, scope: Scope) -> str:
        """Ref name of the version label owning *scope*."""
        return ref_name(scope, self.settings.ref_prefix)

    def current(self, scope: Scope) -> str | None:
        """Snapshot id the label of *scope* currently designates."""
        return self.objects.resolve_ref(self.label(scope))

    def _scope_lock(self, label: str) -> threading.Lock:
        with self._scope_locks_guard:
            lock = self._scope_locks.get(label)
            if lock is None:
                lock = self._scope_locks[label] = threading.Lock()
            return lock

    # -- Reads ----------------------------------------------------------------

    def read_resource(self, tree_id: str | None, identity: ResourceIdentity) -> Resource | None:
        """Load *identity* from a root tree, or *None* if absent."""
        if tree_id is None:
            return None
        entry = self.objects.entry_at(tree_id, to_path(identity))
        if entry is None:
            return None
        if entry.is_tree:
            raise CorruptedObject(
                f"resource {identity} is stored as a tree", identity=identity, snapshot=tree_id,
            )
        return Resource(identity=identity, payload=self.objects.read_object(entry.oid))

    # -- Transactions ---------------------------------------------------------

    def open(
        self,
        scope: Scope,
        *,
        operation: str = "save",
        source: SourceInfo | None = None,
        actor: str | None = None,
    ) -> Transaction:
        """Open a transaction against the current snapshot of *scope*'s root."""
        root = scope.root
        baseline = self.current(root)
        logger.debug("Opened transaction on %s at %s", root, baseline or "<empty>")
        return Transaction(
            self, root, baseline, operation=operation, source=source, actor=actor,
        )

    # -- Commit construction --------------------------------------------------

    def _rebuild(
        self,
        tree_id: str | None,
        prefix: tuple[str, ...],
        raw_prefix: tuple[str, ...],
        changes: _Changes,
    ) -> tuple[str | None, list[IndexEntry]]:
        """Rebuild one node bottom-up.

        Returns the new tree id (``None`` when the node became empty) and
        the index entries of everything below it.
        """
        existing: dict[str, TreeEntry] = {}
        if tree_id is not None:
            existing = {e.name: e for e in self.objects.list_tree(tree_id)}
            existing.pop(INDEX_ENTRY_NAME, None)
        entries = dict(existing)
        depth = len(prefix)

        if depth == LEAF_DEPTH:
            for (name,), resource in changes.items():
                if resource is None:
                    entries.pop(name, None)
                else:
                    blob_id = self.objects.write_blob(resource.payload)
                    self.index.remember_fingerprint(blob_id, resource.fingerprint)
                    entries[name] = TreeEntry(name=name, kind="blob", oid=blob_id)
            index_entries = []
            for name, entry in entries.items():
                if entry.is_tree:
                    raise CorruptedObject(
                        f"unexpected subtree {name!r} at resource level", snapshot=tree_id,
                    )
                index_entries.append(
                    IndexEntry(
                        identity=ResourceIdentity.from_segments([*raw_prefix, unescape_segment(name)]),
                        fingerprint=self.index.blob_fingerprint(entry.oid),
                    )
                )
        else:
            grouped: dict[str, _Changes] = {}
            raw_names: dict[str, str] = {}
            for path, resource in changes.items():
                grouped.setdefault(path[0], {})[path[1:]] = resource
                if resource is not None:
                    raw_names[path[0]] = resource.identity.segments[depth]

            index_entries = []
            for name, entry in existing.items():
                if name in grouped:
                    continue
                if not entry.is_tree:
                    raise CorruptedObject(
                        f"unexpected blob {name!r} at scope level {depth}", snapshot=tree_id,
                    )
                index_entries.extend(self.index.entries_for(entry.oid, (*prefix, name)))

            for name, sub_changes in grouped.items():
                child = existing.get(name)
                if child is not None and not child.is_tree:
                    raise CorruptedObject(
                        f"unexpected blob {name!r} at scope level {depth}", snapshot=tree_id,
                    )
                raw = raw_names.get(name) or unescape_segment(name)
                child_id, child_entries = self._rebuild(
                    child.oid if child is not None else None,
                    (*prefix, name),
                    (*raw_prefix, raw),
                    sub_changes,
                )
                if child_id is None:
                    entries.pop(name, None)
                else:
                    entries[name] = TreeEntry(name=name, kind="tree", oid=child_id)
                    index_entries.extend(child_entries)

        if not entries and depth > 0:
            return None, []

        index_blob = self.index.build_index(raw_prefix, index_entries)
        entries[INDEX_ENTRY_NAME] = TreeEntry(name=INDEX_ENTRY_NAME, kind="blob", oid=index_blob)
        return self.objects.build_tree(list(entries.values())), index_entries

    def build_root(
        self,
        base_tree: str | None,
        pending: dict[ResourceIdentity, Resource | None],
    ) -> str:
        """Apply *pending* to *base_tree* and return the new root tree id."""
        changes: _Changes = {to_path(identity): value for identity, value in pending.items()}
        tree_id, _ = self._rebuild(base_tree, (), (), changes)
        if tree_id is None:
            raise CorruptedObject("root tree vanished while rebuilding")
        return tree_id

    def publish(self, txn: Transaction, tree_id: str, changes: ChangeSummary) -> SnapshotSummary:
        """Create the snapshot commit and move the label onto it."""
        label = self.label(txn.scope)
        when = datetime.now(timezone.utc)
        provenance = self.detector.build(
            txn.operation,
            source=txn.source,
            actor=txn.actor,
            default_actor=self.settings.default_actor,
            detect=self.settings.detect_provenance,
            timestamp=when,
        )
        message = render_message(
            str(txn.scope), provenance, changes, rollback_target=txn.rollback_target,
        )
        parents = [txn.baseline] if txn.baseline else []
        commit_id = self.objects.create_commit(
            tree_id,
            parents,
            message,
            author_name=provenance.actor,
            timestamp=when,
        )

        attempts = self.settings.cas_attempts
        for attempt in range(attempts):
            outcome = self.objects.update_ref_atomic(
                label, txn.baseline, commit_id, reason=f"gitstate: {txn.operation}",
            )
            if outcome is CasOutcome.UPDATED:
                logger.info(
                    "Committed %s on %s: %s (%s)",
                    commit_id[:12], txn.scope, changes.describe(), txn.operation,
                )
                return SnapshotSummary(
                    snapshot_id=commit_id,
                    tree_id=tree_id,
                    parents=parents,
                    scope=str(txn.scope),
                    message=message.splitlines()[0],
                    timestamp=when,
                    provenance=provenance,
                    changes=changes,
                    rollback_target=txn.rollback_target,
                )
            if outcome is CasOutcome.CONFLICT:
                actual = self.objects.resolve_ref(label)
                raise Conflict(
                    f"scope {txn.scope} moved from {txn.baseline or '<empty>'} to "
                    f"{actual or '<empty>'} while the transaction was open",
                    scope=txn.scope,
                    snapshot=txn.baseline,
                    expected=txn.baseline,
                    actual=actual,
                )
            if attempt < attempts - 1:
                delay = min(self.settings.cas_backoff * (2 ** attempt), 0.2)
                time.sleep(random.uniform(0, delay))

        raise Conflict(
            f"label {label} stayed locked by another writer after {attempts} attempts",
            scope=txn.scope,
            snapshot=txn.baseline,
            expected=txn.baseline,
        )


class Transaction:
    """Process-local accumulation of pending operations on one scope root.

    Obtain through :meth:`TransactionEngine.open` or
    :meth:`gitstate.api.facade.StateStore.transaction`.  Usable as a
    context manager: leaving the block with an exception aborts, leaving it
    normally commits whatever is still pending.
    """

    def __init__(
        self,
        engine: TransactionEngine,
        scope: Scope,
        baseline: str | None,
        *,
        operation: str = "save",
        source: SourceInfo | None = None,
        actor: str | None = None,
    ) -> None:
        self.engine = engine
        self.scope = scope
        self.baseline = baseline
        self.operation = operation
        self.source = source
        self.actor = actor
        self.rollback_target: str | None = None
        self.from_scratch = False
        """Build the new tree from pending operations alone, ignoring the baseline tree."""
        self.state = TransactionState.OPEN
        self.result: SnapshotSummary | None = None
        self._baseline_tree = engine.objects.tree_of(baseline) if baseline else None
        self._pending: dict[ResourceIdentity, Resource | None] = {}
        self._known: dict[ResourceIdentity, str | None] = {}
        self._lock = threading.Lock()

    def __repr__(self) -> str:
        return (
            f"Transaction(scope={self.scope}, baseline={(self.baseline or 'none')[:12]}, "
            f"state={self.state.value}, pending={len(self._pending)})"
        )

    def __enter__(self) -> Transaction:
        return self

    def __exit__(self, exc_type, exc, tb) -> None:
        if self.state not in _PENDING_STATES:
            return
        if exc_type is not None:
            self.abort()
        else:
            self.commit()

    # -- Inspection -----------------------------------------------------------

    @property
    def pending(self) -> dict[ResourceIdentity, Resource | None]:
        return dict(self._pending)

    @property
    def is_closed(self) -> bool:
        return self.state not in _PENDING_STATES

    def _require_pending(self) -> None:
        if self.state not in _PENDING_STATES:
            raise TransactionClosed(
                f"transaction on {self.scope} is {self.state.value}",
                scope=self.scope,
                snapshot=self.baseline,
            )

    def _baseline_fingerprint(self, identity: ResourceIdentity) -> str | None:
        if identity not in self._known:
            resource = self.engine.read_resource(self._baseline_tree, identity)
            self._known[identity] = resource.fingerprint if resource else None
        return self._known[identity]

    def fingerprint(self, identity: ResourceIdentity) -> str | None:
        """Fingerprint of *identity* as this transaction currently sees it."""
        if identity in self._pending:
            value = self._pending[identity]
            return value.fingerprint if value is not None else None
        return self._baseline_fingerprint(identity)

    def _check_identity(self, identity: ResourceIdentity) -> None:
        if not self.scope.contains(identity):
            raise InvalidIdentity(
                f"{identity} is outside transaction scope {self.scope}",
                identity=identity,
                scope=self.scope,
            )
        if self._baseline_tree is None:
            return
        path = to_path(identity)
        node = self._baseline_tree
        for depth, escaped in enumerate(path):
            siblings = [e.name for e in self.engine.objects.list_tree(node)]
            check_collision(identity.segments[depth], escaped, siblings, identity=identity)
            entry = self.engine.objects.entry_at(node, (escaped,))
            if entry is None or not entry.is_tree:
                return
            node = entry.oid

    def _check_expected(self, identity: ResourceIdentity, expected: str | None) -> str | None:
        actual = self.fingerprint(identity)
        if expected is not None and expected != actual:
            raise Conflict(
                f"{identity} has fingerprint {actual or '<absent>'}, expected {expected}",
                identity=identity,
                scope=self.scope,
                snapshot=self.baseline,
                expected=expected,
                actual=actual,
            )
        return actual

    # -- Operations -----------------------------------------------------------

    def save(self, resource: Resource, expected_fingerprint: str | None = None) -> str:
        """Stage a create or update and return the new fingerprint.

        Raises
        ------
        OversizedResource
            If the payload exceeds the configured limit.
        Conflict
            If *expected_fingerprint* is given and does not match.
        InvalidIdentity
            If the identity is outside the scope or collides with an
            existing entry.
        """
        with self._lock:
            self._require_pending()
            identity = resource.identity
            limit = self.engine.settings.max_resource_bytes
            if resource.size > limit:
                raise OversizedResource(
                    f"{identity} is {resource.size} bytes, limit is {limit}",
                    identity=identity,
                    scope=self.scope,
                    size=resource.size,
                    limit=limit,
                )
            self._check_identity(identity)
            self._check_expected(identity, expected_fingerprint)
            self._pending[identity] = resource
            self.state = TransactionState.ACCUMULATING
            return resource.fingerprint

    def delete(self, identity: ResourceIdentity, expected_fingerprint: str | None = None) -> None:
        """Stage a delete.

        Raises
        ------
        NotFound
            If the resource does not exist in this transaction's view.
        Conflict
            If *expected_fingerprint* is given and does not match.
        """
        with self._lock:
            self._require_pending()
            self._check_identity(identity)
            actual = self._check_expected(identity, expected_fingerprint)
            if actual is None:
                raise NotFound(
                    f"{identity} does not exist", identity=identity, scope=self.scope,
                    snapshot=self.baseline,
                )
            self._pending[identity] = None
            self.state = TransactionState.ACCUMULATING

    def abort(self) -> None:
        """Discard every pending operation.  Nothing was ever published."""
        with self._lock:
            self._require_pending()
            self._pending.clear()
            self.state = TransactionState.CLOSED
            logger.debug("Aborted transaction on %s", self.scope)

    def changes(self) -> ChangeSummary:
        """Summarise pending operations against the baseline."""
        summary = ChangeSummary()
        for identity in sorted(self._pending, key=lambda i: i.segments):
            value = self._pending[identity]
            before = self._baseline_fingerprint(identity)
            if value is None:
                if before is not None:
                    summary.deleted.append(identity)
            elif before is None:
                summary.created.append(identity)
            elif before != value.fingerprint:
                summary.updated.append(identity)
        return summary

    def commit(self) -> SnapshotSummary:
        """Publish all pending operations as one snapshot.

        Raises
        ------
        Conflict
            If the scope's label moved since the transaction opened.  The
            transaction is then finished; open a new one to retry.
        """
        with self._lock:
            self._require_pending()
            self.state = TransactionState.COMMITTING
            lock = None
            if self.engine.settings.serialize_commits:
                lock = self.engine._scope_lock(self.engine.label(self.scope))
                lock.acquire()
            try:
                base_tree = None if self.from_scratch else self._baseline_tree
                tree_id = self.engine.build_root(base_tree, self._pending)
                self.result = self.engine.publish(self, tree_id, self.changes())
            except Conflict:
                self.state = TransactionState.CONFLICT
                raise
            except BaseException:
                self.state = TransactionState.CLOSED
                raise
            finally:
                if lock is not None:
                    lock.release()
            self.state = TransactionState.COMMITTED
            return self.result
