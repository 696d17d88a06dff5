"""StateStore — the single entry point for the versioned resource store.

Usage::

    from gitstate import ResourceIdentity, Resource, Scope, StateStore

    store = StateStore("/var/lib/gitstate/repo")
    ident = ResourceIdentity(plane="radius", resource_group="default",
                             provider="Applications.Core",
                             resource_type="containers", name="frontend")
    fp = store.save(Resource.from_json(ident, {"image": "nginx"}))
    store.get(ident)
    store.query(Scope.parse("radius/default"), type_filter="containers")
    with store.transaction(ident.scope) as txn:
        txn.save(...)
        txn.delete(...)
    store.history(ident.scope)
    store.rollback(ident.scope, older_snapshot_id)
    store.push(ident.scope, "origin")
"""

from __future__ import annotations

import logging
from pathlib import Path
from typing import Any

from gitstate.config import StoreSettings, configure_logging, load_settings
from gitstate.errors import NotFound
from gitstate.models.identity import ResourceIdentity, Scope
from gitstate.models.resource import Resource
from gitstate.models.snapshot import ChangeSet, HistoryRange, SnapshotSummary
from gitstate.store.index import IndexReport
from gitstate.store.paths import unescape_segment
from gitstate.store.provenance import ProvenanceDetector, SourceInfo
from gitstate.store.transaction import Transaction, TransactionEngine
from gitstate.sync.credentials import CredentialProvider
from gitstate.sync.manager import SyncManager, SyncResult
from gitstate.vcs.history import HistoryEngine
from gitstate.vcs.objects import ObjectAdapter
from gitstate.vcs.repo import RepoManager

logger = logging.getLogger(__name__)


class StateStore:
    """CRUD, query, history and sync over one git repository.

    Reads never lock and never take part in compare-and-swap: they
    resolve the label once and read that complete snapshot.

    Parameters
    ----------
    repo_path:
        Repository location.  Initialised as a bare repository if absent.
    settings:
        Explicit settings.  Loaded with :func:`load_settings` when omitted.
    credentials:
        Transport credentials for :meth:`push` and :meth:`pull`.
    detector:
        Provenance probe chain; defaults to environment, CI and ambient git.
    **overrides:
        Individual setting overrides applied on top of loaded settings.
    """

    def __init__(
        self,
        repo_path: str | Path,
        *,
        settings: StoreSettings | None = None,
        credentials: CredentialProvider | None = None,
        detector: ProvenanceDetector | None = None,
        **overrides: Any,
    ) -> None:
        self.repo = RepoManager(repo_path)
        self.repo.ensure_repo()
        if settings is None:
            settings = load_settings(self.repo.path, **overrides)
        elif overrides:
            settings = settings.model_copy(update=overrides)
        self.settings = settings
        configure_logging(settings)

        self.objects = ObjectAdapter(
            self.repo.path,
            committer_name=settings.committer_name,
            committer_email=settings.committer_email,
        )
        self.engine = TransactionEngine(self.objects, settings, detector)
        self.index = self.engine.index
        self.history_engine = HistoryEngine(self.engine)
        self.sync_manager = SyncManager(self.engine, credentials)

    @property
    def path(self) -> Path:
        return self.repo.path

    # -- Labels ---------------------------------------------------------------

    def current(self, scope: Scope) -> str | None:
        """Snapshot id currently designated by the label of *scope*'s root."""
        return self.engine.current(scope)

    def scopes(self) -> list[Scope]:
        """All scope roots that have a version label."""
        prefix = self.settings.ref_prefix.rstrip("/")
        roots: list[Scope] = []
        for name in sorted(self.repo.list_refs(prefix)):
            parts = name[len(prefix) + 1:].split("/")
            if len(parts) != 2:
                continue
            roots.append(Scope.from_segments([unescape_segment(p) for p in parts]))
        return roots

    def _snapshot_for(self, scope: Scope, at: str | None) -> str | None:
        if at is not None:
            return self.objects.resolve_commit(at)
        return self.engine.current(scope)

    # -- CRUD -----------------------------------------------------------------

    def get(self, identity: ResourceIdentity, at: str | None = None) -> Resource:
        """Return the resource at the current (or given) snapshot.

        Raises
        ------
        NotFound
            If the identity is absent from the snapshot.
        """
        snapshot = self._snapshot_for(identity.scope, at)
        resource = None
        if snapshot is not None:
            resource = self.engine.read_resource(self.objects.tree_of(snapshot), identity)
        if resource is None:
            raise NotFound(f"{identity} does not exist", identity=identity, snapshot=snapshot)
        return resource

    def exists(self, identity: ResourceIdentity, at: str | None = None) -> bool:
        try:
            self.get(identity, at)
        except NotFound:
            return False
        return True

    def transaction(
        self,
        scope: Scope,
        *,
        operation: str = "save",
        source: SourceInfo | None = None,
        actor: str | None = None,
    ) -> Transaction:
        """Open a transaction on the root of *scope*."""
        return self.engine.open(scope, operation=operation, source=source, actor=actor)

    def save(
        self,
        resource: Resource,
        expected_fingerprint: str | None = None,
        *,
        source: SourceInfo | None = None,
        actor: str | None = None,
    ) -> str:
        """Save one resource in its own transaction and return its fingerprint.

        Raises
        ------
        Conflict
            On a stale *expected_fingerprint* or a concurrent commit.
        OversizedResource
            If the payload exceeds ``max_resource_bytes``.
        """
        txn = self.transaction(resource.identity.scope, operation="save", source=source, actor=actor)
        fingerprint = txn.save(resource, expected_fingerprint)
        txn.commit()
        return fingerprint

    def delete(
        self,
        identity: ResourceIdentity,
        expected_fingerprint: str | None = None,
        *,
        source: SourceInfo | None = None,
        actor: str | None = None,
    ) -> None:
        """Delete one resource in its own transaction.

        Raises
        ------
        NotFound
            If the resource does not exist.
        Conflict
            On a stale *expected_fingerprint* or a concurrent commit.
        """
        txn = self.transaction(identity.scope, operation="delete", source=source, actor=actor)
        txn.delete(identity, expected_fingerprint)
        txn.commit()

    def query(
        self,
        scope: Scope,
        type_filter: str | None = None,
        at: str | None = None,
    ) -> list[Resource]:
        """Resources under *scope*, at the current or a historical snapshot."""
        snapshot = self._snapshot_for(scope, at)
        if snapshot is None:
            return []
        tree_id = self.objects.tree_of(snapshot)
        resources: list[Resource] = []
        for identity in self.index.query_index(snapshot, scope, type_filter):
            resource = self.engine.read_resource(tree_id, identity)
            if resource is None:
                raise NotFound(
                    f"index of {scope} lists {identity} but the tree does not hold it",
                    identity=identity,
                    scope=scope,
                    snapshot=snapshot,
                )
            resources.append(resource)
        return resources

    def list_identities(
        self,
        scope: Scope,
        type_filter: str | None = None,
        at: str | None = None,
    ) -> list[ResourceIdentity]:
        """Like :meth:`query` but without loading payloads."""
        snapshot = self._snapshot_for(scope, at)
        if snapshot is None:
            return []
        return self.index.query_index(snapshot, scope, type_filter)

    # -- History --------------------------------------------------------------

    def snapshot(self, snapshot_id: str) -> SnapshotSummary:
        return self.history_engine.snapshot(snapshot_id)

    def history(self, scope: Scope, span: HistoryRange | None = None) -> list[SnapshotSummary]:
        """Snapshot summaries of *scope*'s root, newest first."""
        return self.history_engine.list_history(scope, span)

    def diff(
        self,
        snapshot_a: str | None,
        snapshot_b: str | None,
        scope: Scope | None = None,
    ) -> ChangeSet:
        """Identities created, updated and deleted going from *a* to *b*."""
        return self.history_engine.diff(snapshot_a, snapshot_b, scope)

    def preview(self, scope: Scope, target: str) -> ChangeSet:
        """Effect a rollback of *scope* to *target* would have."""
        return self.history_engine.preview(scope, target)

    def rollback(
        self,
        scope: Scope,
        target: str,
        *,
        source: SourceInfo | None = None,
        actor: str | None = None,
    ) -> SnapshotSummary:
        """Append a snapshot whose resource set equals *target*'s."""
        return self.history_engine.rollback(scope, target, source=source, actor=actor)

    # -- Index maintenance ----------------------------------------------------

    def validate_index(self, scope: Scope, at: str | None = None) -> IndexReport:
        """Check stored indexes under *scope* against a full tree walk."""
        snapshot = self._snapshot_for(scope, at)
        if snapshot is None:
            raise NotFound(f"scope {scope.root} has no snapshot", scope=scope)
        return self.index.validate(snapshot, scope)

    def repair_index(self, scope: Scope, *, actor: str | None = None) -> SnapshotSummary | None:
        """Commit a snapshot whose indexes are rebuilt from the tree.

        Returns *None* when every index under the scope root is already
        consistent.  The resource set is unchanged either way.
        """
        root = scope.root
        report = self.validate_index(root)
        if report.is_valid:
            return None
        txn = self.transaction(root, operation="repair-index", actor=actor)
        txn.from_scratch = True
        for resource in self.history_engine.resources_at(txn.baseline, root).values():
            txn.save(resource)
        summary = txn.commit()
        logger.info("Repaired indexes of %s in %s", root, summary.snapshot_id[:12])
        return summary

    # -- Sync -----------------------------------------------------------------

    def push(self, scope: Scope, remote: str) -> SyncResult:
        return self.sync_manager.push(scope, remote)

    def pull(self, scope: Scope, remote: str) -> SyncResult:
        return self.sync_manager.pull(scope, remote)
