"""Tests for transactions: optimistic checks, batching, atomicity and CAS.

Every test works against a real bare repository in tmp_path.
"""

from __future__ import annotations

import threading
from pathlib import Path

import pytest

from gitstate.api.facade import StateStore
from gitstate.errors import (
    Conflict,
    CorruptedObject,
    InvalidIdentity,
    NotFound,
    OversizedResource,
    TransactionClosed,
)
from gitstate.models.identity import ResourceIdentity, Scope
from gitstate.models.resource import Resource, fingerprint_of
from gitstate.store.paths import to_path
from gitstate.store.provenance import SourceInfo
from gitstate.store.transaction import TransactionState
from gitstate.vcs.objects import TreeEntry

ROOT = Scope.parse("radius/default")


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------


def _make_store(tmp_path: Path, name: str = "repo", **overrides) -> StateStore:
    overrides.setdefault("detect_provenance", False)
    overrides.setdefault("cas_backoff", 0.0)
    return StateStore(tmp_path / name, **overrides)


def _make_identity(name: str, rtype: str = "containers", group: str = "default") -> ResourceIdentity:
    return ResourceIdentity(
        plane="radius",
        resource_group=group,
        provider="Applications.Core",
        resource_type=rtype,
        name=name,
    )


def _resource(name: str, payload: bytes, **kwargs) -> Resource:
    return Resource(identity=_make_identity(name, **kwargs), payload=payload)


# ---------------------------------------------------------------------------
# Single-resource optimistic concurrency
# ---------------------------------------------------------------------------


class TestFingerprints:
    def test_save_with_expected_fingerprint(self, tmp_path: Path):
        store = _make_store(tmp_path)
        ident = _make_identity("frontend")

        f1 = store.save(Resource(identity=ident, payload=b'{"v":1}'))
        assert f1 == fingerprint_of(b'{"v":1}')

        with pytest.raises(Conflict) as exc_info:
            store.save(Resource(identity=ident, payload=b'{"v":2}'), fingerprint_of(b"stale"))
        assert exc_info.value.actual == f1
        assert exc_info.value.identity == ident

        f2 = store.save(Resource(identity=ident, payload=b'{"v":2}'), f1)
        assert f2 != f1
        assert store.get(ident).fingerprint == f2

    def test_conflicting_save_changes_nothing(self, tmp_path: Path):
        store = _make_store(tmp_path)
        ident = _make_identity("frontend")
        store.save(Resource(identity=ident, payload=b"1"))
        before = store.current(ROOT)

        with pytest.raises(Conflict):
            store.save(Resource(identity=ident, payload=b"2"), fingerprint_of(b"other"))
        assert store.current(ROOT) == before
        assert len(store.history(ROOT)) == 1

    def test_expected_fingerprint_on_absent_resource(self, tmp_path: Path):
        store = _make_store(tmp_path)
        with pytest.raises(Conflict):
            store.save(_resource("frontend", b"1"), fingerprint_of(b"1"))

    def test_delete_with_fingerprint(self, tmp_path: Path):
        store = _make_store(tmp_path)
        ident = _make_identity("frontend")
        f1 = store.save(Resource(identity=ident, payload=b"1"))
        with pytest.raises(Conflict):
            store.delete(ident, fingerprint_of(b"stale"))
        store.delete(ident, f1)
        assert not store.exists(ident)

    def test_delete_missing_raises_not_found(self, tmp_path: Path):
        store = _make_store(tmp_path)
        with pytest.raises(NotFound):
            store.delete(_make_identity("ghost"))

    def test_get_missing_raises_not_found(self, tmp_path: Path):
        store = _make_store(tmp_path)
        with pytest.raises(NotFound):
            store.get(_make_identity("ghost"))


# ---------------------------------------------------------------------------
# Batches
# ---------------------------------------------------------------------------


class TestBatches:
    def test_batch_produces_one_snapshot(self, tmp_path: Path):
        store = _make_store(tmp_path)
        r3 = _resource("r3", b"3")
        store.save(r3)

        txn = store.transaction(ROOT)
        txn.save(_resource("r1", b"1"))
        txn.save(_resource("r2", b"2"))
        txn.delete(r3.identity)
        summary = txn.commit()

        assert txn.state is TransactionState.COMMITTED
        assert summary.changes.counts == {"created": 2, "updated": 0, "deleted": 1}
        history = store.history(ROOT)
        assert len(history) == 2
        assert history[0].snapshot_id == summary.snapshot_id
        assert history[0].parent == history[1].snapshot_id
        assert {i.name for i in store.list_identities(ROOT)} == {"r1", "r2"}

    def test_last_operation_on_an_identity_wins(self, tmp_path: Path):
        store = _make_store(tmp_path)
        with store.transaction(ROOT) as txn:
            txn.save(_resource("r1", b"first"))
            txn.save(_resource("r1", b"second"))
            assert txn.fingerprint(_make_identity("r1")) == fingerprint_of(b"second")
        assert store.get(_make_identity("r1")).payload == b"second"

    def test_save_then_delete_in_one_transaction(self, tmp_path: Path):
        store = _make_store(tmp_path)
        with store.transaction(ROOT) as txn:
            txn.save(_resource("temp", b"x"))
            txn.delete(_make_identity("temp"))
        assert not store.exists(_make_identity("temp"))
        assert store.history(ROOT)[0].changes.total == 0

    def test_empty_transaction_still_commits(self, tmp_path: Path):
        store = _make_store(tmp_path)
        summary = store.transaction(ROOT).commit()
        assert summary.changes.total == 0
        assert store.current(ROOT) == summary.snapshot_id
        assert store.query(ROOT) == []

    def test_identity_outside_scope_rejected(self, tmp_path: Path):
        store = _make_store(tmp_path)
        txn = store.transaction(ROOT)
        with pytest.raises(InvalidIdentity):
            txn.save(_resource("elsewhere", b"1", group="staging"))

    def test_scopes_are_independent(self, tmp_path: Path):
        store = _make_store(tmp_path)
        store.save(_resource("a", b"1"))
        store.save(_resource("b", b"2", group="staging"))
        assert [str(s) for s in store.scopes()] == ["radius/default", "radius/staging"]
        assert len(store.history(ROOT)) == 1
        assert len(store.history(Scope.parse("radius/staging"))) == 1


# ---------------------------------------------------------------------------
# Lifecycle
# ---------------------------------------------------------------------------


class TestLifecycle:
    def test_abort_publishes_nothing(self, tmp_path: Path):
        store = _make_store(tmp_path)
        txn = store.transaction(ROOT)
        txn.save(_resource("r1", b"1"))
        txn.abort()
        assert txn.state is TransactionState.CLOSED
        assert store.current(ROOT) is None
        with pytest.raises(TransactionClosed):
            txn.save(_resource("r2", b"2"))
        with pytest.raises(TransactionClosed):
            txn.commit()

    def test_committed_transaction_is_closed(self, tmp_path: Path):
        store = _make_store(tmp_path)
        txn = store.transaction(ROOT)
        txn.save(_resource("r1", b"1"))
        txn.commit()
        assert txn.is_closed
        with pytest.raises(TransactionClosed):
            txn.delete(_make_identity("r1"))

    def test_context_manager_aborts_on_error(self, tmp_path: Path):
        store = _make_store(tmp_path)
        with pytest.raises(RuntimeError):
            with store.transaction(ROOT) as txn:
                txn.save(_resource("r1", b"1"))
                raise RuntimeError("boom")
        assert txn.state is TransactionState.CLOSED
        assert store.current(ROOT) is None

    def test_context_manager_commits(self, tmp_path: Path):
        store = _make_store(tmp_path)
        with store.transaction(ROOT) as txn:
            txn.save(_resource("r1", b"1"))
        assert txn.state is TransactionState.COMMITTED
        assert txn.result is not None
        assert store.current(ROOT) == txn.result.snapshot_id


# ---------------------------------------------------------------------------
# Concurrency
# ---------------------------------------------------------------------------


class TestConcurrency:
    def test_second_of_two_concurrent_transactions_conflicts(self, tmp_path: Path):
        store = _make_store(tmp_path)
        t1 = store.transaction(ROOT)
        t2 = store.transaction(ROOT)
        t1.save(_resource("shared", b"from t1"))
        t1.save(_resource("a", b"1"))
        t2.save(_resource("shared", b"from t2"))
        t2.save(_resource("b", b"2"))

        first = t1.commit()
        with pytest.raises(Conflict) as exc_info:
            t2.commit()
        assert t2.state is TransactionState.CONFLICT
        assert exc_info.value.actual == first.snapshot_id

        assert not store.exists(_make_identity("b"))
        for snap in store.history(ROOT):
            names = {i.name for i in store.list_identities(ROOT, at=snap.snapshot_id)}
            assert "b" not in names
            shared = store.get(_make_identity("shared"), at=snap.snapshot_id)
            assert shared.payload == b"from t1"

    def test_threads_racing_on_one_baseline(self, tmp_path: Path):
        store = _make_store(tmp_path)
        store.save(_resource("seed", b"0"))
        txns = [store.transaction(ROOT) for _ in range(4)]
        for i, txn in enumerate(txns):
            txn.save(_resource(f"w{i}", str(i).encode()))

        outcomes: list[str] = []
        guard = threading.Lock()

        def _commit(txn):
            try:
                txn.commit()
                result = "ok"
            except Conflict:
                result = "conflict"
            with guard:
                outcomes.append(result)

        threads = [threading.Thread(target=_commit, args=(t,)) for t in txns]
        for t in threads:
            t.start()
        for t in threads:
            t.join()

        assert sorted(outcomes) == ["conflict", "conflict", "conflict", "ok"]
        assert len(store.history(ROOT)) == 2

    def test_locked_label_gives_up_after_bounded_retries(self, tmp_path: Path):
        store = _make_store(tmp_path, cas_attempts=3)
        store.save(_resource("seed", b"0"))
        before = store.current(ROOT)

        lock = store.repo.git_dir() / (store.engine.label(ROOT) + ".lock")
        lock.write_text("", encoding="utf-8")
        try:
            txn = store.transaction(ROOT)
            txn.save(_resource("r1", b"1"))
            with pytest.raises(Conflict, match="locked"):
                txn.commit()
            assert txn.state is TransactionState.CONFLICT
        finally:
            lock.unlink()

        assert store.current(ROOT) == before
        store.save(_resource("r1", b"1"))
        assert store.exists(_make_identity("r1"))


# ---------------------------------------------------------------------------
# Size limit
# ---------------------------------------------------------------------------


class TestSizeLimit:
    def test_oversized_resource_writes_nothing(self, tmp_path: Path):
        store = _make_store(tmp_path, max_resource_bytes=16)
        payload = b"x" * 17

        with pytest.raises(OversizedResource) as exc_info:
            store.save(_resource("big", payload))
        assert exc_info.value.size == 17
        assert exc_info.value.limit == 16
        assert not store.objects.object_exists(store.objects.hash_blob(payload))
        assert store.current(ROOT) is None

    def test_payload_at_limit_is_accepted(self, tmp_path: Path):
        store = _make_store(tmp_path, max_resource_bytes=16)
        store.save(_resource("ok", b"x" * 16))
        assert store.get(_make_identity("ok")).size == 16


# ---------------------------------------------------------------------------
# Tree construction
# ---------------------------------------------------------------------------


class TestTreeConstruction:
    def test_same_resource_set_gives_same_tree(self, tmp_path: Path):
        one = _make_store(tmp_path, "one")
        two = _make_store(tmp_path, "two")

        with one.transaction(ROOT) as txn:
            txn.save(_resource("a", b"1"))
            txn.save(_resource("b", b"2", rtype="gateways"))
        two.save(_resource("b", b"2", rtype="gateways"))
        two.save(_resource("c", b"3"))
        two.save(_resource("a", b"1"))
        two.delete(_make_identity("c"))

        tree_one = one.snapshot(one.current(ROOT)).tree_id
        tree_two = two.snapshot(two.current(ROOT)).tree_id
        assert tree_one == tree_two
        assert one.current(ROOT) != two.current(ROOT)

    def test_unchanged_subtrees_are_shared(self, tmp_path: Path):
        store = _make_store(tmp_path)
        store.save(_resource("a", b"1"))
        store.save(_resource("g", b"2", rtype="gateways"))
        first_tree = store.objects.tree_of(store.current(ROOT))

        store.save(_resource("g", b"3", rtype="gateways"))
        second_tree = store.objects.tree_of(store.current(ROOT))

        containers = to_path(_make_identity("a"))[:-1]
        gateways = to_path(_make_identity("g", rtype="gateways"))[:-1]
        assert store.objects.entry_at(first_tree, containers) == store.objects.entry_at(second_tree, containers)
        assert store.objects.entry_at(first_tree, gateways) != store.objects.entry_at(second_tree, gateways)

    def test_emptied_subtrees_are_pruned(self, tmp_path: Path):
        store = _make_store(tmp_path)
        store.save(_resource("a", b"1"))
        store.save(_resource("g", b"2", rtype="gateways"))
        store.delete(_make_identity("g", rtype="gateways"))

        tree = store.objects.tree_of(store.current(ROOT))
        gateways = to_path(_make_identity("g", rtype="gateways"))[:-1]
        assert store.objects.entry_at(tree, gateways) is None

    def test_lost_root_tree_raises_corrupted_object(self, tmp_path: Path, monkeypatch):
        store = _make_store(tmp_path)
        monkeypatch.setattr(store.engine, "_rebuild", lambda *args: (None, []))
        with pytest.raises(CorruptedObject):
            store.engine.build_root(None, {_make_identity("a"): _resource("a", b"1")})
        assert store.current(ROOT) is None

    def test_names_with_special_characters(self, tmp_path: Path):
        store = _make_store(tmp_path)
        ident = _make_identity("web/api v2")
        store.save(Resource(identity=ident, payload=b"1"))
        assert store.get(ident).payload == b"1"
        assert store.list_identities(ROOT) == [ident]

    def test_colliding_external_entry_rejected(self, tmp_path: Path):
        store = _make_store(tmp_path)
        objects = store.objects
        blob = objects.write_blob(b"external")
        node = objects.build_tree([TreeEntry(name="a%2fb", kind="blob", oid=blob)])
        for name in reversed(("radius", "default", "Applications.Core", "containers")):
            node = objects.build_tree([TreeEntry(name=name, kind="tree", oid=node)])
        commit = objects.create_commit(node, [], "external\n")
        objects.update_ref_atomic(store.engine.label(ROOT), None, commit)

        txn = store.transaction(ROOT)
        with pytest.raises(InvalidIdentity):
            txn.save(_resource("a/b", b"mine"))


# ---------------------------------------------------------------------------
# Provenance on commits
# ---------------------------------------------------------------------------


class TestCommitProvenance:
    def test_explicit_source_and_actor_recorded(self, tmp_path: Path):
        store = _make_store(tmp_path)
        source = SourceInfo(
            repository="https://example.com/infra.git",
            ref="refs/heads/main",
            revision="a" * 40,
        )
        store.save(_resource("r1", b"1"), source=source, actor="deployer")

        snap = store.history(ROOT)[0]
        assert snap.provenance is not None
        assert snap.provenance.repository == "https://example.com/infra.git"
        assert snap.provenance.revision == "a" * 40
        assert snap.provenance.actor == "deployer"
        assert snap.provenance.operation == "save"
        assert snap.provenance.detected
        assert snap.scope == "radius/default"
        assert snap.changes.created == [_make_identity("r1")]

    def test_unknown_provenance_still_commits(self, tmp_path: Path):
        store = _make_store(tmp_path)
        store.save(_resource("r1", b"1"))
        snap = store.history(ROOT)[0]
        assert snap.provenance is not None
        assert snap.provenance.is_unknown
        assert not snap.provenance.detected
        assert snap.provenance.warnings
