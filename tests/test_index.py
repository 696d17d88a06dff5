"""Tests for the per-scope index: queries, fallback and repair.

Snapshots written by "other tools" are built directly from blobs and
trees so that their indexes can be missing or wrong.
"""

from __future__ import annotations

import logging
from pathlib import Path

from gitstate.api.facade import StateStore
from gitstate.config import INDEX_ENTRY_NAME
from gitstate.models.identity import ResourceIdentity, Scope
from gitstate.models.resource import Resource, fingerprint_of
from gitstate.store.index import IndexEntry, IndexMaintainer
from gitstate.vcs.objects import ObjectAdapter, TreeEntry

ROOT = Scope.parse("radius/default")


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------


def _make_store(tmp_path: Path) -> StateStore:
    return StateStore(tmp_path / "repo", detect_provenance=False, cas_backoff=0.0)


def _make_identity(name: str, rtype: str = "containers", provider: str = "Applications.Core") -> ResourceIdentity:
    return ResourceIdentity(
        plane="radius",
        resource_group="default",
        provider=provider,
        resource_type=rtype,
        name=name,
    )


def _tree_from(objects: ObjectAdapter, items: dict[tuple[str, ...], bytes]) -> str:
    """Write a nested tree from ``{path: blob payload}`` without any indexes."""
    grouped: dict[str, dict[tuple[str, ...], bytes]] = {}
    entries = []
    for path, payload in items.items():
        if len(path) == 1:
            entries.append(TreeEntry(name=path[0], kind="blob", oid=objects.write_blob(payload)))
        else:
            grouped.setdefault(path[0], {})[path[1:]] = payload
    for name, sub in grouped.items():
        entries.append(TreeEntry(name=name, kind="tree", oid=_tree_from(objects, sub)))
    return objects.build_tree(entries)


def _external_snapshot(store: StateStore, items: dict[tuple[str, ...], bytes]) -> str:
    tree = _tree_from(store.objects, items)
    commit = store.objects.create_commit(tree, [], "written by another tool\n")
    store.objects.update_ref_atomic(store.engine.label(ROOT), None, commit)
    return commit


_EXTERNAL = {
    ("radius", "default", "Applications.Core", "containers", "frontend"): b'{"image":"nginx"}',
    ("radius", "default", "Applications.Core", "containers", "backend"): b'{"image":"api"}',
    ("radius", "default", "Applications.Core", "gateways", "public"): b'{"port":443}',
}


# ---------------------------------------------------------------------------
# Index content
# ---------------------------------------------------------------------------


class TestIndexContent:
    def test_every_node_has_an_index(self, tmp_path: Path):
        store = _make_store(tmp_path)
        ident = _make_identity("frontend")
        store.save(Resource(identity=ident, payload=b"{}"))

        tree = store.objects.tree_of(store.current(ROOT))
        segments = ("radius", "default", "Applications.Core", "containers")
        for depth in range(len(segments) + 1):
            path = segments[:depth]
            node_id = store.objects.entry_at(tree, path).oid if path else tree
            names = [e.name for e in store.objects.list_tree(node_id)]
            assert INDEX_ENTRY_NAME in names

        leaf = store.objects.entry_at(tree, segments)
        entries = store.index.read_index(leaf.oid)
        assert entries == [IndexEntry(identity=ident, fingerprint=fingerprint_of(b"{}"))]

    def test_encode_is_order_independent(self):
        a = IndexEntry(identity=_make_identity("a"), fingerprint="1" * 64)
        b = IndexEntry(identity=_make_identity("b"), fingerprint="2" * 64)
        assert IndexMaintainer.encode((), [a, b]) == IndexMaintainer.encode((), [b, a])

    def test_entry_dict_roundtrip(self):
        entry = IndexEntry(identity=_make_identity("x/y"), fingerprint="f" * 64)
        data = entry.to_dict()
        assert data["name"] == "x/y"
        assert IndexEntry.from_dict(data) == entry


# ---------------------------------------------------------------------------
# Queries
# ---------------------------------------------------------------------------


class TestQuery:
    def test_query_by_scope_and_type(self, tmp_path: Path):
        store = _make_store(tmp_path)
        with store.transaction(ROOT) as txn:
            txn.save(Resource(identity=_make_identity("frontend"), payload=b"1"))
            txn.save(Resource(identity=_make_identity("backend"), payload=b"2"))
            txn.save(Resource(identity=_make_identity("public", rtype="gateways"), payload=b"3"))
            txn.save(Resource(identity=_make_identity("db", rtype="mongo", provider="Applications.Datastores"), payload=b"4"))

        assert len(store.query(ROOT)) == 4
        containers = store.query(ROOT, type_filter="containers")
        assert [r.identity.name for r in containers] == ["backend", "frontend"]

        provider_scope = Scope.parse("radius/default/Applications.Core")
        assert {i.name for i in store.list_identities(provider_scope)} == {"frontend", "backend", "public"}

        type_scope = Scope.parse("radius/default/Applications.Core/gateways")
        assert [r.payload for r in store.query(type_scope)] == [b"3"]

    def test_query_empty_scope(self, tmp_path: Path):
        store = _make_store(tmp_path)
        assert store.query(ROOT) == []
        store.save(Resource(identity=_make_identity("frontend"), payload=b"1"))
        assert store.query(Scope.parse("radius/default/Other.Provider")) == []

    def test_query_reflects_deletes(self, tmp_path: Path):
        store = _make_store(tmp_path)
        ident = _make_identity("frontend")
        store.save(Resource(identity=ident, payload=b"1"))
        store.delete(ident)
        assert store.query(ROOT) == []
        assert store.list_identities(ident.scope) == []


# ---------------------------------------------------------------------------
# Missing and damaged indexes
# ---------------------------------------------------------------------------


class TestIndexFallback:
    def test_missing_index_is_rebuilt_by_walk(self, tmp_path: Path, caplog):
        store = _make_store(tmp_path)
        _external_snapshot(store, _EXTERNAL)

        with caplog.at_level(logging.WARNING, logger="gitstate.store.index"):
            results = store.query(ROOT)
        assert {r.identity.name for r in results} == {"frontend", "backend", "public"}
        assert any("missing index" in rec.message for rec in caplog.records)

        filtered = store.list_identities(ROOT, type_filter="gateways")
        assert [i.name for i in filtered] == ["public"]

    def test_unreadable_index_falls_back(self, tmp_path: Path, caplog):
        store = _make_store(tmp_path)
        items = dict(_EXTERNAL)
        items[("radius", "default", INDEX_ENTRY_NAME)] = b"not json"
        _external_snapshot(store, items)

        with caplog.at_level(logging.WARNING, logger="gitstate.store.index"):
            names = {i.name for i in store.list_identities(ROOT)}
        assert names == {"frontend", "backend", "public"}
        assert any("unusable" in rec.message for rec in caplog.records)

    def test_save_on_top_of_unindexed_snapshot(self, tmp_path: Path):
        store = _make_store(tmp_path)
        _external_snapshot(store, _EXTERNAL)
        store.save(Resource(identity=_make_identity("worker"), payload=b'{"image":"job"}'))

        names = {i.name for i in store.list_identities(ROOT)}
        assert names == {"frontend", "backend", "public", "worker"}
        assert store.get(_make_identity("frontend")).payload == b'{"image":"nginx"}'

    def test_identical_sibling_subtrees_keep_their_paths(self, tmp_path: Path):
        store = _make_store(tmp_path)
        _external_snapshot(store, {
            ("radius", "default", "P1", "containers", "frontend"): b"same",
            ("radius", "default", "P2", "containers", "frontend"): b"same",
        })

        identities = store.list_identities(ROOT)
        assert identities == [
            _make_identity("frontend", provider="P1"),
            _make_identity("frontend", provider="P2"),
        ]
        assert [r.identity.provider for r in store.query(ROOT)] == ["P1", "P2"]

        walked = store.index.walk_entries(store.objects.tree_of(store.current(ROOT)), ())
        assert [e.identity.provider for e in walked] == ["P1", "P2"]


class TestValidateAndRepair:
    def test_fresh_store_is_valid(self, tmp_path: Path):
        store = _make_store(tmp_path)
        store.save(Resource(identity=_make_identity("frontend"), payload=b"1"))
        report = store.validate_index(ROOT)
        assert report.is_valid
        # group, provider and type nodes
        assert report.nodes_checked == 3
        assert store.repair_index(ROOT) is None

    def test_missing_indexes_reported_and_repaired(self, tmp_path: Path):
        store = _make_store(tmp_path)
        before = _external_snapshot(store, _EXTERNAL)

        report = store.validate_index(ROOT)
        assert not report.is_valid
        assert "radius/default" in report.missing

        summary = store.repair_index(ROOT)
        assert summary is not None
        assert summary.parent == before
        assert summary.changes.total == 0
        assert store.validate_index(ROOT).is_valid
        assert store.diff(before, summary.snapshot_id).is_empty

    def test_wrong_fingerprint_is_mismatched(self, tmp_path: Path):
        store = _make_store(tmp_path)
        ident = _make_identity("frontend")
        items = {
            ("radius", "default", "Applications.Core", "containers", "frontend"): b"real",
            ("radius", "default", INDEX_ENTRY_NAME): IndexMaintainer.encode(
                ("radius", "default"),
                [IndexEntry(identity=ident, fingerprint=fingerprint_of(b"stale"))],
            ),
        }
        _external_snapshot(store, items)

        report = store.validate_index(ROOT)
        assert "radius/default" in report.mismatched

        store.repair_index(ROOT)
        assert store.validate_index(ROOT).is_valid
        assert store.get(ident).payload == b"real"

    def test_save_replaces_wrong_type_index(self, tmp_path: Path):
        store = _make_store(tmp_path)
        ident = _make_identity("frontend")
        type_path = ("radius", "default", "Applications.Core", "containers")
        items = {path: payload for path, payload in _EXTERNAL.items() if path[:4] == type_path}
        items[(*type_path, INDEX_ENTRY_NAME)] = IndexMaintainer.encode(
            type_path,
            [
                IndexEntry(identity=ident, fingerprint=fingerprint_of(b"stale")),
                IndexEntry(identity=_make_identity("backend"), fingerprint=fingerprint_of(b'{"image":"api"}')),
            ],
        )
        _external_snapshot(store, items)
        assert not store.validate_index(ROOT).is_valid

        store.save(Resource(identity=_make_identity("worker"), payload=b"job"))

        report = store.validate_index(ROOT)
        assert report.is_valid, report.mismatched
        current = store.current(ROOT)
        entries = {e.identity.name: e.fingerprint for e in store.index.scope_entries(current, ROOT)}
        assert entries["frontend"] == fingerprint_of(b'{"image":"nginx"}')
