"""Object adapter — blob, tree, commit and ref primitives over git plumbing.

Everything published by the store goes through this module.  Objects are
content addressed, so writes are idempotent and never visible as state
until :meth:`ObjectAdapter.update_ref_atomic` moves a ref onto them.
"""

from __future__ import annotations

import enum
import logging
import threading
from dataclasses import dataclass, field
from datetime import datetime, timezone
from pathlib import Path

from gitstate.errors import CorruptedObject, NotFound
from gitstate.vcs.repo import GitError, _run_git

logger = logging.getLogger(__name__)

MODE_BLOB = "100644"
MODE_TREE = "040000"

_TREE_CACHE_LIMIT = 4096


class CasOutcome(str, enum.Enum):
    """Result of a compare-and-swap ref update."""

    UPDATED = "updated"
    CONFLICT = "conflict"
    """The ref's current value differs from the expected value."""

    BUSY = "busy"
    """Another writer holds the ref lock; the value still matched."""


@dataclass(frozen=True)
class TreeEntry:
    """One entry of a git tree."""

    name: str
    kind: str
    oid: str

    @property
    def mode(self) -> str:
        return MODE_TREE if self.kind == "tree" else MODE_BLOB

    @property
    def is_tree(self) -> bool:
        return self.kind == "tree"


@dataclass
class CommitInfo:
    """Parsed header and message of a commit object."""

    commit_id: str
    tree_id: str
    parents: list[str] = field(default_factory=list)
    author: str = ""
    timestamp: datetime | None = None
    message: str = ""


class ObjectAdapter:
    """Thin wrapper around the object database of one repository.

    Parameters
    ----------
    repo_path:
        Path of the (bare or non-bare) repository.
    committer_name, committer_email:
        Identity recorded as committer on every snapshot.
    """

    def __init__(
        self,
        repo_path: str | Path,
        committer_name: str = "gitstate",
        committer_email: str = "gitstate@localhost",
    ) -> None:
        self.repo_path = Path(repo_path).resolve()
        self.committer_name = committer_name
        self.committer_email = committer_email
        self._tree_cache: dict[str, tuple[TreeEntry, ...]] = {}
        self._cache_lock = threading.Lock()

    def _git(self, *args: str, **kwargs):
        return _run_git(*args, cwd=self.repo_path, **kwargs)

    # -- Blobs ----------------------------------------------------------------

    def write_blob(self, payload: bytes) -> str:
        """Store *payload* and return its blob id."""
        result = self._git("hash-object", "-w", "--stdin", input=payload, text=False)
        return result.stdout.decode("ascii").strip()

    def hash_blob(self, payload: bytes) -> str:
        """Return the id *payload* would have, without writing it."""
        result = self._git("hash-object", "--stdin", input=payload, text=False)
        return result.stdout.decode("ascii").strip()

    # -- Trees ----------------------------------------------------------------

    def build_tree(self, entries: list[TreeEntry]) -> str:
        """Write a tree from *entries* and return its id.

        Entries are sorted by name first, so identical entry sets always
        produce identical ids.
        """
        names = [e.name for e in entries]
        if len(names) != len(set(names)):
            raise ValueError(f"duplicate tree entry names: {sorted(names)}")
        ordered = sorted(entries, key=lambda e: e.name)
        data = "".join(f"{e.mode} {e.kind} {e.oid}\t{e.name}\0" for e in ordered)
        result = self._git("mktree", "-z", input=data.encode("utf-8"), text=False)
        tree_id = result.stdout.decode("ascii").strip()
        self._remember_tree(tree_id, tuple(ordered))
        return tree_id

    def list_tree(self, tree_id: str) -> list[TreeEntry]:
        """Return the entries of *tree_id*.

        Raises
        ------
        NotFound
            If the object does not exist.
        CorruptedObject
            If the object exists but is not a readable tree.
        """
        cached = self._tree_cache.get(tree_id)
        if cached is not None:
            return list(cached)

        kind = self.object_type(tree_id)
        if kind is None:
            raise NotFound(f"tree {tree_id} does not exist", snapshot=tree_id)
        if kind != "tree":
            raise CorruptedObject(f"object {tree_id} is a {kind}, expected a tree", snapshot=tree_id)

        result = self._git("ls-tree", "-z", tree_id, check=False)
        if result.returncode != 0:
            raise CorruptedObject(
                f"tree {tree_id} is unreadable: {result.stderr.strip()}", snapshot=tree_id,
            )
        entries = tuple(_parse_ls_tree(result.stdout))
        self._remember_tree(tree_id, entries)
        return list(entries)

    def entry_at(self, tree_id: str, path: tuple[str, ...] | list[str]) -> TreeEntry | None:
        """Return the entry at *path* below *tree_id*, or *None*."""
        current = tree_id
        entry: TreeEntry | None = None
        for segment in path:
            if entry is not None and not entry.is_tree:
                return None
            entry = next((e for e in self.list_tree(current) if e.name == segment), None)
            if entry is None:
                return None
            current = entry.oid
        return entry

    def _remember_tree(self, tree_id: str, entries: tuple[TreeEntry, ...]) -> None:
        with self._cache_lock:
            if len(self._tree_cache) >= _TREE_CACHE_LIMIT:
                self._tree_cache.clear()
            self._tree_cache[tree_id] = entries

    # -- Generic objects ------------------------------------------------------

    def object_type(self, oid: str) -> str | None:
        """Return ``blob``/``tree``/``commit``/``tag``, or *None* if absent."""
        result = self._git("cat-file", "-t", oid, check=False)
        if result.returncode != 0:
            return None
        return result.stdout.strip()

    def object_exists(self, oid: str) -> bool:
        return self.object_type(oid) is not None

    def read_object(self, oid: str) -> bytes:
        """Return the raw content of an object.

        Raises
        ------
        NotFound
            If the object is absent.
        CorruptedObject
            If the object exists but cannot be read.
        """
        kind = self.object_type(oid)
        if kind is None:
            raise NotFound(f"object {oid} does not exist", snapshot=oid)
        result = self._git("cat-file", kind, oid, text=False, check=False)
        if result.returncode != 0:
            stderr = result.stderr.decode("utf-8", errors="replace").strip()
            raise CorruptedObject(f"object {oid} is unreadable: {stderr}", snapshot=oid)
        return result.stdout

    # -- Commits --------------------------------------------------------------

    def create_commit(
        self,
        tree_id: str,
        parent_ids: list[str],
        message: str,
        *,
        author_name: str | None = None,
        author_email: str | None = None,
        timestamp: datetime | None = None,
    ) -> str:
        """Write a commit object and return its id.  No ref is touched."""
        when = timestamp or datetime.now(timezone.utc)
        git_date = f"{int(when.timestamp())} +0000"
        env = {
            "GIT_AUTHOR_NAME": author_name or self.committer_name,
            "GIT_AUTHOR_EMAIL": author_email or self.committer_email,
            "GIT_AUTHOR_DATE": git_date,
            "GIT_COMMITTER_NAME": self.committer_name,
            "GIT_COMMITTER_EMAIL": self.committer_email,
            "GIT_COMMITTER_DATE": git_date,
        }
        args = ["commit-tree", tree_id]
        for parent in parent_ids:
            args += ["-p", parent]
        args += ["-F", "-"]
        result = self._git(*args, input=message, env=env)
        return result.stdout.strip()

    def commit_info(self, commit_id: str) -> CommitInfo:
        """Parse a commit object.

        Raises
        ------
        NotFound
            If the commit does not exist.
        CorruptedObject
            If the object is not a well-formed commit.
        """
        kind = self.object_type(commit_id)
        if kind is None:
            raise NotFound(f"snapshot {commit_id} does not exist", snapshot=commit_id)
        if kind != "commit":
            raise CorruptedObject(f"object {commit_id} is a {kind}, expected a commit", snapshot=commit_id)
        raw = self.read_object(commit_id).decode("utf-8", errors="replace")
        return _parse_commit(commit_id, raw)

    def tree_of(self, commit_id: str) -> str:
        """Return the root tree id of *commit_id*."""
        return self.commit_info(commit_id).tree_id

    def resolve_commit(self, revision: str) -> str:
        """Resolve a (possibly abbreviated) commit id to its full id."""
        result = self._git("rev-parse", "--verify", "--quiet", f"{revision}^{{commit}}", check=False)
        if result.returncode != 0 or not result.stdout.strip():
            raise NotFound(f"snapshot {revision} does not exist", snapshot=revision)
        return result.stdout.strip()

    def is_ancestor(self, ancestor: str, descendant: str) -> bool:
        """Return *True* if *ancestor* is reachable from *descendant*."""
        result = self._git("merge-base", "--is-ancestor", ancestor, descendant, check=False)
        if result.returncode == 0:
            return True
        if result.returncode == 1:
            return False
        raise GitError(
            f"git merge-base failed (rc={result.returncode}): {result.stderr.strip()}",
            returncode=result.returncode,
            stderr=result.stderr,
        )

    def rev_list(
        self,
        start: str,
        *,
        stop: str | None = None,
        max_count: int | None = None,
    ) -> list[str]:
        """Return first-parent ancestry of *start*, newest first."""
        args = ["rev-list", "--first-parent"]
        if max_count is not None:
            args.append(f"--max-count={max_count}")
        args.append(start)
        if stop is not None:
            args.append(f"^{stop}")
        result = self._git(*args)
        return [line.strip() for line in result.stdout.splitlines() if line.strip()]

    # -- Refs -----------------------------------------------------------------

    def resolve_ref(self, ref_name: str) -> str | None:
        """Return the commit id *ref_name* points at, or *None* if absent.

        The lookup is by full ref name; revision suffixes such as ``~1``
        are not interpreted.
        """
        result = self._git("show-ref", "--verify", "--hash", ref_name, check=False)
        if result.returncode != 0:
            return None
        value = result.stdout.strip()
        return value or None

    def update_ref_atomic(
        self,
        ref_name: str,
        expected_old: str | None,
        new_id: str,
        *,
        reason: str = "gitstate: update",
    ) -> CasOutcome:
        """Move *ref_name* to *new_id* only if it currently equals *expected_old*.

        ``expected_old=None`` means the ref must not exist yet.  The check and
        the write happen under git's ref lock, so the update is atomic with
        respect to every other git process sharing the repository.
        """
        old = expected_old if expected_old is not None else "0" * len(new_id)
        result = self._git("update-ref", "-m", reason, ref_name, new_id, old, check=False)
        if result.returncode == 0:
            logger.info("Moved %s: %s -> %s", ref_name, (expected_old or "none")[:12], new_id[:12])
            return CasOutcome.UPDATED

        current = self.resolve_ref(ref_name)
        if current != expected_old:
            logger.info(
                "CAS on %s rejected: expected %s, found %s",
                ref_name, expected_old, current,
            )
            return CasOutcome.CONFLICT
        if ".lock" in result.stderr:
            logger.debug("Ref %s is locked by another writer", ref_name)
            return CasOutcome.BUSY
        raise GitError(
            f"git update-ref {ref_name} failed (rc={result.returncode}): {result.stderr.strip()}",
            returncode=result.returncode,
            stderr=result.stderr,
        )


def _parse_ls_tree(raw: str) -> list[TreeEntry]:
    entries: list[TreeEntry] = []
    for record in raw.split("\0"):
        if not record:
            continue
        meta, _, name = record.partition("\t")
        parts = meta.split()
        if len(parts) != 3 or not name:
            raise CorruptedObject(f"malformed tree entry: {record!r}")
        _mode, kind, oid = parts
        entries.append(TreeEntry(name=name, kind=kind, oid=oid))
    return entries


def _parse_commit(commit_id: str, raw: str) -> CommitInfo:
    header, sep, message = raw.partition("\n\n")
    if not sep and not header.startswith("tree "):
        raise CorruptedObject(f"commit {commit_id} is malformed", snapshot=commit_id)

    info = CommitInfo(commit_id=commit_id, tree_id="", message=message)
    for line in header.splitlines():
        key, _, value = line.partition(" ")
        if key == "tree":
            info.tree_id = value.strip()
        elif key == "parent":
            info.parents.append(value.strip())
        elif key == "author":
            info.author, info.timestamp = _parse_signature(value)
    if not info.tree_id:
        raise CorruptedObject(f"commit {commit_id} has no tree", snapshot=commit_id)
    return info


def _parse_signature(value: str) -> tuple[str, datetime | None]:
    """Split ``Name <email> 1700000000 +0000`` into name and UTC time."""
    name, _, rest = value.partition(" <")
    _email, _, when = rest.partition("> ")
    stamp = when.split(" ")[0] if when else ""
    try:
        return name, datetime.fromtimestamp(int(stamp), tz=timezone.utc)
    except ValueError:
        return name, None
