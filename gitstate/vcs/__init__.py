"""Git backbone — repository management, object primitives, history.

The git object graph is the persistence substrate: blobs hold resource
payloads, trees hold scope levels, commits are snapshots and refs are
version labels.
"""

from gitstate.vcs.objects import CasOutcome, ObjectAdapter, TreeEntry
from gitstate.vcs.repo import GitError, RepoManager

__all__ = ["CasOutcome", "GitError", "ObjectAdapter", "RepoManager", "TreeEntry"]
