"""SyncManager — push and pull version labels to and from a remote.

Both directions keep the same compare-and-swap discipline as local
transactions.  Diverged histories are surfaced, never merged.
"""

from __future__ import annotations

import logging
import random
import time
from dataclasses import dataclass

from gitstate.config import REMOTE_REF_PREFIX
from gitstate.errors import Conflict, DivergedHistory, NotFound, Rejected
from gitstate.models.identity import Scope
from gitstate.store.paths import ref_segment
from gitstate.store.transaction import TransactionEngine
from gitstate.sync.credentials import CredentialProvider, NoCredentials
from gitstate.vcs.objects import CasOutcome
from gitstate.vcs.repo import GitError, _run_git

logger = logging.getLogger(__name__)

# git push output fragments that mean the lease or fast-forward check failed
_REJECTION_MARKERS = ("stale info", "[rejected]", "non-fast-forward", "fetch first")


@dataclass
class SyncResult:
    """Outcome of a push or pull."""

    scope: str
    remote: str
    status: str
    """``pushed``, ``fast_forward``, ``up_to_date``, ``ahead`` or ``created``."""

    local_tip: str | None = None
    remote_tip: str | None = None
    new_tip: str | None = None


class SyncManager:
    """Synchronise scope labels with a remote repository.

    Parameters
    ----------
    engine:
        Transaction engine of the local store.
    credentials:
        Supplies transport environment per remote.
    """

    def __init__(
        self,
        engine: TransactionEngine,
        credentials: CredentialProvider | None = None,
    ) -> None:
        self.engine = engine
        self.objects = engine.objects
        self.credentials = credentials or NoCredentials()

    def _git(self, remote: str, *args: str, check: bool = True):
        return _run_git(
            *args,
            cwd=self.objects.repo_path,
            check=check,
            env=self.credentials.environment(remote),
        )

    def tracking_ref(self, scope: Scope, remote: str) -> str:
        """Local ref holding the last fetched remote value of *scope*'s label."""
        remote_part = ref_segment(remote)
        label = self.engine.label(scope.root)
        suffix = label[len(self.engine.settings.ref_prefix.rstrip("/")) + 1:]
        return f"{REMOTE_REF_PREFIX}/{remote_part}/{suffix}"

    def remote_tip(self, scope: Scope, remote: str) -> str | None:
        """Current value of *scope*'s label on *remote*, or *None*."""
        label = self.engine.label(scope.root)
        result = self._git(remote, "ls-remote", "--refs", remote, label)
        for line in result.stdout.splitlines():
            oid, _, name = line.partition("\t")
            if name.strip() == label:
                return oid.strip()
        return None

    # -- Push -----------------------------------------------------------------

    def push(self, scope: Scope, remote: str) -> SyncResult:
        """Publish the local label of *scope* to *remote*.

        Raises
        ------
        NotFound
            If the scope has no local snapshot.
        Rejected
            If the remote label advanced past the local tip.
        """
        root = scope.root
        label = self.engine.label(root)
        local = self.engine.current(root)
        if local is None:
            raise NotFound(f"scope {root} has no snapshot to push", scope=root)

        remote_tip = self.remote_tip(root, remote)
        result = SyncResult(scope=str(root), remote=remote, status="pushed", local_tip=local, remote_tip=remote_tip)
        if remote_tip == local:
            result.status = "up_to_date"
            result.new_tip = local
            return result

        if remote_tip is not None and (
            not self.objects.object_exists(remote_tip)
            or not self.objects.is_ancestor(remote_tip, local)
        ):
            raise Rejected(
                f"remote {remote} moved {root} to {remote_tip}, which {local} does not contain",
                scope=root,
                snapshot=local,
                local_tip=local,
                remote_tip=remote_tip,
            )

        lease = f"--force-with-lease={label}:{remote_tip or ''}"
        proc = self._git(remote, "push", "--porcelain", lease, remote, f"{local}:{label}", check=False)
        if proc.returncode != 0:
            output = f"{proc.stdout}\n{proc.stderr}"
            if any(marker in output for marker in _REJECTION_MARKERS):
                raise Rejected(
                    f"remote {remote} rejected {root}: label changed during push",
                    scope=root,
                    snapshot=local,
                    local_tip=local,
                    remote_tip=remote_tip,
                )
            raise GitError(
                f"git push to {remote} failed (rc={proc.returncode}): {proc.stderr.strip()}",
                returncode=proc.returncode,
                stderr=proc.stderr,
            )

        result.status = "created" if remote_tip is None else "pushed"
        result.new_tip = local
        logger.info("Pushed %s to %s: %s -> %s", root, remote, (remote_tip or "none")[:12], local[:12])
        return result

    # -- Pull -----------------------------------------------------------------

    def pull(self, scope: Scope, remote: str) -> SyncResult:
        """Fast-forward the local label of *scope* to the remote's value.

        Raises
        ------
        NotFound
            If the remote has no label for the scope.
        DivergedHistory
            If neither tip contains the other.  Both tips are attached to
            the error; resolution is left to the caller.
        Conflict
            If the local label moved while the pull was being applied.
        """
        root = scope.root
        label = self.engine.label(root)
        tracking = self.tracking_ref(root, remote)

        fetched = self._git(remote, "fetch", "--no-tags", "--quiet", remote, f"+{label}:{tracking}", check=False)
        if fetched.returncode != 0:
            if "couldn't find remote ref" in fetched.stderr:
                raise NotFound(f"remote {remote} has no label for {root}", scope=root)
            raise GitError(
                f"git fetch from {remote} failed (rc={fetched.returncode}): {fetched.stderr.strip()}",
                returncode=fetched.returncode,
                stderr=fetched.stderr,
            )

        remote_tip = self.objects.resolve_ref(tracking)
        if remote_tip is None:
            raise NotFound(f"remote {remote} has no label for {root}", scope=root)

        local = self.engine.current(root)
        result = SyncResult(scope=str(root), remote=remote, status="fast_forward", local_tip=local, remote_tip=remote_tip)
        if local == remote_tip:
            result.status = "up_to_date"
            result.new_tip = local
            return result

        if local is not None and not self.objects.is_ancestor(local, remote_tip):
            if self.objects.is_ancestor(remote_tip, local):
                result.status = "ahead"
                result.new_tip = local
                return result
            raise DivergedHistory(
                f"{root} diverged: local {local[:12]}, remote {remote_tip[:12]}",
                scope=root,
                snapshot=local,
                local_tip=local,
                remote_tip=remote_tip,
            )

        self._advance(label, local, remote_tip, root)
        result.new_tip = remote_tip
        logger.info("Pulled %s from %s: %s -> %s", root, remote, (local or "none")[:12], remote_tip[:12])
        return result

    def _advance(self, label: str, expected: str | None, new_tip: str, root: Scope) -> None:
        attempts = self.engine.settings.cas_attempts
        for attempt in range(attempts):
            outcome = self.objects.update_ref_atomic(label, expected, new_tip, reason="gitstate: pull")
            if outcome is CasOutcome.UPDATED:
                return
            if outcome is CasOutcome.CONFLICT:
                break
            if attempt < attempts - 1:
                delay = min(self.engine.settings.cas_backoff * (2 ** attempt), 0.2)
                time.sleep(random.uniform(0, delay))
        raise Conflict(
            f"local label of {root} moved during pull",
            scope=root,
            snapshot=expected,
            expected=expected,
            actual=self.objects.resolve_ref(label),
        )
