"""RepoManager — initialise, configure, and query the backing git repository.

All git operations use :func:`subprocess.run`; no GitPython dependency.
"""

from __future__ import annotations

import logging
import os
import subprocess
from pathlib import Path

from gitstate.errors import StorageExhausted

logger = logging.getLogger(__name__)

# stderr fragments git emits when the object store cannot grow
_EXHAUSTION_MARKERS = (
    "No space left on device",
    "Disk quota exceeded",
    "File too large",
)


class GitError(Exception):
    """Raised when a git subprocess returns a non-zero exit code."""

    def __init__(self, message: str, *, returncode: int = 0, stderr: str = "") -> None:
        super().__init__(message)
        self.returncode = returncode
        self.stderr = stderr


def _run_git(
    *args: str,
    cwd: str | Path | None = None,
    check: bool = True,
    input: bytes | str | None = None,
    text: bool = True,
    env: dict[str, str] | None = None,
) -> subprocess.CompletedProcess:
    """Execute a git command via subprocess and return the result.

    Parameters
    ----------
    *args:
        Arguments passed after ``git``.
    cwd:
        Working directory (or git dir) for the command.
    check:
        If *True*, raise :class:`GitError` on non-zero exit.
    input:
        Data written to the command's stdin.
    text:
        Decode stdout/stderr as UTF-8.  Pass *False* to read raw object
        contents.
    env:
        Extra environment variables layered over ``os.environ``.

    Raises
    ------
    StorageExhausted
        If git reports that the object store is out of space, regardless
        of *check*.
    """
    cmd = ["git", *args]
    logger.debug("git %s (cwd=%s)", " ".join(args), cwd)

    run_env = None
    if env:
        run_env = dict(os.environ)
        run_env.update(env)

    if text and isinstance(input, bytes):
        input = input.decode("utf-8")

    result = subprocess.run(
        cmd,
        cwd=cwd,
        capture_output=True,
        text=text,
        input=input,
        env=run_env,
    )

    if result.returncode != 0:
        stderr = result.stderr
        if isinstance(stderr, bytes):
            stderr = stderr.decode("utf-8", errors="replace")
        stderr = stderr.strip()
        if any(marker in stderr for marker in _EXHAUSTION_MARKERS):
            raise StorageExhausted(
                f"git {args[0]} could not write to the object store: {stderr}"
            )
        if check:
            raise GitError(
                f"git {' '.join(args)} failed (rc={result.returncode}): {stderr}",
                returncode=result.returncode,
                stderr=stderr,
            )
    return result


class RepoManager:
    """Manage the git repository that backs a state store.

    Parameters
    ----------
    path:
        Repository location.  Either a bare repository or the root of a
        working tree; the store only ever touches the object database and
        refs, never a checkout.
    """

    def __init__(self, path: str | Path) -> None:
        self.path = Path(path).resolve()

    # -- Initialisation -------------------------------------------------------

    def init_repo(self, bare: bool = True) -> Path:
        """Initialise a repository suitable for state storage.

        Creates the directory if needed and sets a local committer identity
        so that commit creation never depends on the user's global config.

        Returns the repository path.
        """
        self.path.mkdir(parents=True, exist_ok=True)
        args = ["init", "--quiet"]
        if bare:
            args.append("--bare")
        _run_git(*args, cwd=self.path)

        _run_git("config", "user.email", "gitstate@localhost", cwd=self.path, check=False)
        _run_git("config", "user.name", "gitstate", cwd=self.path, check=False)
        _run_git("config", "commit.gpgsign", "false", cwd=self.path, check=False)
        # Objects must stay reachable through history; never auto-prune.
        _run_git("config", "gc.auto", "0", cwd=self.path, check=False)

        logger.info("Initialised state repository at %s (bare=%s)", self.path, bare)
        return self.path

    # -- Status / info --------------------------------------------------------

    def is_repo(self) -> bool:
        """Return *True* if *self.path* is a git repository (bare or not)."""
        if not self.path.is_dir():
            return False
        result = _run_git("rev-parse", "--git-dir", cwd=self.path, check=False)
        return result.returncode == 0

    def ensure_repo(self) -> Path:
        """Initialise the repository unless one already exists."""
        if not self.is_repo():
            return self.init_repo()
        return self.path

    def git_dir(self) -> Path:
        """Return the absolute path of the git directory."""
        result = _run_git("rev-parse", "--absolute-git-dir", cwd=self.path)
        return Path(result.stdout.strip())

    def list_refs(self, prefix: str) -> dict[str, str]:
        """Return ``{ref_name: commit_id}`` for all refs under *prefix*."""
        result = _run_git(
            "for-each-ref", "--format=%(refname) %(objectname)", prefix,
            cwd=self.path,
        )
        refs: dict[str, str] = {}
        for line in result.stdout.splitlines():
            if not line.strip():
                continue
            name, _, oid = line.partition(" ")
            refs[name] = oid
        return refs
