"""Best-effort provenance detection.

Probes are tried in priority order and the first one that recognises its
context wins.  Each probe returns *None* when it does not apply; nothing
here raises for a missing source.  When no probe matches, the record is
filled with ``unknown`` and a warning is logged and kept on the record.
"""

from __future__ import annotations

import logging
import os
from dataclasses import dataclass
from datetime import datetime, timezone
from pathlib import Path
from typing import Callable, Mapping

from gitstate.models.snapshot import UNKNOWN, Provenance
from gitstate.vcs.repo import _run_git

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class SourceInfo:
    """Where the state being written came from."""

    repository: str = UNKNOWN
    ref: str = UNKNOWN
    revision: str = UNKNOWN
    detector: str = "caller"


Probe = Callable[[], "SourceInfo | None"]


def explicit_env_probe(environ: Mapping[str, str]) -> SourceInfo | None:
    """``GITSTATE_SOURCE_*`` variables set by the caller's environment."""
    revision = environ.get("GITSTATE_SOURCE_REVISION")
    repository = environ.get("GITSTATE_SOURCE_REPOSITORY")
    if not revision and not repository:
        return None
    return SourceInfo(
        repository=repository or UNKNOWN,
        ref=environ.get("GITSTATE_SOURCE_REF") or UNKNOWN,
        revision=revision or UNKNOWN,
        detector="environment",
    )


def github_actions_probe(environ: Mapping[str, str]) -> SourceInfo | None:
    if environ.get("GITHUB_ACTIONS") != "true" or not environ.get("GITHUB_SHA"):
        return None
    server = environ.get("GITHUB_SERVER_URL", "https://github.com").rstrip("/")
    repo = environ.get("GITHUB_REPOSITORY")
    return SourceInfo(
        repository=f"{server}/{repo}" if repo else UNKNOWN,
        ref=environ.get("GITHUB_REF") or UNKNOWN,
        revision=environ["GITHUB_SHA"],
        detector="github-actions",
    )


def gitlab_ci_probe(environ: Mapping[str, str]) -> SourceInfo | None:
    if environ.get("GITLAB_CI") != "true" or not environ.get("CI_COMMIT_SHA"):
        return None
    return SourceInfo(
        repository=environ.get("CI_PROJECT_URL") or UNKNOWN,
        ref=environ.get("CI_COMMIT_REF_NAME") or UNKNOWN,
        revision=environ["CI_COMMIT_SHA"],
        detector="gitlab-ci",
    )


def git_checkout_probe(path: str | Path) -> SourceInfo | None:
    """Inspect the git checkout containing *path*."""
    path = Path(path)
    if not path.is_dir():
        return None
    head = _run_git("rev-parse", "--verify", "--quiet", "HEAD", cwd=path, check=False)
    if head.returncode != 0 or not head.stdout.strip():
        return None
    branch = _run_git("rev-parse", "--abbrev-ref", "HEAD", cwd=path, check=False)
    remote = _run_git("remote", "get-url", "origin", cwd=path, check=False)
    toplevel = _run_git("rev-parse", "--show-toplevel", cwd=path, check=False)

    repository = remote.stdout.strip() if remote.returncode == 0 else ""
    if not repository and toplevel.returncode == 0:
        repository = toplevel.stdout.strip()
    ref = branch.stdout.strip() if branch.returncode == 0 else ""
    return SourceInfo(
        repository=repository or UNKNOWN,
        ref=ref if ref and ref != "HEAD" else UNKNOWN,
        revision=head.stdout.strip(),
        detector="git-checkout",
    )


class ProvenanceDetector:
    """Runs the probe chain.

    Parameters
    ----------
    source_dir:
        Directory inspected by the ambient git probe.  Defaults to the
        current working directory.
    environ:
        Environment mapping; defaults to ``os.environ``.
    probes:
        Replace the default chain entirely.
    """

    def __init__(
        self,
        source_dir: str | Path | None = None,
        environ: Mapping[str, str] | None = None,
        probes: list[Probe] | None = None,
    ) -> None:
        env = os.environ if environ is None else environ
        self.environ = env
        if probes is None:
            probes = [
                lambda: explicit_env_probe(env),
                lambda: github_actions_probe(env),
                lambda: gitlab_ci_probe(env),
                lambda: git_checkout_probe(source_dir or Path.cwd()),
            ]
        self.probes = probes

    def detect(self) -> SourceInfo | None:
        for probe in self.probes:
            info = probe()
            if info is not None:
                return info
        return None

    def resolve_actor(self, actor: str | None, default: str | None = None) -> str:
        return (
            actor
            or default
            or self.environ.get("GITSTATE_ACTOR")
            or self.environ.get("USER")
            or self.environ.get("USERNAME")
            or UNKNOWN
        )

    def build(
        self,
        operation: str,
        *,
        source: SourceInfo | None = None,
        actor: str | None = None,
        default_actor: str | None = None,
        detect: bool = True,
        timestamp: datetime | None = None,
    ) -> Provenance:
        """Assemble the provenance record for one commit."""
        info = source
        if info is None and detect:
            info = self.detect()

        warnings: list[str] = []
        detected = info is not None
        if info is None:
            info = SourceInfo(detector="")
            warnings.append("source repository, ref and revision could not be determined")
            logger.warning("Recording unknown provenance for %s operation", operation)

        return Provenance(
            repository=info.repository,
            ref=info.ref,
            revision=info.revision,
            operation=operation,
            actor=self.resolve_actor(actor, default_actor),
            timestamp=timestamp or datetime.now(timezone.utc),
            detected=detected,
            detector=info.detector,
            warnings=warnings,
        )
