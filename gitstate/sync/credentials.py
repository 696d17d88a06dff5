"""Credential providers — transport credentials for remote sync.

The store never stores or interprets credentials.  A provider hands back
environment variables (``GIT_ASKPASS``, ``GIT_SSH_COMMAND``,
``GIT_CONFIG_*`` …) that are passed through to the git transport.
"""

from __future__ import annotations

import abc
import logging
from typing import Mapping

logger = logging.getLogger(__name__)


class CredentialProvider(abc.ABC):
    """Abstract source of transport credentials."""

    @abc.abstractmethod
    def environment(self, remote: str) -> dict[str, str]:
        """Return extra environment variables for talking to *remote*."""


class NoCredentials(CredentialProvider):
    """Relies on whatever the ambient git configuration provides."""

    def environment(self, remote: str) -> dict[str, str]:
        return {}


class StaticCredentials(CredentialProvider):
    """Fixed environment for every remote, e.g. an SSH command with a deploy key."""

    def __init__(self, env: Mapping[str, str]) -> None:
        self._env = dict(env)

    def environment(self, remote: str) -> dict[str, str]:
        logger.debug("Supplying %d credential variables for %s", len(self._env), remote)
        return dict(self._env)
