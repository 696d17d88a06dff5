"""Global configuration: constants and layered store settings."""

from __future__ import annotations

import json
import logging
import os
from pathlib import Path
from typing import Any

from pydantic import BaseModel, Field

logger = logging.getLogger(__name__)

# Namespace holding one version label per scope root
DEFAULT_REF_PREFIX = "refs/gitstate"

# Namespace for labels fetched from remotes
REMOTE_REF_PREFIX = "refs/gitstate-remotes"

# Derived listing blob stored at every scope node
INDEX_ENTRY_NAME = ".index"
INDEX_FORMAT_VERSION = 1

# Marker of the machine-readable line in snapshot commit messages
METADATA_TRAILER = "Gitstate-Metadata:"

# Per-repository config file, relative to the repository path
CONFIG_FILE_NAME = "gitstate.json"

DEFAULT_MAX_RESOURCE_BYTES = 4 * 1024 * 1024

_ENV_PREFIX = "GITSTATE_"

_PROFILES: dict[str, dict[str, Any]] = {
    "development": {"log_level": "DEBUG"},
    "production": {"log_level": "WARNING"},
    "testing": {"log_level": "DEBUG", "cas_backoff": 0.0, "detect_provenance": False},
}


class StoreSettings(BaseModel):
    """Tunables for one state store."""

    max_resource_bytes: int = Field(default=DEFAULT_MAX_RESOURCE_BYTES, ge=1)
    cas_attempts: int = Field(default=5, ge=1)
    """Bounded retries while another writer holds the ref lock."""

    cas_backoff: float = Field(default=0.01, ge=0.0)
    serialize_commits: bool = True
    """Hold an in-process lock per scope root while building a commit."""

    ref_prefix: str = DEFAULT_REF_PREFIX
    committer_name: str = "gitstate"
    committer_email: str = "gitstate@localhost"
    default_actor: str | None = None
    detect_provenance: bool = True
    provenance_dir: Path | None = None
    """Checkout inspected by the ambient git provenance probe (default: cwd)."""

    log_level: str = "INFO"


def load_settings(repo_path: str | Path | None = None, **overrides: Any) -> StoreSettings:
    """Load merged settings: defaults -> profile -> gitstate.json -> env vars -> overrides.

    Environment variables are the upper-cased field names with a
    ``GITSTATE_`` prefix (e.g. ``GITSTATE_MAX_RESOURCE_BYTES``); a profile
    is applied only when ``GITSTATE_ENV`` names one.
    """
    values: dict[str, Any] = {}

    env_name = os.environ.get(f"{_ENV_PREFIX}ENV")
    if env_name:
        values.update(_PROFILES.get(env_name, {}))

    if repo_path is not None:
        config_file = Path(repo_path) / CONFIG_FILE_NAME
        if config_file.is_file():
            try:
                data = json.loads(config_file.read_text(encoding="utf-8"))
            except (json.JSONDecodeError, OSError):
                logger.warning("Ignoring unreadable config file %s", config_file, exc_info=True)
            else:
                values.update({k: v for k, v in data.items() if k in StoreSettings.model_fields})

    for key in StoreSettings.model_fields:
        env_val = os.environ.get(f"{_ENV_PREFIX}{key.upper()}")
        if env_val is not None:
            values[key] = env_val

    values.update(overrides)
    return StoreSettings(**values)


def configure_logging(settings: StoreSettings) -> None:
    """Apply the configured level to the ``gitstate`` logger hierarchy."""
    logging.getLogger("gitstate").setLevel(settings.log_level.upper())
