"""Resource — one identity plus its opaque serialized payload."""

from __future__ import annotations

import hashlib
import json
from typing import Any

from pydantic import BaseModel, ConfigDict

from gitstate.models.identity import ResourceIdentity


def fingerprint_of(payload: bytes) -> str:
    """Return the SHA-256 hex digest used for optimistic-concurrency checks."""
    return hashlib.sha256(payload).hexdigest()


class Resource(BaseModel):
    """An immutable resource value.

    Resources are superseded by new values, never edited in place.
    """

    model_config = ConfigDict(frozen=True)

    identity: ResourceIdentity
    payload: bytes

    @property
    def fingerprint(self) -> str:
        return fingerprint_of(self.payload)

    @property
    def size(self) -> int:
        return len(self.payload)

    def decode_json(self) -> Any:
        """Decode the payload as JSON."""
        return json.loads(self.payload.decode("utf-8"))

    @classmethod
    def from_json(cls, identity: ResourceIdentity, data: Any) -> Resource:
        """Build a resource whose payload is canonical JSON of *data*."""
        payload = json.dumps(data, sort_keys=True, separators=(",", ":")).encode("utf-8")
        return cls(identity=identity, payload=payload)
