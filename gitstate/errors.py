"""Error taxonomy for the state store.

Every error carries the offending identity, scope, or snapshot (whichever
apply) so that callers can act on the failure without parsing messages.
"""

from __future__ import annotations

from typing import Any


class StateStoreError(Exception):
    """Base class for all state store failures."""

    def __init__(
        self,
        message: str,
        *,
        identity: Any = None,
        scope: Any = None,
        snapshot: str | None = None,
    ) -> None:
        super().__init__(message)
        self.identity = identity
        self.scope = scope
        self.snapshot = snapshot


class NotFound(StateStoreError):
    """The identity, object, or snapshot is absent from the target snapshot."""


class Conflict(StateStoreError):
    """A resource-level or scope-level optimistic check failed.

    Always safe to retry after re-reading the current state.
    """

    def __init__(
        self,
        message: str,
        *,
        expected: str | None = None,
        actual: str | None = None,
        **kwargs: Any,
    ) -> None:
        super().__init__(message, **kwargs)
        self.expected = expected
        self.actual = actual


class InvalidIdentity(StateStoreError):
    """Malformed identity or an escaped-path collision."""


class OversizedResource(StateStoreError):
    """Payload exceeds the configured size limit."""

    def __init__(self, message: str, *, size: int = 0, limit: int = 0, **kwargs: Any) -> None:
        super().__init__(message, **kwargs)
        self.size = size
        self.limit = limit


class DivergedHistory(StateStoreError):
    """Local and remote labels do not share a linear history."""

    def __init__(
        self,
        message: str,
        *,
        local_tip: str | None = None,
        remote_tip: str | None = None,
        **kwargs: Any,
    ) -> None:
        super().__init__(message, **kwargs)
        self.local_tip = local_tip
        self.remote_tip = remote_tip


class Rejected(StateStoreError):
    """The remote refused a push because it advanced past the local tip."""

    def __init__(
        self,
        message: str,
        *,
        local_tip: str | None = None,
        remote_tip: str | None = None,
        **kwargs: Any,
    ) -> None:
        super().__init__(message, **kwargs)
        self.local_tip = local_tip
        self.remote_tip = remote_tip


class StorageExhausted(StateStoreError):
    """The object store could not be written due to capacity."""


class CorruptedObject(StateStoreError):
    """An expected object is unreadable or malformed."""


class TransactionClosed(StateStoreError):
    """An operation was attempted on a committed, conflicted or aborted transaction."""
