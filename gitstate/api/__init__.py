"""Python API — the :class:`StateStore` facade is the single entry point."""

from gitstate.api.facade import StateStore

__all__ = ["StateStore"]
