"""Scope path mapper — resource identities to tree paths and back.

Each identity segment becomes one tree level.  Segments are
percent-encoded so that any string (slashes, spaces, non-ASCII, leading
dots) maps to a valid, reversible tree entry name.  Names starting with a
dot never come out of the encoder, which keeps them free for derived
entries such as the per-scope index.
"""

from __future__ import annotations

from urllib.parse import quote, unquote

from gitstate.config import DEFAULT_REF_PREFIX
from gitstate.errors import InvalidIdentity
from gitstate.models.identity import ResourceIdentity, Scope


def escape_segment(raw: str) -> str:
    """Encode *raw* as a tree entry name."""
    if not raw:
        raise InvalidIdentity("identity segments must not be empty")
    escaped = quote(raw, safe="")
    if escaped.startswith("."):
        escaped = "%2E" + escaped[1:]
    return escaped


def unescape_segment(name: str) -> str:
    """Decode a tree entry name produced by :func:`escape_segment`."""
    try:
        return unquote(name, errors="strict")
    except UnicodeDecodeError as exc:
        raise InvalidIdentity(f"tree entry {name!r} is not a valid escaped segment") from exc


def is_canonical(name: str) -> bool:
    """Return *True* if *name* is exactly what the encoder would produce."""
    try:
        return escape_segment(unescape_segment(name)) == name
    except InvalidIdentity:
        return False


def to_path(identity: ResourceIdentity) -> tuple[str, ...]:
    """Tree path (outermost first) of a resource blob."""
    return tuple(escape_segment(s) for s in identity.segments)


def scope_path(scope: Scope) -> tuple[str, ...]:
    """Tree path of the node holding everything under *scope*."""
    return tuple(escape_segment(s) for s in scope.segments)


def from_path(segments: tuple[str, ...] | list[str]) -> ResourceIdentity:
    """Inverse of :func:`to_path`."""
    return ResourceIdentity.from_segments([unescape_segment(s) for s in segments])


def ref_segment(raw: str) -> str:
    """Encode *raw* as one component of a ref name.

    Dots and tildes are encoded on top of :func:`escape_segment` because
    ref names forbid ``..`` and a trailing ``.lock``, and ``~`` is read as
    revision syntax by most git commands.
    """
    return escape_segment(raw).replace(".", "%2E").replace("~", "%7E")


def ref_name(scope: Scope, prefix: str = DEFAULT_REF_PREFIX) -> str:
    """Name of the version label owned by the root of *scope*."""
    root = scope.root
    parts = [ref_segment(s) for s in root.segments]
    return "/".join([prefix.rstrip("/"), *parts])


def check_collision(raw: str, escaped: str, siblings: list[str], *, identity=None) -> None:
    """Reject *escaped* if another sibling entry decodes to the same raw name.

    Sibling names may have been written by other tools sharing the
    repository, so a differently-encoded spelling of the same raw name
    (``a%2fb`` next to ``a%2Fb``) is possible and must not be shadowed.
    """
    for name in siblings:
        if name == escaped or name.startswith("."):
            continue
        try:
            other = unescape_segment(name)
        except InvalidIdentity:
            continue
        if other == raw:
            raise InvalidIdentity(
                f"{raw!r} collides with existing entry {name!r} under the same parent",
                identity=identity,
            )
