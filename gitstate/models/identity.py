"""Resource identities and scopes.

A resource lives at a fixed five-level position:
plane → resource group → provider namespace → resource type → name.
A scope is any prefix of that position that is at least as deep as the
scope root (plane + resource group), which owns one version label.
"""

from __future__ import annotations

from pydantic import BaseModel, ConfigDict, field_validator, model_validator

from gitstate.errors import InvalidIdentity

SCOPE_LEVELS = ("plane", "resource_group", "provider", "resource_type")
ROOT_DEPTH = 2


def _check_segment(value: str, label: str) -> str:
    if not isinstance(value, str) or not value:
        raise InvalidIdentity(f"{label} must be a non-empty string")
    if "\x00" in value:
        raise InvalidIdentity(f"{label} must not contain NUL characters")
    return value


class Scope(BaseModel):
    """A hierarchical prefix of resource positions."""

    model_config = ConfigDict(frozen=True)

    plane: str
    resource_group: str
    provider: str | None = None
    resource_type: str | None = None

    @field_validator("plane", "resource_group", mode="before")
    @classmethod
    def _required(cls, value: str, info) -> str:
        return _check_segment(value, info.field_name)

    @field_validator("provider", "resource_type", mode="before")
    @classmethod
    def _optional(cls, value: str | None, info) -> str | None:
        if value is None:
            return value
        return _check_segment(value, info.field_name)

    @model_validator(mode="after")
    def _type_needs_provider(self) -> Scope:
        if self.resource_type is not None and self.provider is None:
            raise InvalidIdentity("a scope with a resource type needs a provider")
        return self

    @property
    def segments(self) -> tuple[str, ...]:
        """Raw scope segments, outermost first."""
        parts = [self.plane, self.resource_group]
        if self.provider is not None:
            parts.append(self.provider)
            if self.resource_type is not None:
                parts.append(self.resource_type)
        return tuple(parts)

    @property
    def depth(self) -> int:
        return len(self.segments)

    @property
    def root(self) -> Scope:
        """The scope root that owns the version label for this scope."""
        return Scope(plane=self.plane, resource_group=self.resource_group)

    @property
    def is_root(self) -> bool:
        return self.depth == ROOT_DEPTH

    def contains(self, identity: ResourceIdentity) -> bool:
        """Return *True* if *identity* lives under this scope."""
        return identity.segments[: self.depth] == self.segments

    @classmethod
    def from_segments(cls, segments: tuple[str, ...] | list[str]) -> Scope:
        if not ROOT_DEPTH <= len(segments) <= len(SCOPE_LEVELS):
            raise InvalidIdentity(
                f"scope needs {ROOT_DEPTH}-{len(SCOPE_LEVELS)} segments, got {len(segments)}"
            )
        return cls(**dict(zip(SCOPE_LEVELS, segments)))

    @classmethod
    def parse(cls, text: str) -> Scope:
        """Parse ``plane/group[/provider[/type]]``."""
        return cls.from_segments([s for s in text.strip("/").split("/")])

    def __str__(self) -> str:
        return "/".join(self.segments)


class ResourceIdentity(BaseModel):
    """The full identity of one resource."""

    model_config = ConfigDict(frozen=True)

    plane: str
    resource_group: str
    provider: str
    resource_type: str
    name: str

    @field_validator("plane", "resource_group", "provider", "resource_type", "name", mode="before")
    @classmethod
    def _segment(cls, value: str, info) -> str:
        return _check_segment(value, info.field_name)

    @property
    def segments(self) -> tuple[str, str, str, str, str]:
        return (self.plane, self.resource_group, self.provider, self.resource_type, self.name)

    @property
    def scope(self) -> Scope:
        """The type-level scope the resource belongs to."""
        return Scope(
            plane=self.plane,
            resource_group=self.resource_group,
            provider=self.provider,
            resource_type=self.resource_type,
        )

    @property
    def key(self) -> str:
        return "/".join(self.segments)

    @classmethod
    def from_segments(cls, segments: tuple[str, ...] | list[str]) -> ResourceIdentity:
        if len(segments) != 5:
            raise InvalidIdentity(f"identity needs 5 segments, got {len(segments)}")
        plane, group, provider, rtype, name = segments
        return cls(
            plane=plane,
            resource_group=group,
            provider=provider,
            resource_type=rtype,
            name=name,
        )

    def __str__(self) -> str:
        return self.key
