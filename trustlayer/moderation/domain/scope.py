"""Global versus per-community scoping for trust data."""

from __future__ import annotations

from dataclasses import dataclass
from typing import Union

from trustlayer.moderation.domain.errors import InvalidInputError

# Storage encoding of the global scope; never a valid community id.
_GLOBAL_STORAGE_KEY = ""


@dataclass(frozen=True, slots=True)
class GlobalScope:
    def storage_key(self) -> str:
        return _GLOBAL_STORAGE_KEY

    def community_id(self) -> str | None:
        return None


@dataclass(frozen=True, slots=True)
class CommunityScope:
    id: str

    def __post_init__(self) -> None:
        if not self.id or not self.id.strip():
            raise InvalidInputError("community_id_required")

    def storage_key(self) -> str:
        return self.id

    def community_id(self) -> str | None:
        return self.id


Scope = Union[GlobalScope, CommunityScope]

GLOBAL = GlobalScope()


def scope_for(community_id: str | None) -> Scope:
    """Map an optional community id from the API surface to a scope."""

    if community_id is None or community_id == _GLOBAL_STORAGE_KEY:
        return GLOBAL
    return CommunityScope(community_id)


def scope_from_storage(value: str | None) -> Scope:
    return scope_for(value)
