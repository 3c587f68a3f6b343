"""Personal and group profile path resolution."""

from __future__ import annotations

from collections.abc import Mapping
from dataclasses import dataclass
from typing import Any

import structlog

from .paths import DEFAULT_HASH_LEVELS, PathLayout, get_node_path_parts, normalize_path, to_internal_hashed_path
from .store import BaseSession, NodeNotFoundError, Property

_logger = structlog.get_logger(__name__)

__all__ = [
    "ProfileResolutionFailure",
    "ProfileStore",
    "VirtualPathResolver",
    "group_public_resolver",
    "personal_private_resolver",
    "personal_public_resolver",
]


class ProfileResolutionFailure(RuntimeError):
    """A user profile could not be resolved. Callers treat this as non-fatal."""

    def __init__(self, username: str | None, reason: str, path: str | None = None) -> None:
        super().__init__(f"Profile for {username!r} unavailable: {reason}")
        self.username = username
        self.reason = reason
        self.path = path


class ProfileStore:
    def __init__(self, layout: PathLayout) -> None:
        self.layout = layout

    def resolve_profile_path(self, username: str) -> str:
        return self.layout.profile_path(username)

    def read_properties(self, session: BaseSession, path: str) -> dict[str, Property]:
        try:
            node = session.get_node(path)
        except NodeNotFoundError as exc:
            raise ProfileResolutionFailure(None, "profile path not found", path) from exc
        return dict(node.properties)

    def load(self, session: BaseSession, username: str) -> dict[str, Property]:
        """Resolve and read a user's profile in one step."""
        path = self.resolve_profile_path(username)
        try:
            return self.read_properties(session, path)
        except ProfileResolutionFailure as exc:
            raise ProfileResolutionFailure(username, exc.reason, path) from exc

    def save(self, session: BaseSession, username: str, properties: Mapping[str, Any]) -> str:
        path = self.resolve_profile_path(username)
        payload = dict(properties)
        payload.setdefault("rep:userId", username)
        payload.setdefault("sling:resourceType", "sakai/user-profile")
        session.save_node(path, payload)
        _logger.info("profile.saved", user=username, path=path)
        return path


@dataclass(slots=True, frozen=True)
class VirtualPathResolver:
    """Maps a virtual ``name/rest`` path under ``real_path`` to its hashed location."""

    real_path: str
    levels: int = DEFAULT_HASH_LEVELS

    def target_path(self, virtual_path: str) -> str:
        node_name, path_info = get_node_path_parts(virtual_path)
        if not node_name:
            return normalize_path(self.real_path)
        return to_internal_hashed_path(self.real_path, node_name, path_info, self.levels)


def group_public_resolver(layout: PathLayout) -> VirtualPathResolver:
    return VirtualPathResolver(layout.group_public_root, layout.user_levels)


def personal_public_resolver(layout: PathLayout) -> VirtualPathResolver:
    return VirtualPathResolver(layout.user_public_root, layout.user_levels)


def personal_private_resolver(layout: PathLayout) -> VirtualPathResolver:
    return VirtualPathResolver(layout.private_root, layout.user_levels)
