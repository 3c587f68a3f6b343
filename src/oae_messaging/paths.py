"""Hashed path allocation for sharding messages and profiles in the repository.

Identifiers are hashed with SHA-1; the upper-case hex digest is cut into
two-character segments that form the directories above the identifier leaf.
With three levels, ``admin`` lands at ``/D0/33/E2/admin``. The scheme is a
pure function of the identifier and the depth, so the same identifier always
maps to the same location.
"""

from __future__ import annotations

import hashlib
from dataclasses import dataclass

from .config import Settings

DEFAULT_HASH_LEVELS = 3
SEGMENT_WIDTH = 2
PROFILE_NODE = "authprofile"


class InvalidIdentifier(ValueError):
    """Raised when an identifier cannot be turned into a storage path."""

    def __init__(self, identifier: object, reason: str) -> None:
        super().__init__(f"Invalid identifier {identifier!r}: {reason}")
        self.identifier = identifier
        self.reason = reason


class PathResolutionError(ValueError):
    """Raised when a concrete repository path cannot be mapped back to a store root."""

    def __init__(self, path: str, reason: str) -> None:
        super().__init__(f"Cannot resolve store root for {path!r}: {reason}")
        self.path = path
        self.reason = reason


def validate_identifier(identifier: object) -> str:
    if not isinstance(identifier, str):
        raise InvalidIdentifier(identifier, "identifier must be a string")
    if not identifier.strip():
        raise InvalidIdentifier(identifier, "identifier must not be empty")
    if "/" in identifier:
        raise InvalidIdentifier(identifier, "identifier must not contain '/'")
    if identifier in {".", ".."}:
        raise InvalidIdentifier(identifier, "identifier must not be a relative path marker")
    return identifier


def hash_segments(identifier: str, levels: int = DEFAULT_HASH_LEVELS) -> list[str]:
    """Return the ``levels`` two-character directory segments for an identifier."""
    validate_identifier(identifier)
    if levels < 0 or levels * SEGMENT_WIDTH > hashlib.sha1().digest_size * 2:
        raise ValueError(f"Unsupported hash depth: {levels}")
    digest = hashlib.sha1(identifier.encode("utf-8")).hexdigest().upper()
    return [digest[i * SEGMENT_WIDTH : (i + 1) * SEGMENT_WIDTH] for i in range(levels)]


def derive_path(identifier: str, levels: int = DEFAULT_HASH_LEVELS) -> str:
    """Return ``/<hh>/<hh>/.../<identifier>`` for the identifier."""
    segments = hash_segments(identifier, levels)
    return "/" + "/".join([*segments, identifier])


def normalize_path(path: str) -> str:
    """Collapse duplicate separators, ``.`` and ``..`` into a canonical absolute path."""
    parts: list[str] = []
    for part in path.split("/"):
        if not part or part == ".":
            continue
        if part == "..":
            if parts:
                parts.pop()
            continue
        parts.append(part)
    return "/" + "/".join(parts)


def split_path(path: str) -> list[str]:
    return [part for part in normalize_path(path).split("/") if part]


def get_node_path_parts(virtual_path: str) -> tuple[str, str]:
    """Split ``name/rest/of/path`` into ``("name", "/rest/of/path")``."""
    parts = split_path(virtual_path)
    if not parts:
        return "", ""
    head, *rest = parts
    return head, ("/" + "/".join(rest)) if rest else ""


def to_internal_hashed_path(
    real_path: str,
    node_name: str,
    path_info: str = "",
    levels: int = DEFAULT_HASH_LEVELS,
) -> str:
    """Map a virtual ``node_name + path_info`` below ``real_path`` onto its hashed location."""
    return normalize_path(f"{real_path}/{derive_path(node_name, levels)}/{path_info}")


@dataclass(slots=True, frozen=True)
class PathLayout:
    private_root: str = "/_private"
    user_public_root: str = "/_user/public"
    group_public_root: str = "/_group/public"
    message_dir: str = "messages"
    message_url_root: str = "/_user/message"
    user_levels: int = DEFAULT_HASH_LEVELS
    message_levels: int = 4

    @classmethod
    def from_settings(cls, settings: Settings) -> PathLayout:
        layout = settings.layout
        return cls(
            private_root=normalize_path(layout.private_root),
            user_public_root=normalize_path(layout.user_public_root),
            group_public_root=normalize_path(layout.group_public_root),
            message_dir=layout.message_dir,
            message_url_root=normalize_path(layout.message_url_root),
            user_levels=layout.user_hash_levels,
            message_levels=layout.message_hash_levels,
        )

    def message_store_path(self, principal: str) -> str:
        """Absolute store root, e.g. ``/_private/D0/33/E2/admin/messages``."""
        user_path = derive_path(principal, self.user_levels)
        return normalize_path(f"{self.private_root}/{user_path}/{self.message_dir}")

    def message_path(self, principal: str, message_id: str) -> str:
        return normalize_path(f"{self.message_store_path(principal)}/{self.relative_message_path(message_id)}")

    def relative_message_path(self, message_id: str) -> str:
        """Path of a message below its store root, e.g. ``/FD/E1/DF/01/<id>``."""
        return derive_path(message_id, self.message_levels)

    def message_url(self, message_id: str) -> str:
        return normalize_path(f"{self.message_url_root}/{derive_path(message_id, self.message_levels)}")

    def profile_path(self, username: str) -> str:
        user_path = derive_path(username, self.user_levels)
        return normalize_path(f"{self.user_public_root}/{user_path}/{PROFILE_NODE}")

    def principal_from_profile_path(self, path: str) -> str:
        parts = split_path(path)
        root_parts = split_path(self.user_public_root)
        expected = len(root_parts) + self.user_levels + 2
        if len(parts) != expected or parts[: len(root_parts)] != root_parts or parts[-1] != PROFILE_NODE:
            raise PathResolutionError(path, "not a profile path")
        principal = parts[-2]
        if parts[len(root_parts) : -2] != hash_segments(principal, self.user_levels):
            raise PathResolutionError(path, "hash segments do not match principal")
        return principal

    def path_to_store_root(self, node_path: str) -> str:
        """Return the message store root enclosing ``node_path``.

        The path must start with the private root, followed by the principal's
        hash segments, the principal and the message directory. Anything below
        that is treated as content of the store.
        """
        if not isinstance(node_path, str) or not node_path.strip():
            raise PathResolutionError(str(node_path), "empty path")
        parts = split_path(node_path)
        root_parts = split_path(self.private_root)
        if parts[: len(root_parts)] != root_parts:
            raise PathResolutionError(node_path, f"path is outside {self.private_root}")
        offset = len(root_parts)
        needed = offset + self.user_levels + 2
        if len(parts) < needed:
            raise PathResolutionError(node_path, "path is too short to contain a message store")
        segments = parts[offset : offset + self.user_levels]
        principal = parts[offset + self.user_levels]
        if parts[needed - 1] != self.message_dir:
            raise PathResolutionError(node_path, f"expected {self.message_dir!r} below principal {principal!r}")
        try:
            expected = hash_segments(principal, self.user_levels)
        except InvalidIdentifier as exc:
            raise PathResolutionError(node_path, exc.reason) from exc
        if segments != expected:
            raise PathResolutionError(node_path, "hash segments do not match principal")
        return "/" + "/".join(parts[:needed])
