"""Filesystem and Git backed content repository for OAE messaging.

Nodes are directories under ``STORAGE_ROOT``; each node's properties live in a
``.content.json`` file. Writes made through a session are committed to the Git
archive when the session closes.
"""

from __future__ import annotations

import contextlib
import json
from collections.abc import Iterator, Mapping
from dataclasses import dataclass, field
from datetime import datetime
from pathlib import Path
from typing import Any, Callable

import structlog
from filelock import SoftFileLock
from git import Actor, Repo

from .config import Settings
from .paths import normalize_path, split_path

NODE_FILENAME = ".content.json"

_logger = structlog.get_logger(__name__)

Scalar = str | int | float | bool | datetime


class RepositoryError(RuntimeError):
    """Raised when the repository cannot satisfy a read or write."""


class NodeNotFoundError(RepositoryError):
    def __init__(self, path: str) -> None:
        super().__init__(f"No node at {path!r}")
        self.path = path


@dataclass(slots=True, frozen=True)
class Property:
    """A node property: either one scalar or a list of scalars."""

    name: str
    values: tuple[Scalar, ...]
    multiple: bool = False

    @classmethod
    def from_raw(cls, name: str, raw: Any) -> Property:
        if isinstance(raw, (list, tuple)):
            return cls(name=name, values=tuple(raw), multiple=True)
        return cls(name=name, values=(raw,), multiple=False)

    @property
    def value(self) -> Scalar:
        if self.multiple:
            raise RepositoryError(f"Property {self.name!r} is multi-valued")
        return self.values[0]

    def to_raw(self) -> Any:
        return list(self.values) if self.multiple else self.values[0]


@dataclass(slots=True)
class Node:
    path: str
    properties: dict[str, Property] = field(default_factory=dict)

    @property
    def name(self) -> str:
        parts = split_path(self.path)
        return parts[-1] if parts else ""

    def has_property(self, name: str) -> bool:
        return name in self.properties

    def get_property(self, name: str) -> Property:
        try:
            return self.properties[name]
        except KeyError:
            raise RepositoryError(f"Property {name!r} not found on {self.path!r}") from None

    def raw_properties(self) -> dict[str, Any]:
        return {name: prop.to_raw() for name, prop in self.properties.items()}


def _to_json_value(value: Any) -> Any:
    if isinstance(value, datetime):
        return value.isoformat()
    if isinstance(value, (list, tuple)):
        return [_to_json_value(v) for v in value]
    return value


def _build_node(path: str, raw: Mapping[str, Any]) -> Node:
    return Node(path=path, properties={name: Property.from_raw(name, value) for name, value in raw.items()})


class BaseSession:
    """Repository operations shared by every session backend."""

    def __init__(self, user_id: str) -> None:
        self.user_id = user_id

    def _read(self, path: str) -> dict[str, Any] | None:
        raise NotImplementedError

    def _write(self, path: str, raw: dict[str, Any]) -> None:
        raise NotImplementedError

    def _paths(self) -> Iterator[str]:
        raise NotImplementedError

    def has_node(self, path: str) -> bool:
        return self._read(normalize_path(path)) is not None

    def get_node(self, path: str) -> Node:
        normalized = normalize_path(path)
        raw = self._read(normalized)
        if raw is None:
            raise NodeNotFoundError(normalized)
        return _build_node(normalized, raw)

    def save_node(self, path: str, properties: Mapping[str, Any]) -> Node:
        normalized = normalize_path(path)
        raw = {name: _to_json_value(value) for name, value in properties.items()}
        self._write(normalized, raw)
        return _build_node(normalized, raw)

    def update_node(self, path: str, properties: Mapping[str, Any]) -> Node:
        node = self.get_node(path)
        merged = node.raw_properties()
        merged.update(properties)
        return self.save_node(node.path, merged)

    def copy_node(self, source: str, target: str) -> Node:
        node = self.get_node(source)
        return self.save_node(target, node.raw_properties())

    def find_nodes(self, root: str, predicate: Callable[[Node], bool] | None = None) -> list[Node]:
        """Return nodes at or below ``root`` (sorted by path) accepted by ``predicate``."""
        prefix = normalize_path(root)
        found: list[Node] = []
        for path in sorted(self._paths()):
            if path != prefix and not path.startswith(prefix.rstrip("/") + "/"):
                continue
            node = self.get_node(path)
            if predicate is None or predicate(node):
                found.append(node)
        return found


class MemorySession(BaseSession):
    """In-process session, used for fakes and tests."""

    def __init__(self, user_id: str = "admin", nodes: Mapping[str, Mapping[str, Any]] | None = None) -> None:
        super().__init__(user_id)
        self._nodes: dict[str, dict[str, Any]] = {}
        for path, raw in (nodes or {}).items():
            self.save_node(path, raw)

    def _read(self, path: str) -> dict[str, Any] | None:
        raw = self._nodes.get(path)
        return dict(raw) if raw is not None else None

    def _write(self, path: str, raw: dict[str, Any]) -> None:
        self._nodes[path] = dict(raw)

    def _paths(self) -> Iterator[str]:
        return iter(list(self._nodes))


@dataclass(slots=True)
class RepositoryArchive:
    settings: Settings
    # Filesystem path to the Git repo working directory (archive root)
    root: Path
    repo: Repo
    # Path used for advisory file lock during archive writes
    lock_path: Path


def ensure_repository(settings: Settings) -> RepositoryArchive:
    root = Path(settings.storage.root).expanduser().resolve()
    root.mkdir(parents=True, exist_ok=True)
    repo = _ensure_repo(root, settings)
    return RepositoryArchive(settings=settings, root=root, repo=repo, lock_path=root / ".archive.lock")


def _ensure_repo(root: Path, settings: Settings) -> Repo:
    if (root / ".git").exists():
        return Repo(str(root))
    repo = Repo.init(str(root))
    # Ensure deterministic, non-interactive commits (disable GPG signing)
    with repo.config_writer() as cw:
        cw.set_value("commit", "gpgsign", "false")
    attributes_path = root / ".gitattributes"
    if not attributes_path.exists():
        attributes_path.write_text("*.json text\n", encoding="utf-8")
    ignore_path = root / ".gitignore"
    if not ignore_path.exists():
        ignore_path.write_text(".archive.lock\n", encoding="utf-8")
    _commit(repo, settings, "chore: initialize archive", [".gitattributes", ".gitignore"])
    return repo


def _commit(repo: Repo, settings: Settings, message: str, rel_paths: list[str]) -> None:
    if not rel_paths:
        return
    actor = Actor(settings.storage.git_author_name, settings.storage.git_author_email)
    repo.index.add(rel_paths)
    if repo.is_dirty(index=True, working_tree=False):
        repo.index.commit(message, author=actor, committer=actor)


class ArchiveSession(BaseSession):
    """Session over the on-disk archive; writes are staged until :meth:`commit`."""

    def __init__(self, archive: RepositoryArchive, user_id: str) -> None:
        super().__init__(user_id)
        self.archive = archive
        self._pending: list[str] = []

    def _node_file(self, path: str) -> Path:
        parts = split_path(path)
        if any(part == NODE_FILENAME for part in parts):
            raise RepositoryError(f"Reserved name in path {path!r}")
        return self.archive.root.joinpath(*parts, NODE_FILENAME)

    def _read(self, path: str) -> dict[str, Any] | None:
        node_file = self._node_file(path)
        if not node_file.is_file():
            return None
        try:
            return json.loads(node_file.read_text(encoding="utf-8"))
        except json.JSONDecodeError as exc:
            raise RepositoryError(f"Corrupt node file for {path!r}: {exc}") from exc

    def _write(self, path: str, raw: dict[str, Any]) -> None:
        node_file = self._node_file(path)
        node_file.parent.mkdir(parents=True, exist_ok=True)
        node_file.write_text(json.dumps(raw, indent=2, sort_keys=True) + "\n", encoding="utf-8")
        rel = node_file.relative_to(self.archive.root).as_posix()
        if rel not in self._pending:
            self._pending.append(rel)

    def _paths(self) -> Iterator[str]:
        for node_file in self.archive.root.rglob(NODE_FILENAME):
            rel = node_file.parent.relative_to(self.archive.root)
            if rel.parts and rel.parts[0] == ".git":
                continue
            yield "/" + rel.as_posix() if rel.parts else "/"

    @property
    def pending(self) -> list[str]:
        return list(self._pending)

    def commit(self, message: str | None = None) -> None:
        if not self._pending:
            return
        subject = message or f"repo: {self.user_id} updated {len(self._pending)} node(s)"
        _commit(self.archive.repo, self.archive.settings, subject, self._pending)
        _logger.debug("repository.commit", user=self.user_id, paths=len(self._pending))
        self._pending.clear()


@contextlib.contextmanager
def open_session(settings: Settings, user_id: str, *, message: str | None = None) -> Iterator[ArchiveSession]:
    """Open a request-scoped session; commits on success and always releases the lock."""
    archive = ensure_repository(settings)
    lock = SoftFileLock(str(archive.lock_path))
    lock.acquire(timeout=settings.storage.lock_timeout_seconds)
    try:
        session = ArchiveSession(archive, user_id)
        yield session
        session.commit(message)
    finally:
        lock.release()
