"""JSON rendering of message nodes for search results.

A message is written with its ``id`` and display ``path``, the profiles of its
sender and recipient, every stored property, and, when the message replies to
another one, the previous message nested in place of the link.
"""

from __future__ import annotations

import json
from dataclasses import dataclass
from datetime import datetime
from typing import Any, Iterator, Protocol, TextIO

import structlog

from .messaging import PROP_SAKAI_FROM, PROP_SAKAI_PREVIOUS_MESSAGE, PROP_SAKAI_TO, MessagingService
from .paths import InvalidIdentifier, PathLayout, PathResolutionError, normalize_path
from .personal import ProfileResolutionFailure, ProfileStore
from .store import BaseSession, Node, Property, RepositoryError

_logger = structlog.get_logger(__name__)

USER_FIELDS: tuple[tuple[str, str], ...] = (
    (PROP_SAKAI_TO, "userTo"),
    (PROP_SAKAI_FROM, "userFrom"),
)


class JSONWriterError(ValueError):
    """Raised when writer calls do not form a valid JSON document."""


class SerializationError(RuntimeError):
    """Raised when a node cannot be serialized."""

    def __init__(self, path: str, reason: str) -> None:
        super().__init__(f"Cannot serialize {path!r}: {reason}")
        self.path = path
        self.reason = reason


class CycleDetected(SerializationError):
    """Raised when a previous-message chain loops back on itself."""

    def __init__(self, path: str, chain: list[str]) -> None:
        super().__init__(path, "previous-message chain revisits " + " -> ".join([*chain, path]))
        self.chain = chain


class JsonSink(Protocol):
    def object(self) -> JsonSink: ...

    def end_object(self) -> JsonSink: ...

    def array(self) -> JsonSink: ...

    def end_array(self) -> JsonSink: ...

    def key(self, name: str) -> JsonSink: ...

    def value(self, value: Any) -> JsonSink: ...


class JSONWriter:
    """Streaming JSON writer: each call appends to ``stream`` immediately."""

    def __init__(self, stream: TextIO) -> None:
        self._stream = stream
        # "o": object awaiting a key, "k": object awaiting a value, "a": array
        self._stack: list[str] = []
        self._comma = False
        self._done = False

    @property
    def done(self) -> bool:
        return self._done

    def _before_value(self) -> None:
        if self._done:
            raise JSONWriterError("document is already complete")
        if not self._stack:
            return
        mode = self._stack[-1]
        if mode == "o":
            raise JSONWriterError("a key is required before a value inside an object")
        if mode == "a" and self._comma:
            self._stream.write(",")
        elif mode == "k":
            self._stack[-1] = "o"

    def _after_value(self) -> None:
        self._comma = True
        if not self._stack:
            self._done = True

    def _open(self, mode: str, token: str) -> JSONWriter:
        self._before_value()
        self._stream.write(token)
        self._stack.append(mode)
        self._comma = False
        return self

    def _close(self, mode: str, token: str) -> JSONWriter:
        if not self._stack or self._stack[-1] != mode:
            raise JSONWriterError(f"misplaced {token!r}")
        self._stack.pop()
        self._stream.write(token)
        self._after_value()
        return self

    def object(self) -> JSONWriter:
        return self._open("o", "{")

    def end_object(self) -> JSONWriter:
        return self._close("o", "}")

    def array(self) -> JSONWriter:
        return self._open("a", "[")

    def end_array(self) -> JSONWriter:
        return self._close("a", "]")

    def key(self, name: str) -> JSONWriter:
        if not self._stack or self._stack[-1] != "o":
            raise JSONWriterError(f"misplaced key {name!r}")
        if self._comma:
            self._stream.write(",")
        self._stream.write(json.dumps(str(name)) + ":")
        self._stack[-1] = "k"
        self._comma = False
        return self

    def value(self, value: Any) -> JSONWriter:
        self._before_value()
        self._stream.write(json.dumps(value))
        self._after_value()
        return self


class JSONTreeBuilder:
    """Sink that assembles the written document as Python dicts and lists."""

    def __init__(self) -> None:
        self._containers: list[dict[str, Any] | list[Any]] = []
        self._pending_key: str | None = None
        self._result: Any = None
        self._done = False

    @property
    def done(self) -> bool:
        return self._done

    @property
    def result(self) -> Any:
        if not self._done:
            raise JSONWriterError("document is incomplete")
        return self._result

    def _place(self, value: Any) -> None:
        if self._done:
            raise JSONWriterError("document is already complete")
        if not self._containers:
            self._result = value
            return
        top = self._containers[-1]
        if isinstance(top, list):
            top.append(value)
        elif self._pending_key is None:
            raise JSONWriterError("a key is required before a value inside an object")
        else:
            top[self._pending_key] = value
            self._pending_key = None

    def _open(self, container: dict[str, Any] | list[Any]) -> JSONTreeBuilder:
        self._place(container)
        self._containers.append(container)
        return self

    def _close(self, kind: type, token: str) -> JSONTreeBuilder:
        if not self._containers or not isinstance(self._containers[-1], kind) or self._pending_key is not None:
            raise JSONWriterError(f"misplaced {token!r}")
        self._containers.pop()
        if not self._containers:
            self._done = True
        return self

    def object(self) -> JSONTreeBuilder:
        return self._open({})

    def end_object(self) -> JSONTreeBuilder:
        return self._close(dict, "}")

    def array(self) -> JSONTreeBuilder:
        return self._open([])

    def end_array(self) -> JSONTreeBuilder:
        return self._close(list, "]")

    def key(self, name: str) -> JSONTreeBuilder:
        if not self._containers or not isinstance(self._containers[-1], dict) or self._pending_key is not None:
            raise JSONWriterError(f"misplaced key {name!r}")
        self._pending_key = str(name)
        return self

    def value(self, value: Any) -> JSONTreeBuilder:
        self._place(value)
        if not self._containers:
            self._done = True
        return self


def stringify(value: Any) -> str:
    if isinstance(value, bool):
        return "true" if value else "false"
    if isinstance(value, datetime):
        return value.isoformat()
    if value is None:
        return ""
    return str(value)


def write_property(writer: JsonSink, prop: Property) -> None:
    if prop.multiple:
        writer.array()
        for value in prop.values:
            writer.value(stringify(value))
        writer.end_array()
    else:
        writer.value(stringify(prop.value))


@dataclass(slots=True, frozen=True)
class ProfileResult:
    """Outcome of resolving one user reference: properties or the failure."""

    json_name: str
    username: str | None
    properties: dict[str, Property] | None = None
    failure: ProfileResolutionFailure | None = None

    @property
    def ok(self) -> bool:
        return self.failure is None and self.properties is not None


class MessageSearchResultProcessor:
    """Formats message nodes found by a search."""

    def __init__(self, messaging: MessagingService, profiles: ProfileStore) -> None:
        self.messaging = messaging
        self.profiles = profiles

    @property
    def layout(self) -> PathLayout:
        return self.messaging.layout

    def resolve_user(self, session: BaseSession, node: Node, property_name: str, json_name: str) -> ProfileResult:
        """Resolve the user named by ``property_name``; failures are returned, not raised."""
        username: str | None = None
        try:
            prop = node.get_property(property_name)
            # Multi-valued recipients resolve to the first entry.
            username = stringify(prop.values[0]) if prop.values else ""
            properties = self.profiles.load(session, username)
        except ProfileResolutionFailure as exc:
            _logger.warning("profile.not_found", user=username, path=exc.path, field=json_name)
            return ProfileResult(json_name, username, failure=exc)
        except Exception as exc:
            _logger.warning("profile.unavailable", user=username, field=json_name, error=str(exc))
            return ProfileResult(json_name, username, failure=ProfileResolutionFailure(username, str(exc)))
        return ProfileResult(json_name, username, properties=properties)

    def _write_profile(self, writer: JsonSink, result: ProfileResult) -> None:
        assert result.properties is not None
        writer.key(result.json_name)
        writer.object()
        for name, prop in result.properties.items():
            writer.key(name)
            write_property(writer, prop)
        writer.end_object()

    def _previous_message(self, session: BaseSession, node: Node, prop: Property) -> Node:
        reference = stringify(prop.value).strip()
        if not reference:
            raise SerializationError(node.path, "empty previous message reference")
        store = self.messaging.get_message_store_path_from_message_node(node)
        relative = reference if "/" in reference else self.layout.relative_message_path(reference)
        path = normalize_path(f"{store}/{relative}")
        _logger.info("message.previous.fetch", path=path)
        return session.get_node(path)

    def _open_node(self, writer: JsonSink, session: BaseSession, node: Node) -> Iterator[tuple[str, Property]]:
        """Write the head of ``node``'s object and return its properties still to be written."""
        message_id = node.name
        display_path = self.layout.message_url(message_id)
        resolutions = [
            self.resolve_user(session, node, prop_name, json_name)
            for prop_name, json_name in USER_FIELDS
            if node.has_property(prop_name)
        ]

        writer.object()
        writer.key("id")
        writer.value(message_id)
        writer.key("path")
        writer.value(display_path)
        for result in resolutions:
            if result.ok:
                self._write_profile(writer, result)
        return iter(list(node.properties.items()))

    def write_node(self, writer: JsonSink, session: BaseSession, node: Node) -> None:
        """Write ``node`` as one JSON object, nesting each previous message in place of its link.

        The reply chain is walked with an explicit stack of open objects, so its
        length is not bounded by the interpreter's recursion limit.
        """
        chain: list[str] = [node.path]
        visited = {node.path}
        current = node
        try:
            stack = [(node, self._open_node(writer, session, node))]
            while stack:
                current, remaining = stack[-1]
                entry = next(remaining, None)
                if entry is None:
                    writer.end_object()
                    stack.pop()
                    continue
                name, prop = entry
                if name.lower() != PROP_SAKAI_PREVIOUS_MESSAGE:
                    writer.key(name)
                    write_property(writer, prop)
                    continue
                previous = self._previous_message(session, current, prop)
                if previous.path in visited:
                    raise CycleDetected(previous.path, list(chain))
                chain.append(previous.path)
                visited.add(previous.path)
                writer.key(PROP_SAKAI_PREVIOUS_MESSAGE)
                current = previous
                stack.append((previous, self._open_node(writer, session, previous)))
        except SerializationError:
            raise
        except (RepositoryError, PathResolutionError, InvalidIdentifier, JSONWriterError) as exc:
            raise SerializationError(current.path, str(exc)) from exc

    def serialize(self, session: BaseSession, node: Node | str) -> dict[str, Any]:
        """Return the JSON tree for ``node`` (a node or its repository path)."""
        if isinstance(node, str):
            try:
                node = session.get_node(node)
            except RepositoryError as exc:
                raise SerializationError(node, str(exc)) from exc
        builder = JSONTreeBuilder()
        self.write_node(builder, session, node)
        return builder.result
