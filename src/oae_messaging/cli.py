"""Command-line interface surface for developer tooling."""

from __future__ import annotations

import io
import json
import logging
from typing import Annotated, Optional

import structlog
import typer
from rich.console import Console
from rich.table import Table

from .config import Settings, get_settings
from .messaging import (
    BOX_INBOX,
    PROP_SAKAI_BODY,
    PROP_SAKAI_MESSAGEBOX,
    PROP_SAKAI_SUBJECT,
    PROP_SAKAI_TO,
    MessagingService,
)
from .paths import InvalidIdentifier, PathLayout, PathResolutionError, derive_path
from .personal import ProfileStore
from .search import DEFAULT_ITEMS, write_search_results
from .serializer import JSONWriter, MessageSearchResultProcessor, SerializationError
from .store import Node, NodeNotFoundError, open_session

console = Console()
app = typer.Typer(help="Developer utilities for the OAE messaging archive.")

_LOGGING_CONFIGURED = False


def _configure_logging(settings: Settings) -> None:
    """Initialize structlog and stdlib logging formatting."""
    global _LOGGING_CONFIGURED
    if _LOGGING_CONFIGURED:
        return
    processors = [
        structlog.contextvars.merge_contextvars,
        structlog.processors.TimeStamper(fmt="iso"),
        structlog.processors.add_log_level,
    ]
    if settings.log_json_enabled:
        processors.append(structlog.processors.JSONRenderer())
    else:
        processors.append(structlog.processors.KeyValueRenderer(key_order=["event", "path", "id"]))
    level = getattr(logging, settings.log_level.upper(), logging.INFO)
    structlog.configure(
        processors=processors,
        wrapper_class=structlog.make_filtering_bound_logger(level),
        logger_factory=structlog.stdlib.LoggerFactory(),
        cache_logger_on_first_use=True,
    )
    logging.basicConfig(level=level)
    _LOGGING_CONFIGURED = True


@app.callback()
def main() -> None:
    """Configure logging before any command runs."""
    _configure_logging(get_settings())


def _services(settings: Settings) -> tuple[MessagingService, MessageSearchResultProcessor]:
    layout = PathLayout.from_settings(settings)
    messaging = MessagingService(layout)
    return messaging, MessageSearchResultProcessor(messaging, ProfileStore(layout))


def _parse_assignments(items: list[str] | None) -> dict[str, object]:
    parsed: dict[str, object] = {}
    for item in items or []:
        if "=" not in item:
            raise typer.BadParameter(f"Expected key=value, got {item!r}")
        key, value = item.split("=", 1)
        key = key.strip()
        existing = parsed.get(key)
        if existing is None:
            parsed[key] = value
        elif isinstance(existing, list):
            existing.append(value)
        else:
            parsed[key] = [existing, value]
    return parsed


@app.command("derive-path")
def derive_path_command(
    identifier: Annotated[str, typer.Argument(help="Identifier to hash.")],
    levels: Annotated[int, typer.Option(help="Number of two-character hash segments.", min=0)] = 3,
) -> None:
    """Print the hashed storage path of an identifier."""
    try:
        console.print(derive_path(identifier, levels), highlight=False, soft_wrap=True)
    except (InvalidIdentifier, ValueError) as exc:
        console.print(f"[red]{exc}[/]")
        raise typer.Exit(code=1) from exc


@app.command("store-path")
def store_path_command(
    principal: Annotated[str, typer.Argument(help="User or group owning the store.")],
) -> None:
    """Print the message store root of a principal."""
    layout = PathLayout.from_settings(get_settings())
    try:
        console.print(layout.message_store_path(principal), highlight=False, soft_wrap=True)
    except InvalidIdentifier as exc:
        console.print(f"[red]{exc}[/]")
        raise typer.Exit(code=1) from exc


@app.command("store-root")
def store_root_command(
    node_path: Annotated[str, typer.Argument(help="Path of a node inside a message store.")],
) -> None:
    """Print the message store root enclosing a node path."""
    layout = PathLayout.from_settings(get_settings())
    try:
        console.print(layout.path_to_store_root(node_path), highlight=False, soft_wrap=True)
    except PathResolutionError as exc:
        console.print(f"[red]{exc}[/]")
        raise typer.Exit(code=1) from exc


@app.command("profile")
def profile_command(
    username: Annotated[str, typer.Argument(help="User whose profile is written.")],
    assignments: Annotated[
        Optional[list[str]],
        typer.Option("--set", "-s", help="Profile property as key=value; repeat a key for lists."),
    ] = None,
) -> None:
    """Create or replace a user profile."""
    settings = get_settings()
    store = ProfileStore(PathLayout.from_settings(settings))
    with open_session(settings, username, message=f"profile: {username}") as session:
        path = store.save(session, username, _parse_assignments(assignments))
    console.print(f"[green]Saved[/] {path}", highlight=False, soft_wrap=True)


@app.command("send")
def send_command(
    sender: Annotated[str, typer.Option("--from", help="Sending user.")],
    recipients: Annotated[list[str], typer.Option("--to", help="Recipient user; repeatable.")],
    subject: Annotated[str, typer.Option(help="Message subject.")] = "",
    body: Annotated[str, typer.Option(help="Message body.")] = "",
    reply_to: Annotated[Optional[str], typer.Option("--reply-to", help="Id of the message being answered.")] = None,
    message_id: Annotated[Optional[str], typer.Option("--id", help="Explicit, globally unique message id.")] = None,
) -> None:
    """Send a message from one user to others."""
    settings = get_settings()
    messaging, _ = _services(settings)
    properties: dict[str, object] = {
        PROP_SAKAI_TO: recipients[0] if len(recipients) == 1 else list(recipients),
        PROP_SAKAI_SUBJECT: subject,
        PROP_SAKAI_BODY: body,
    }
    if reply_to:
        properties = messaging.reply_properties(reply_to, properties)
    try:
        with open_session(settings, sender, message=f"mail: {sender} -> {', '.join(recipients)} | {subject}") as session:
            node = messaging.send(session, properties, message_id)
    except InvalidIdentifier as exc:
        console.print(f"[red]{exc}[/]")
        raise typer.Exit(code=1) from exc
    console.print(node.name, highlight=False, soft_wrap=True)


@app.command("show")
def show_command(
    principal: Annotated[str, typer.Argument(help="Owner of the message store.")],
    message_id: Annotated[str, typer.Argument(help="Message id.")],
) -> None:
    """Print a message as rendered in search results."""
    settings = get_settings()
    messaging, processor = _services(settings)
    with open_session(settings, principal) as session:
        try:
            payload = processor.serialize(session, messaging.layout.message_path(principal, message_id))
        except (SerializationError, InvalidIdentifier) as exc:
            console.print(f"[red]{exc}[/]")
            raise typer.Exit(code=1) from exc
    console.print_json(json.dumps(payload))


def _in_box(node: Node, box: str) -> bool:
    if not node.has_property(PROP_SAKAI_MESSAGEBOX):
        return False
    values = node.properties[PROP_SAKAI_MESSAGEBOX].values
    return bool(values) and str(values[0]) == box


@app.command("search")
def search_command(
    principal: Annotated[str, typer.Argument(help="Owner of the message store.")],
    box: Annotated[str, typer.Option(help="Message box to list.")] = BOX_INBOX,
    items: Annotated[int, typer.Option(help="Page size.", min=0)] = DEFAULT_ITEMS,
    page: Annotated[int, typer.Option(help="Zero-based page number.", min=0)] = 0,
) -> None:
    """List the messages of a box in search result format."""
    settings = get_settings()
    messaging, processor = _services(settings)
    buffer = io.StringIO()
    with open_session(settings, principal) as session:
        store = messaging.layout.message_store_path(principal)
        nodes = session.find_nodes(store, lambda node: _in_box(node, box))
        try:
            write_search_results(JSONWriter(buffer), session, nodes, processor, offset=page * items, limit=items)
        except SerializationError as exc:
            console.print(f"[red]{exc}[/]")
            raise typer.Exit(code=1) from exc
    console.print_json(buffer.getvalue())


@app.command("mailboxes")
def mailboxes_command(
    email: Annotated[str, typer.Argument(help="E-mail address to look up.")],
) -> None:
    """List the mailboxes registered for an e-mail address."""
    settings = get_settings()
    messaging, _ = _services(settings)
    with open_session(settings, "admin") as session:
        names = messaging.get_mailboxes_for_email_address(session, email)
    table = Table(title=f"Mailboxes for {email}")
    table.add_column("Principal")
    table.add_column("Store")
    for name in names:
        table.add_row(name, messaging.layout.message_store_path(name))
    console.print(table)
    if not names:
        raise typer.Exit(code=1)


@app.command("copy")
def copy_command(
    message_id: Annotated[str, typer.Argument(help="Message id.")],
    source: Annotated[str, typer.Option(help="Principal owning the message.")],
    target: Annotated[str, typer.Option(help="Principal receiving the copy.")],
) -> None:
    """Copy a message from one principal's store to another's."""
    settings = get_settings()
    messaging, _ = _services(settings)
    layout = messaging.layout
    with open_session(settings, "admin", message=f"copy: {message_id} {source} -> {target}") as session:
        try:
            node = messaging.copy_message(
                session, layout.message_store_path(target), layout.message_store_path(source), message_id
            )
        except (NodeNotFoundError, InvalidIdentifier) as exc:
            console.print(f"[red]{exc}[/]")
            raise typer.Exit(code=1) from exc
    console.print(node.path, highlight=False, soft_wrap=True)
