"""Message creation, delivery and mailbox lookup on top of a repository session."""

from __future__ import annotations

import uuid
from collections.abc import Mapping, Sequence
from datetime import datetime, timezone
from typing import Any

import structlog

from .paths import PathLayout, normalize_path, validate_identifier
from .store import BaseSession, Node, NodeNotFoundError

PROP_SAKAI_ID = "sakai:id"
PROP_SAKAI_TO = "sakai:to"
PROP_SAKAI_FROM = "sakai:from"
PROP_SAKAI_SUBJECT = "sakai:subject"
PROP_SAKAI_BODY = "sakai:body"
PROP_SAKAI_CREATED = "sakai:created"
PROP_SAKAI_MESSAGEBOX = "sakai:messagebox"
PROP_SAKAI_SENDSTATE = "sakai:sendstate"
PROP_SAKAI_PREVIOUS_MESSAGE = "sakai:previousmessage"
PROP_RESOURCE_TYPE = "sling:resourceType"
PROP_EMAIL = "email"

MESSAGE_RESOURCE_TYPE = "sakai/message"
MESSAGESTORE_RESOURCE_TYPE = "sakai/messagestore"
BOX_INBOX = "inbox"
BOX_OUTBOX = "outbox"

_logger = structlog.get_logger(__name__)


class MessagingService:
    """Creates and copies message nodes inside per-principal message stores."""

    def __init__(self, layout: PathLayout) -> None:
        self.layout = layout

    def _ensure_store(self, session: BaseSession, principal: str) -> str:
        store_path = self.layout.message_store_path(principal)
        if not session.has_node(store_path):
            session.save_node(store_path, {PROP_RESOURCE_TYPE: MESSAGESTORE_RESOURCE_TYPE})
        return store_path

    def create(
        self,
        session: BaseSession,
        properties: Mapping[str, Any],
        message_id: str | None = None,
    ) -> Node:
        """Create a message in the store of the session's user.

        ``message_id`` must be globally unique; one is generated when omitted.
        """
        resolved_id = validate_identifier(message_id) if message_id is not None else uuid.uuid4().hex
        principal = session.user_id
        self._ensure_store(session, principal)
        payload = dict(properties)
        payload[PROP_SAKAI_ID] = resolved_id
        payload.setdefault(PROP_SAKAI_FROM, principal)
        payload.setdefault(PROP_RESOURCE_TYPE, MESSAGE_RESOURCE_TYPE)
        payload.setdefault(PROP_SAKAI_CREATED, datetime.now(timezone.utc))
        path = self.layout.message_path(principal, resolved_id)
        node = session.save_node(path, payload)
        _logger.info("message.created", id=resolved_id, path=path, user=principal)
        return node

    def copy_message(self, session: BaseSession, target: str, source: str, message_id: str) -> Node:
        """Copy message ``message_id`` from store ``source`` to store ``target``."""
        relative = self.layout.relative_message_path(message_id)
        source_path = normalize_path(f"{source}/{relative}")
        target_path = normalize_path(f"{target}/{relative}")
        node = session.copy_node(source_path, target_path)
        _logger.info("message.copied", id=message_id, source=source_path, target=target_path)
        return node

    def get_message_store_path_from_message_node(self, node: Node) -> str:
        """Absolute path of the store holding ``node``, e.g. ``/_private/D0/33/E2/admin/messages``."""
        return self.layout.path_to_store_root(node.path)

    def get_mailboxes_for_email_address(self, session: BaseSession, email_address: str) -> list[str]:
        """Return the principal names whose profile carries ``email_address``."""
        wanted = email_address.strip().lower()
        if not wanted:
            return []

        def _matches(node: Node) -> bool:
            prop = node.properties.get(PROP_EMAIL)
            if prop is None:
                return False
            return any(str(value).strip().lower() == wanted for value in prop.values)

        mailboxes: list[str] = []
        for node in session.find_nodes(self.layout.user_public_root, _matches):
            try:
                principal = self.layout.principal_from_profile_path(node.path)
            except ValueError:
                _logger.debug("mailbox.skip_non_profile", path=node.path)
                continue
            if principal not in mailboxes:
                mailboxes.append(principal)
        return mailboxes

    def send(
        self,
        session: BaseSession,
        properties: Mapping[str, Any],
        message_id: str | None = None,
    ) -> Node:
        """Create a message in the sender's outbox and deliver a copy to each recipient."""
        payload = dict(properties)
        payload[PROP_SAKAI_MESSAGEBOX] = BOX_OUTBOX
        payload[PROP_SAKAI_SENDSTATE] = "pending"
        sent = self.create(session, payload, message_id)
        resolved_id = sent.name
        source = self.get_message_store_path_from_message_node(sent)
        for recipient in _recipients(sent.raw_properties().get(PROP_SAKAI_TO)):
            target = self._ensure_store(session, recipient)
            if target == source:
                continue
            copied = self.copy_message(session, target, source, resolved_id)
            session.update_node(copied.path, {PROP_SAKAI_MESSAGEBOX: BOX_INBOX, PROP_SAKAI_SENDSTATE: "notified"})
        return session.update_node(sent.path, {PROP_SAKAI_SENDSTATE: "notified"})

    def reply_properties(self, previous_id: str, properties: Mapping[str, Any]) -> dict[str, Any]:
        """Return ``properties`` linked to ``previous_id`` through the previous-message property."""
        payload = dict(properties)
        payload[PROP_SAKAI_PREVIOUS_MESSAGE] = self.layout.relative_message_path(previous_id)
        return payload

    def get_message(self, session: BaseSession, principal: str, message_id: str) -> Node:
        path = self.layout.message_path(principal, message_id)
        try:
            return session.get_node(path)
        except NodeNotFoundError:
            _logger.warning("message.not_found", id=message_id, user=principal)
            raise


def _recipients(value: Any) -> list[str]:
    if value is None:
        return []
    values: Sequence[Any] = value if isinstance(value, (list, tuple)) else [value]
    return [str(item).strip() for item in values if str(item).strip()]
