"""Walks an automation graph downstream of a trigger node and performs its actions.

Every action is best-effort: a failing send or tag write is logged and the walk
moves on to the next node.
"""

from __future__ import annotations

import logging
import re
import uuid
from collections import Counter
from dataclasses import dataclass, field
from typing import Any

from sqlalchemy.ext.asyncio import AsyncSession

from dripline.domain.automations import service as automations_service
from dripline.domain.automations.graph import Automation, Node
from dripline.domain.automations.statuses import (
    TRIGGER_INBOUND_WEBHOOK,
    TRIGGER_TAG_ADDED,
    ActionKind,
    EdgePort,
    MessageTarget,
    NodeType,
)
from dripline.domain.contacts import service as contacts_service
from dripline.domain.contacts.db_models import Contact
from dripline.domain.tenants import service as tenants_service
from dripline.domain.tenants.db_models import Owner
from dripline.infra.messaging import MessageSender

logger = logging.getLogger(__name__)

MAX_WALK_STEPS = 120
MAX_NODE_VISITS = 5
SMS_DEFAULT_BODY = "Got it - thanks!"
SMS_MAX_LENGTH = 1200
EMAIL_DEFAULT_SUBJECT = "Automated message"
EMAIL_SUBJECT_MAX_LENGTH = 180
EMAIL_BODY_MAX_LENGTH = 8000

PHONE_RE = re.compile(r"^[+0-9\s\-().]{7,}$")


def looks_like_email(value: str) -> bool:
    return bool(value) and "@" in value


def looks_like_phone(value: str) -> bool:
    return bool(value) and PHONE_RE.match(value) is not None


def _text(value: Any) -> str:
    if value is None:
        return ""
    return str(value)


@dataclass(frozen=True)
class EventMessage:
    sender: str = ""
    recipient: str = ""
    body: str = ""


@dataclass(frozen=True)
class EventContact:
    id: str | None = None
    name: str | None = None
    email: str | None = None
    phone: str | None = None


@dataclass
class RunContext:
    owner_id: uuid.UUID
    message: EventMessage
    contact_id: str | None = None
    contact_row: Contact | None = None
    contact_name: str | None = None
    contact_email: str | None = None
    contact_phone: str | None = None
    owner: Owner | None = None
    owner_loaded: bool = False
    event: dict[str, Any] = field(default_factory=dict)


CONDITION_FIELDS = {
    "message.body": lambda ctx: ctx.message.body,
    "message.from": lambda ctx: ctx.message.sender,
    "message.to": lambda ctx: ctx.message.recipient,
    "contact.id": lambda ctx: ctx.contact_id or "",
    "contact.phone": lambda ctx: ctx.contact_phone or "",
    "contact.email": lambda ctx: ctx.contact_email or "",
    "contact.name": lambda ctx: ctx.contact_name or "",
}


def evaluate_condition(config: dict[str, Any], ctx: RunContext) -> bool:
    resolver = CONDITION_FIELDS.get(_text(config.get("left")).strip())
    left = _text(resolver(ctx)) if resolver else ""
    right = _text(config.get("right"))
    op = config.get("op")
    if op == "equals":
        return left == right
    if op == "contains":
        return right.lower() in left.lower()
    if op == "starts_with":
        return left.lower().startswith(right.lower())
    if op == "ends_with":
        return left.lower().endswith(right.lower())
    if op == "is_empty":
        return not left.strip()
    if op == "is_not_empty":
        return bool(left.strip())
    return False


def _trigger_filter_matches(node: Node, trigger_kind: str, event: dict[str, Any]) -> bool:
    filter_key = {TRIGGER_TAG_ADDED: "tagId", TRIGGER_INBOUND_WEBHOOK: "webhookKey"}.get(trigger_kind)
    if filter_key is None:
        return True
    expected = _text(node.config.get(filter_key)).strip()
    actual = _text(event.get(filter_key)).strip()
    return not expected or expected == actual


class AutomationActionRunner:
    def __init__(self, message_sender: MessageSender) -> None:
        self.message_sender = message_sender

    async def run_trigger_node(
        self,
        session: AsyncSession,
        owner_id: uuid.UUID,
        automation_id: str,
        trigger_node_id: str,
        trigger_kind: str,
        event: dict[str, Any] | None = None,
    ) -> bool:
        """Run the chain below one trigger node. Returns ``False`` if the node is gone."""
        document = await automations_service.load_setup(session, owner_id)
        automation = next((item for item in document.automations if item.id == automation_id), None)
        if automation is None:
            return False
        node = automation.node(trigger_node_id)
        if node is None or node.trigger_kind != trigger_kind:
            return False
        ctx = await self._build_context(session, owner_id, None, EventMessage(), event or {})
        await self._walk(session, automation, node.id, ctx)
        return True

    async def run_for_event(
        self,
        session: AsyncSession,
        owner_id: uuid.UUID,
        trigger_kind: str,
        *,
        contact: EventContact | None = None,
        message: EventMessage | None = None,
        event: dict[str, Any] | None = None,
    ) -> int:
        """Run every automation with a matching trigger; returns how many ran cleanly."""
        document = await automations_service.load_setup(session, owner_id)
        message = message or EventMessage()
        event = event or {}
        ran = 0
        ctx: RunContext | None = None
        for automation in document.automations:
            triggers = [
                node
                for node in automation.trigger_nodes(trigger_kind)
                if _trigger_filter_matches(node, trigger_kind, event)
            ]
            if not triggers:
                continue
            try:
                if ctx is None:
                    ctx = await self._build_context(session, owner_id, contact, message, event)
                for trigger in triggers:
                    await self._walk(session, automation, trigger.id, ctx)
            except Exception as exc:  # noqa: BLE001
                logger.warning(
                    "automation_run_failed",
                    extra={
                        "extra": {
                            "owner_id": str(owner_id),
                            "automation_id": automation.id,
                            "trigger_kind": trigger_kind,
                            "reason": type(exc).__name__,
                        }
                    },
                )
                continue
            ran += 1
        return ran

    async def _build_context(
        self,
        session: AsyncSession,
        owner_id: uuid.UUID,
        contact: EventContact | None,
        message: EventMessage,
        event: dict[str, Any],
    ) -> RunContext:
        contact = contact or EventContact()
        sender = message.sender.strip()
        email = (contact.email or "").strip() or (sender if looks_like_email(sender) else "")
        phone = (contact.phone or "").strip() or (sender if looks_like_phone(sender) else "")
        name = (contact.name or "").strip() or phone or email or sender or "Contact"

        ctx = RunContext(owner_id=owner_id, message=message, event=event)
        row: Contact | None = None
        if contact.id:
            ctx.contact_id = str(contact.id)
            try:
                row = await contacts_service.get_contact(session, owner_id, uuid.UUID(str(contact.id)))
            except ValueError:
                row = None
        elif email or phone:
            row = await contacts_service.find_or_create_contact(
                session, owner_id, name=name, email=email or None, phone=phone or None
            )
            ctx.contact_id = str(row.contact_id)

        ctx.contact_row = row
        ctx.contact_phone = (row.phone if row else None) or phone or None
        ctx.contact_email = (row.email if row else None) or email or None
        ctx.contact_name = (row.name if row else None) or name
        return ctx

    async def _walk(self, session: AsyncSession, automation: Automation, start_id: str, ctx: RunContext) -> None:
        current: str | None = start_id
        steps = 0
        visits: Counter[str] = Counter()
        while current and steps < MAX_WALK_STEPS:
            steps += 1
            visits[current] += 1
            if visits[current] > MAX_NODE_VISITS:
                break
            node = automation.node(current)
            if node is None:
                break

            if node.type == NodeType.condition.value:
                matched = node.config_kind == "condition" and evaluate_condition(node.config, ctx)
                port = EdgePort.true if matched else EdgePort.false
                current = automation.next_node_id(current, port.value)
                continue

            if node.type == NodeType.action.value and node.config_kind == "action":
                await self._run_action(session, automation, node, ctx)

            current = automation.next_node_id(current, EdgePort.out.value)

    async def _owner(self, session: AsyncSession, ctx: RunContext) -> Owner | None:
        if not ctx.owner_loaded:
            ctx.owner = await tenants_service.get_owner(session, ctx.owner_id)
            ctx.owner_loaded = True
        return ctx.owner

    async def _run_action(self, session: AsyncSession, automation: Automation, node: Node, ctx: RunContext) -> None:
        action_kind = node.config.get("actionKind")
        try:
            if action_kind == ActionKind.send_sms.value:
                await self._send_sms(session, node.config, ctx)
            elif action_kind == ActionKind.send_email.value:
                await self._send_email(session, node.config, ctx)
            elif action_kind == ActionKind.add_tag.value:
                await self._add_tag(session, node.config, ctx)
        except Exception as exc:  # noqa: BLE001
            logger.warning(
                "automation_action_failed",
                extra={
                    "extra": {
                        "owner_id": str(ctx.owner_id),
                        "automation_id": automation.id,
                        "node_id": node.id,
                        "action_kind": action_kind,
                        "reason": type(exc).__name__,
                    }
                },
            )

    async def _send_sms(self, session: AsyncSession, config: dict[str, Any], ctx: RunContext) -> None:
        body = _text(config.get("body")).strip() or SMS_DEFAULT_BODY
        target = _text(config.get("smsTo")) or MessageTarget.inbound_sender.value
        to: str | None = None
        if target == MessageTarget.inbound_sender.value:
            to = ctx.message.sender or None
        elif target == MessageTarget.event_contact.value:
            to = ctx.contact_phone or ctx.message.sender or None
        elif target == MessageTarget.internal_notification.value:
            owner = await self._owner(session, ctx)
            to = owner.phone if owner else None
        elif target == MessageTarget.custom.value:
            to = _text(config.get("smsToNumber")).strip() or None
        if not to:
            return
        result = await self.message_sender.send_sms(to, body[:SMS_MAX_LENGTH])
        if not result.ok:
            logger.warning(
                "automation_sms_failed",
                extra={"extra": {"owner_id": str(ctx.owner_id), "error": result.error}},
            )

    async def _send_email(self, session: AsyncSession, config: dict[str, Any], ctx: RunContext) -> None:
        text = _text(config.get("body")).strip()
        subject = _text(config.get("subject")).strip() or EMAIL_DEFAULT_SUBJECT
        target = _text(config.get("emailTo")) or MessageTarget.internal_notification.value
        to: str | None = None
        if target == MessageTarget.event_contact.value:
            to = ctx.contact_email
        elif target == MessageTarget.internal_notification.value:
            owner = await self._owner(session, ctx)
            to = owner.email if owner else None
        elif target == MessageTarget.custom.value:
            to = _text(config.get("emailToAddress")).strip() or None
        if not to:
            return
        from_name = tenants_service.resolve_from_name(await self._owner(session, ctx))
        result = await self.message_sender.send_email(
            to,
            subject[:EMAIL_SUBJECT_MAX_LENGTH],
            text[:EMAIL_BODY_MAX_LENGTH] or " ",
            from_name=from_name,
        )
        if not result.ok:
            logger.warning(
                "automation_email_failed",
                extra={"extra": {"owner_id": str(ctx.owner_id), "error": result.error}},
            )

    async def _add_tag(self, session: AsyncSession, config: dict[str, Any], ctx: RunContext) -> None:
        tag_id = _text(config.get("tagId")).strip()
        if not tag_id or ctx.contact_row is None:
            return
        await contacts_service.add_tag(session, ctx.contact_row, tag_id)
