"""Channel-agnostic message delivery used by the drip sequencer and the action runner.

Both channels report through ``SendResult`` instead of raising, so callers can
record the failure text and move on to the next item.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass

from dripline.infra.communication import (
    CommunicationResult,
    NoopCommunicationAdapter,
    TwilioCommunicationAdapter,
    resolve_communication_adapter,
)
from dripline.infra.email import EmailAdapter, NoopEmailAdapter, resolve_email_adapter
from dripline.infra.metrics import metrics

logger = logging.getLogger(__name__)

CommunicationAdapterLike = TwilioCommunicationAdapter | NoopCommunicationAdapter
EmailAdapterLike = EmailAdapter | NoopEmailAdapter


@dataclass(frozen=True)
class SendResult:
    ok: bool
    error: str | None = None


def _to_send_result(channel: str, result: CommunicationResult) -> SendResult:
    if result.status == "sent":
        metrics.record_message_send(channel, "sent")
        return SendResult(ok=True)
    error = result.error_code or f"{channel}_failed"
    metrics.record_message_send(channel, "failed")
    return SendResult(ok=False, error=error)


class MessageSender:
    def __init__(
        self,
        communication_adapter: CommunicationAdapterLike,
        email_adapter: EmailAdapterLike,
    ) -> None:
        self.communication_adapter = communication_adapter
        self.email_adapter = email_adapter

    async def send_sms(self, to: str, body: str) -> SendResult:
        try:
            result = await self.communication_adapter.send_sms(to_number=to, body=body)
        except Exception as exc:  # noqa: BLE001
            logger.warning("sms_send_error", extra={"extra": {"reason": type(exc).__name__}})
            metrics.record_message_send("sms", "error")
            return SendResult(ok=False, error=f"sms_error:{type(exc).__name__}")
        return _to_send_result("sms", result)

    async def send_email(self, to: str, subject: str, text: str, from_name: str | None = None) -> SendResult:
        try:
            result = await self.email_adapter.send_email(to, subject, text, from_name=from_name)
        except Exception as exc:  # noqa: BLE001
            logger.warning("email_send_error", extra={"extra": {"reason": type(exc).__name__}})
            metrics.record_message_send("email", "error")
            return SendResult(ok=False, error=f"email_error:{type(exc).__name__}")
        return _to_send_result("email", result)


def resolve_message_sender(app_settings) -> MessageSender:
    return MessageSender(
        communication_adapter=resolve_communication_adapter(app_settings),
        email_adapter=resolve_email_adapter(app_settings),
    )
