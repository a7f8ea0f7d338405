from __future__ import annotations

import logging
from dataclasses import dataclass

import httpx

from dripline.settings import settings

logger = logging.getLogger(__name__)

TWILIO_API_BASE = "https://api.twilio.com/2010-04-01"


@dataclass(frozen=True)
class CommunicationResult:
    """Outcome of one provider call; ``status`` is ``sent`` or ``failed``."""

    status: str
    provider_msg_id: str | None = None
    error_code: str | None = None

    @classmethod
    def failed(cls, error_code: str) -> "CommunicationResult":
        return cls(status="failed", error_code=error_code)


class NoopCommunicationAdapter:
    async def send_sms(self, *, to_number: str, body: str) -> CommunicationResult:
        del to_number, body
        logger.info("sms_send_skipped", extra={"extra": {"mode": "noop"}})
        return CommunicationResult.failed("sms_disabled")


class TwilioCommunicationAdapter:
    def __init__(self, http_client: httpx.AsyncClient | None = None) -> None:
        self.http_client = http_client

    @property
    def configured(self) -> bool:
        return bool(settings.twilio_account_sid and settings.twilio_auth_token and settings.twilio_sms_from)

    @property
    def messages_url(self) -> str:
        return f"{TWILIO_API_BASE}/Accounts/{settings.twilio_account_sid}/Messages.json"

    async def send_sms(self, *, to_number: str, body: str) -> CommunicationResult:
        if settings.sms_mode != "twilio":
            logger.info("sms_send_skipped", extra={"extra": {"mode": settings.sms_mode}})
            return CommunicationResult.failed("sms_disabled")
        if not self.configured:
            logger.warning("sms_send_not_configured")
            return CommunicationResult.failed("twilio_not_configured")

        client = self.http_client or httpx.AsyncClient()
        try:
            response = await client.post(
                self.messages_url,
                data={"To": to_number, "From": settings.twilio_sms_from, "Body": body},
                auth=(settings.twilio_account_sid, settings.twilio_auth_token),
                timeout=settings.twilio_timeout_seconds,
            )
        except httpx.HTTPError as exc:
            logger.warning("twilio_request_failed", extra={"extra": {"reason": type(exc).__name__}})
            return CommunicationResult.failed("twilio_request_failed")
        finally:
            if self.http_client is None:
                await client.aclose()
        return _twilio_result(response)


def _twilio_result(response: httpx.Response) -> CommunicationResult:
    if response.status_code >= 400:
        logger.warning("twilio_request_error", extra={"extra": {"status_code": response.status_code}})
        return CommunicationResult.failed(f"twilio_status_{response.status_code}")
    try:
        sid = response.json().get("sid")
    except ValueError:
        logger.warning("twilio_response_parse_failed")
        sid = None
    return CommunicationResult(status="sent", provider_msg_id=sid)


def resolve_communication_adapter(app_settings) -> TwilioCommunicationAdapter | NoopCommunicationAdapter:
    if app_settings.sms_mode != "twilio":
        return NoopCommunicationAdapter()
    return TwilioCommunicationAdapter()
