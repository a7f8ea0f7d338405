"""Email transport for drip steps and internal automation notices.

``send_email`` reports through ``CommunicationResult`` like the SMS adapter;
transport errors and an open circuit become error codes rather than exceptions.
"""

import logging
import random
import smtplib
from email.message import EmailMessage
from email.utils import formataddr
from typing import Any

import anyio
import httpx

from dripline.infra.communication import CommunicationResult
from dripline.settings import settings
from dripline.shared.circuit_breaker import CircuitBreaker, CircuitBreakerOpenError

logger = logging.getLogger(__name__)

SENDGRID_SEND_URL = "https://api.sendgrid.com/v3/mail/send"


class NoopEmailAdapter:
    async def send_email(
        self,
        recipient: str,
        subject: str,
        body: str,
        *,
        from_name: str | None = None,
    ) -> CommunicationResult:
        del body, from_name
        logger.info("email_send_skipped", extra={"extra": {"subject": subject, "mode": "noop"}})
        return CommunicationResult.failed("email_disabled")


class EmailAdapter:
    def __init__(
        self,
        http_client: httpx.AsyncClient | None = None,
        circuit: CircuitBreaker | None = None,
    ) -> None:
        self.http_client = http_client
        self.circuit = circuit or CircuitBreaker(
            name="email",
            failure_threshold=settings.email_circuit_failure_threshold,
            recovery_time=settings.email_circuit_recovery_seconds,
            timeout_seconds=settings.email_timeout_seconds * max(1, settings.email_http_max_attempts),
        )

    async def send_email(
        self,
        recipient: str,
        subject: str,
        body: str,
        *,
        from_name: str | None = None,
    ) -> CommunicationResult:
        if settings.email_mode == "off":
            return CommunicationResult.failed("email_disabled")
        if not recipient:
            return CommunicationResult.failed("email_missing_recipient")
        sender_name = from_name or settings.email_from_name
        try:
            if settings.email_mode == "sendgrid":
                await self.circuit.call(self._send_via_sendgrid, recipient, subject, body, sender_name)
            else:
                await self.circuit.call(self._send_via_smtp, recipient, subject, body, sender_name)
        except CircuitBreakerOpenError:
            logger.warning("email_circuit_open", extra={"extra": {"mode": settings.email_mode}})
            return CommunicationResult.failed("email_circuit_open")
        except Exception as exc:  # noqa: BLE001
            logger.warning(
                "email_send_failed",
                extra={"extra": {"mode": settings.email_mode, "reason": type(exc).__name__}},
            )
            return CommunicationResult.failed(str(exc) or type(exc).__name__)
        return CommunicationResult(status="sent")

    async def _send_via_sendgrid(
        self, to_email: str, subject: str, body: str, from_name: str | None
    ) -> None:
        api_key = settings.sendgrid_api_key
        from_email = settings.email_sender
        if not api_key or not from_email:
            raise RuntimeError("sendgrid_not_configured")
        sender: dict[str, str] = {"email": from_email}
        if from_name:
            sender["name"] = from_name
        payload: dict[str, Any] = {
            "personalizations": [{"to": [{"email": to_email}]}],
            "from": sender,
            "subject": subject,
            "content": [{"type": "text/plain", "value": body}],
        }
        client = self.http_client or httpx.AsyncClient()
        try:
            response = await _post_with_retry(
                client, headers={"Authorization": f"Bearer {api_key}"}, json=payload
            )
        finally:
            if self.http_client is None:
                await client.aclose()
        if response.status_code >= 400:
            raise RuntimeError(f"sendgrid_status_{response.status_code}")

    async def _send_via_smtp(self, to_email: str, subject: str, body: str, from_name: str | None) -> None:
        host = settings.smtp_host
        from_email = settings.email_sender
        if not host or not from_email:
            raise RuntimeError("smtp_not_configured")

        message = EmailMessage()
        message["From"] = formataddr((from_name, from_email)) if from_name else from_email
        message["To"] = to_email
        message["Subject"] = subject
        message.set_content(body)

        await anyio.to_thread.run_sync(_smtp_deliver, host, settings.smtp_port or 587, message)


def _smtp_deliver(host: str, port: int, message: EmailMessage) -> None:
    username = settings.smtp_username
    password = settings.smtp_password
    smtp_cls = smtplib.SMTP if settings.smtp_use_tls else smtplib.SMTP_SSL
    with smtp_cls(host, port, timeout=settings.smtp_timeout_seconds) as smtp:
        if settings.smtp_use_tls:
            smtp.starttls()
        if username and password:
            smtp.login(username, password)
        smtp.send_message(message)


def resolve_email_adapter(app_settings) -> EmailAdapter | NoopEmailAdapter:
    if app_settings.email_mode == "off" or getattr(app_settings, "testing", False):
        return NoopEmailAdapter()
    return EmailAdapter()


async def _post_with_retry(
    client: httpx.AsyncClient,
    *,
    headers: dict[str, str],
    json: dict[str, Any],
) -> httpx.Response:
    """POST to SendGrid, retrying timeouts, connect errors, 429 and 5xx with jittered backoff."""
    attempts = max(1, settings.email_http_max_attempts)
    for attempt in range(1, attempts + 1):
        try:
            response = await client.post(
                SENDGRID_SEND_URL, headers=headers, json=json, timeout=settings.email_timeout_seconds
            )
        except (httpx.TimeoutException, httpx.ConnectError):
            if attempt == attempts:
                raise
        else:
            if attempt == attempts or not (response.status_code == 429 or response.status_code >= 500):
                return response
        delay = min(
            settings.email_http_backoff_seconds * (2 ** (attempt - 1)),
            settings.email_http_backoff_max_seconds,
        )
        await anyio.sleep(delay * (1 + random.uniform(0.0, 0.3)))
    raise RuntimeError("email_http_retry_exhausted")  # pragma: no cover
