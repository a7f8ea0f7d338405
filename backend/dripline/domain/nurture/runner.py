from __future__ import annotations

import asyncio
import logging
from datetime import datetime, timedelta

from sqlalchemy.ext.asyncio import AsyncSession

from dripline.domain.contacts.db_models import Contact
from dripline.domain.errors import DeliveryError
from dripline.domain.nurture import service as nurture_service
from dripline.domain.nurture.billing import BillingGate, SubscriptionStatusProvider
from dripline.domain.nurture.db_models import NurtureStep
from dripline.domain.nurture.service import DueEnrollment
from dripline.domain.nurture.statuses import CampaignStatus, StepKind
from dripline.domain.nurture.templates import append_footer, build_template_vars, render_template
from dripline.domain.tenants import service as tenants_service
from dripline.domain.tenants.db_models import Owner
from dripline.infra.messaging import MessageSender
from dripline.infra.metrics import metrics
from dripline.settings import settings
from dripline.shared.budget import PassBudget

logger = logging.getLogger(__name__)

CAMPAIGN_PAUSED_ERROR = "Campaign is paused."
CAMPAIGN_INACTIVE_ERROR = "Campaign is not active."
NO_PHONE_ERROR = "Contact has no phone number."
NO_EMAIL_ERROR = "Contact has no email address."
EMPTY_SUBJECT = "(no subject)"

OUTCOMES = ("sent", "completed", "stopped", "deferred", "failed", "skipped")


def _error_text(exc: BaseException) -> str:
    message = str(exc).strip() or "Send failed"
    return message[: settings.nurture_error_max_length]


async def _deliver(
    sender: MessageSender,
    item: DueEnrollment,
    step: NurtureStep,
    contact: Contact | None,
    owner: Owner | None,
) -> None:
    from_name = tenants_service.resolve_from_name(owner)
    variables = build_template_vars(
        contact=contact,
        owner=owner,
        business_name=from_name,
        message_body=step.body,
    )

    if step.kind == StepKind.SMS:
        to = (contact.phone if contact else None) or ""
        if not to.strip():
            raise DeliveryError(NO_PHONE_ERROR)
        body = append_footer(render_template(step.body, variables).strip(), item.sms_footer)
        result = await sender.send_sms(to.strip(), body)
        if not result.ok:
            raise DeliveryError(result.error or "Failed to send SMS")
        return

    to = (contact.email if contact else None) or ""
    if not to.strip():
        raise DeliveryError(NO_EMAIL_ERROR)
    subject = render_template(step.subject or "", variables).strip() or EMPTY_SUBJECT
    body = render_template(step.body, variables).strip()
    text = append_footer(body, item.email_footer) or " "
    result = await sender.send_email(to.strip(), subject, text, from_name=from_name)
    if not result.ok:
        raise DeliveryError(result.error or "Failed to send email")


async def _process_enrollment(
    session: AsyncSession,
    sender: MessageSender,
    gate: BillingGate,
    item: DueEnrollment,
    *,
    now: datetime,
    timeout: float | None,
    errors: list[dict[str, str]],
) -> tuple[str, ...]:
    if item.campaign_status == CampaignStatus.PAUSED:
        retry_at = now + timedelta(minutes=settings.nurture_paused_retry_minutes)
        applied = await nurture_service.defer_enrollment(
            session, item, retry_at=retry_at, error=CAMPAIGN_PAUSED_ERROR
        )
        return ("deferred",) if applied else ("skipped",)

    if item.campaign_status != CampaignStatus.ACTIVE:
        applied = await nurture_service.stop_enrollment(session, item, error=CAMPAIGN_INACTIVE_ERROR)
        return ("stopped",) if applied else ("skipped",)

    decision = await gate.check(item.owner_id, item.campaign_id, item.subscription_id)
    if not decision.ok:
        await nurture_service.pause_campaign(session, item.owner_id, item.campaign_id)
        retry_at = now + timedelta(minutes=settings.nurture_billing_retry_minutes)
        applied = await nurture_service.defer_enrollment(
            session, item, retry_at=retry_at, error=decision.error
        )
        return ("deferred",) if applied else ("skipped",)

    steps = await nurture_service.list_steps(
        session, item.owner_id, item.campaign_id, limit=settings.nurture_max_steps
    )
    if item.step_index >= len(steps):
        applied = await nurture_service.complete_enrollment(session, item)
        return ("completed",) if applied else ("skipped",)
    step = steps[item.step_index]
    next_step = steps[item.step_index + 1] if item.step_index + 1 < len(steps) else None

    contact = await session.get(Contact, item.contact_id)
    owner = await tenants_service.get_owner(session, item.owner_id)
    try:
        await asyncio.wait_for(_deliver(sender, item, step, contact, owner), timeout=timeout)
    except Exception as exc:  # noqa: BLE001
        message = _error_text(exc)
        errors.append({"enrollment_id": str(item.enrollment_id), "error": message})
        logger.warning(
            "nurture_send_failed",
            extra={
                "extra": {
                    "enrollment_id": str(item.enrollment_id),
                    "step_index": item.step_index,
                    "reason": type(exc).__name__,
                }
            },
        )
        retry_at = now + timedelta(minutes=settings.nurture_send_retry_minutes)
        applied = await nurture_service.defer_enrollment(session, item, retry_at=retry_at, error=message)
        return ("failed",) if applied else ("skipped",)

    next_send_at = (
        now + timedelta(minutes=max(0, next_step.delay_minutes or 0)) if next_step is not None else None
    )
    applied = await nurture_service.advance_enrollment(session, item, now=now, next_send_at=next_send_at)
    if not applied:
        return ("skipped",)
    logger.info(
        "nurture_step_sent",
        extra={
            "extra": {
                "enrollment_id": str(item.enrollment_id),
                "step_index": item.step_index,
                "completed": next_step is None,
            }
        },
    )
    return ("sent",) if next_step is not None else ("sent", "completed")


async def run_nurture_pass(
    session: AsyncSession,
    sender: MessageSender,
    subscription_provider: SubscriptionStatusProvider,
    *,
    now: datetime,
    batch_size: int | None = None,
    budget: PassBudget | None = None,
    item_timeout: float | None = None,
) -> dict:
    """Advance due enrollments, oldest first, one step each."""
    batch_size = batch_size or settings.nurture_batch_size
    timeout = item_timeout if item_timeout is not None else settings.collaborator_timeout_seconds
    budget = budget or PassBudget(None)
    gate = BillingGate(subscription_provider, production=settings.app_env == "prod", timeout=timeout)

    counts = {outcome: 0 for outcome in OUTCOMES}
    processed = 0
    errors: list[dict[str, str]] = []

    due = await nurture_service.load_due_enrollments(session, now=now, limit=batch_size)
    for item in due:
        if budget.exhausted():
            logger.info(
                "nurture_budget_exhausted",
                extra={"extra": {"processed": processed, "remaining": len(due) - processed}},
            )
            break
        try:
            outcomes = await _process_enrollment(
                session, sender, gate, item, now=now, timeout=timeout, errors=errors
            )
            await session.commit()
        except Exception as exc:  # noqa: BLE001
            await session.rollback()
            outcomes = ("failed",)
            errors.append({"enrollment_id": str(item.enrollment_id), "error": _error_text(exc)})
            logger.warning(
                "nurture_enrollment_failed",
                extra={
                    "extra": {
                        "enrollment_id": str(item.enrollment_id),
                        "reason": type(exc).__name__,
                    }
                },
            )
        processed += 1
        for outcome in outcomes:
            counts[outcome] += 1

    for outcome, count in counts.items():
        metrics.record_nurture(outcome, count)
    return {"processed": processed, **counts, "errors": errors}
