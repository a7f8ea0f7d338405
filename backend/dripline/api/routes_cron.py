import logging
from datetime import datetime, timezone

from fastapi import APIRouter, Depends, HTTPException, Request
from sqlalchemy.ext.asyncio import AsyncSession

from dripline.api.cron_auth import require_cron_secret
from dripline.domain.automations.dispatcher import run_missed_appointment_scan
from dripline.domain.automations.scheduler import run_scheduled_pass
from dripline.domain.nurture.runner import run_nurture_pass
from dripline.infra.db import get_db_session
from dripline.services import AppServices, resolve_services
from dripline.settings import settings
from dripline.shared.budget import PassBudget

router = APIRouter(prefix="/v1/cron", tags=["cron"], dependencies=[Depends(require_cron_secret)])
logger = logging.getLogger(__name__)


def _services(request: Request) -> AppServices:
    services = resolve_services(request.app)
    if services is None:
        raise HTTPException(status_code=503, detail="Services not ready")
    return services


def _now() -> datetime:
    return datetime.now(tz=timezone.utc)


@router.api_route("/automations", methods=["GET", "POST"])
async def cron_scheduled_automations(
    request: Request,
    session: AsyncSession = Depends(get_db_session),
) -> dict:
    services = _services(request)
    budget = PassBudget(settings.pass_time_budget_seconds)
    result = await run_scheduled_pass(session, services.action_runner, now=_now(), budget=budget)
    logger.info("cron_scheduled_automations", extra={"extra": {**result, "ms": budget.elapsed_ms}})
    return {"ok": True, **result, "ms": budget.elapsed_ms}


@router.api_route("/missed-appointments", methods=["GET", "POST"])
async def cron_missed_appointments(
    request: Request,
    session: AsyncSession = Depends(get_db_session),
) -> dict:
    services = _services(request)
    budget = PassBudget(settings.pass_time_budget_seconds)
    result = await run_missed_appointment_scan(session, services.action_runner, now=_now(), budget=budget)
    logger.info("cron_missed_appointments", extra={"extra": {**result, "ms": budget.elapsed_ms}})
    return {"ok": True, **result, "ms": budget.elapsed_ms}


@router.api_route("/nurture", methods=["GET", "POST"])
async def cron_nurture(
    request: Request,
    session: AsyncSession = Depends(get_db_session),
) -> dict:
    services = _services(request)
    budget = PassBudget(settings.pass_time_budget_seconds)
    result = await run_nurture_pass(
        session,
        services.message_sender,
        services.subscription_provider,
        now=_now(),
        budget=budget,
    )
    logger.info(
        "cron_nurture",
        extra={"extra": {key: value for key, value in result.items() if key != "errors"}},
    )
    return {"ok": True, **result, "ms": budget.elapsed_ms}
