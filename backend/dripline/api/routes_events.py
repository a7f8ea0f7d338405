import uuid

from fastapi import APIRouter, Depends, HTTPException, Request
from pydantic import BaseModel, ConfigDict, Field
from sqlalchemy.ext.asyncio import AsyncSession

from dripline.api.cron_auth import require_cron_secret
from dripline.domain.automations.dispatcher import dispatch_inbound_sms
from dripline.domain.tenants import service as tenants_service
from dripline.infra.db import get_db_session
from dripline.services import resolve_services

router = APIRouter(prefix="/v1/events", tags=["events"], dependencies=[Depends(require_cron_secret)])


class InboundSmsEvent(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    owner_id: uuid.UUID
    from_number: str = Field(alias="from", min_length=1, max_length=64)
    to_number: str = Field("", alias="to", max_length=64)
    body: str = Field("", max_length=4000)


class InboundSmsResponse(BaseModel):
    ok: bool
    automations_run: int


@router.post("/inbound-sms", response_model=InboundSmsResponse)
async def inbound_sms(
    payload: InboundSmsEvent,
    request: Request,
    session: AsyncSession = Depends(get_db_session),
) -> InboundSmsResponse:
    services = resolve_services(request.app)
    if services is None:
        raise HTTPException(status_code=503, detail="Services not ready")
    if await tenants_service.get_owner(session, payload.owner_id) is None:
        raise HTTPException(status_code=404, detail="Owner not found")
    ran = await dispatch_inbound_sms(
        session,
        services.action_runner,
        payload.owner_id,
        from_number=payload.from_number.strip(),
        to_number=payload.to_number.strip(),
        body=payload.body,
    )
    return InboundSmsResponse(ok=True, automations_run=ran)
