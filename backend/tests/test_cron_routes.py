import asyncio
import uuid
from datetime import datetime, timedelta, timezone

import pytest

from dripline.domain.contacts.db_models import Contact
from dripline.domain.nurture import service as nurture_service
from dripline.domain.nurture.statuses import CampaignStatus, StepKind
from dripline.domain.ops.db_models import JobHeartbeat
from dripline.domain.tenants import service as tenants_service
from dripline.infra.metrics import Metrics
from dripline.main import app
from dripline.services import AppServices
from dripline.settings import settings

CRON_PATHS = ["/v1/cron/automations", "/v1/cron/missed-appointments", "/v1/cron/nurture"]


class RecordingActionRunner:
    def __init__(self) -> None:
        self.events: list[tuple] = []

    async def run_trigger_node(self, session, owner_id, automation_id, trigger_node_id, trigger_kind, *, event=None):
        return 0

    async def run_for_event(self, session, owner_id, trigger_kind, *, contact=None, message=None, event=None):
        self.events.append((owner_id, trigger_kind, message.body if message else None))
        return 2


@pytest.fixture()
def services(message_sender, subscription_provider):
    runner = RecordingActionRunner()
    app.state.services = AppServices(
        message_sender=message_sender,
        subscription_provider=subscription_provider,
        action_runner=runner,
        metrics=Metrics(enabled=False),
    )
    return app.state.services


def _create_owner(async_session_maker) -> uuid.UUID:
    async def create() -> uuid.UUID:
        async with async_session_maker() as session:
            owner = await tenants_service.create_owner(session, business_name="Acme Cleaning")
            await session.commit()
            return owner.owner_id

    return asyncio.run(create())


def _seed_drip(async_session_maker) -> None:
    async def seed() -> None:
        async with async_session_maker() as session:
            owner = await tenants_service.create_owner(session, business_name="Acme Cleaning")
            campaign = await nurture_service.create_campaign(
                session,
                owner.owner_id,
                name="Welcome",
                status=CampaignStatus.ACTIVE,
                stripe_subscription_id="sub_1",
            )
            await nurture_service.add_step(session, campaign, kind=StepKind.SMS, body="Hi {contact.firstName}")
            contact = Contact(owner_id=owner.owner_id, name="Jane Doe", phone="+15550001111", tags=[])
            session.add(contact)
            await session.flush()
            await nurture_service.enroll_contacts(
                session,
                owner.owner_id,
                campaign.campaign_id,
                now=datetime.now(tz=timezone.utc) - timedelta(minutes=1),
                contact_ids=[contact.contact_id],
            )
            await session.commit()

    asyncio.run(seed())


@pytest.mark.parametrize("path", CRON_PATHS)
def test_cron_requires_secret(client, services, path):
    settings.cron_secret = "s3cret"
    assert client.post(path).status_code == 401
    assert client.post(path, headers={"X-Cron-Secret": "wrong"}).status_code == 401


@pytest.mark.parametrize(
    "kwargs",
    [
        {"headers": {"X-Cron-Secret": "s3cret"}},
        {"headers": {"Authorization": "Bearer s3cret"}},
        {"params": {"secret": "s3cret"}},
    ],
)
def test_cron_secret_sources(client, services, kwargs):
    settings.cron_secret = "s3cret"
    response = client.get("/v1/cron/automations", **kwargs)
    assert response.status_code == 200
    assert response.json()["ok"] is True


def test_cron_closed_in_prod_without_secret(client, services):
    settings.app_env = "prod"
    response = client.post("/v1/cron/nurture")
    assert response.status_code == 503
    assert response.json()["detail"] == "Cron secret not configured"


def test_cron_open_in_dev_without_secret(client, services):
    response = client.post("/v1/cron/missed-appointments")
    assert response.status_code == 200
    body = response.json()
    assert body["ok"] is True
    assert body["missed_fired"] == 0
    assert "ms" in body


def test_cron_nurture_sends_due_step(client, services, async_session_maker, message_sender, subscription_provider):
    subscription_provider.statuses["sub_1"] = "active"
    _seed_drip(async_session_maker)

    response = client.post("/v1/cron/nurture")

    assert response.status_code == 200
    body = response.json()
    assert body["processed"] == 1
    assert body["sent"] == 1
    assert body["completed"] == 1
    assert body["errors"] == []
    assert [message.body for message in message_sender.sent] == ["Hi Jane\n\nReply STOP to opt out."]


def test_inbound_sms_unknown_owner(client, services):
    response = client.post(
        "/v1/events/inbound-sms", json={"owner_id": str(uuid.uuid4()), "from": "+15550001111", "body": "hi"}
    )
    assert response.status_code == 404


def test_inbound_sms_runs_automations(client, services, async_session_maker):
    owner_id = _create_owner(async_session_maker)
    response = client.post(
        "/v1/events/inbound-sms",
        json={"owner_id": str(owner_id), "from": "+15550001111", "to": "+15559990000", "body": "STOP"},
    )
    assert response.status_code == 200
    assert response.json() == {"ok": True, "automations_run": 2}
    assert services.action_runner.events == [(owner_id, "inbound_sms", "STOP")]


def test_inbound_sms_validation_problem(client, services):
    response = client.post("/v1/events/inbound-sms", json={"owner_id": "not-a-uuid", "from": ""})
    assert response.status_code == 422
    assert response.headers["content-type"].startswith("application/problem+json")


def test_healthz_and_readyz(client, services):
    assert client.get("/healthz").json() == {"status": "ok"}
    response = client.get("/readyz")
    assert response.status_code == 200
    checks = {check["name"]: check for check in response.json()["checks"]}
    assert checks["db"]["ok"] is True
    assert checks["jobs"]["detail"]["message"] == "job runner not reporting"


def test_readyz_fails_on_stale_runner(client, services, async_session_maker):
    async def seed() -> None:
        async with async_session_maker() as session:
            session.add(
                JobHeartbeat(
                    name="jobs-runner",
                    last_heartbeat=datetime.now(tz=timezone.utc) - timedelta(hours=2),
                    consecutive_failures=0,
                )
            )
            await session.commit()

    asyncio.run(seed())
    response = client.get("/readyz")
    assert response.status_code == 503
    assert response.json()["ok"] is False


def test_metrics_disabled_returns_404(client, services):
    assert client.get("/metrics").status_code == 404
