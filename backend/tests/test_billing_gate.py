import asyncio
import uuid

import pytest

from dripline.domain.nurture.billing import (
    REASON_INACTIVE,
    REASON_MISSING_SUBSCRIPTION,
    REASON_UNAVAILABLE,
    REASON_UNVERIFIED,
    BillingGate,
    GateDecision,
)
from dripline.shared.circuit_breaker import CircuitBreakerOpenError, CircuitState

OWNER_ID = uuid.uuid4()
CAMPAIGN_ID = uuid.uuid4()


@pytest.mark.anyio
@pytest.mark.parametrize("status", ["active", "trialing", "past_due", " Active "])
async def test_allowed_statuses(subscription_provider, status):
    subscription_provider.statuses["sub_1"] = status
    gate = BillingGate(subscription_provider, production=True)
    assert await gate.check(OWNER_ID, CAMPAIGN_ID, "sub_1") == GateDecision(ok=True)


@pytest.mark.anyio
@pytest.mark.parametrize("status", ["canceled", "unpaid", "incomplete", ""])
async def test_other_statuses_are_inactive(subscription_provider, status):
    subscription_provider.statuses["sub_1"] = status
    gate = BillingGate(subscription_provider, production=True)
    decision = await gate.check(OWNER_ID, CAMPAIGN_ID, "sub_1")
    assert not decision.ok
    assert decision.error == REASON_INACTIVE


@pytest.mark.anyio
async def test_missing_subscription_id(subscription_provider):
    gate = BillingGate(subscription_provider, production=False)
    decision = await gate.check(OWNER_ID, CAMPAIGN_ID, "  ")
    assert decision.error == REASON_MISSING_SUBSCRIPTION
    assert subscription_provider.calls == []


@pytest.mark.anyio
async def test_unconfigured_provider(subscription_provider):
    subscription_provider.configured = False
    assert (await BillingGate(subscription_provider, production=False).check(OWNER_ID, CAMPAIGN_ID, None)).ok
    denied = await BillingGate(subscription_provider, production=True).check(OWNER_ID, CAMPAIGN_ID, "sub_1")
    assert denied.error == REASON_UNAVAILABLE


@pytest.mark.anyio
@pytest.mark.parametrize("error", [RuntimeError("stripe down"), CircuitBreakerOpenError("stripe", CircuitState.OPEN)])
async def test_lookup_failure_is_unverified(subscription_provider, error):
    subscription_provider.error = error
    gate = BillingGate(subscription_provider, production=True)
    decision = await gate.check(OWNER_ID, CAMPAIGN_ID, "sub_1")
    assert decision.error == REASON_UNVERIFIED


@pytest.mark.anyio
async def test_decisions_are_cached_per_owner_and_campaign(subscription_provider):
    subscription_provider.statuses["sub_1"] = "active"
    gate = BillingGate(subscription_provider, production=True)
    other_campaign = uuid.uuid4()

    await gate.check(OWNER_ID, CAMPAIGN_ID, "sub_1")
    await gate.check(OWNER_ID, CAMPAIGN_ID, "sub_1")
    await gate.check(OWNER_ID, other_campaign, "sub_1")

    assert subscription_provider.calls == ["sub_1", "sub_1"]
    assert set(gate.cache) == {f"{OWNER_ID}:{CAMPAIGN_ID}", f"{OWNER_ID}:{other_campaign}"}


def test_default_error_text():
    assert GateDecision(ok=False).error == "Billing required."


class SlowSubscriptionProvider:
    configured = True

    async def get_status(self, subscription_id: str) -> str:
        await asyncio.sleep(5)
        return "active"


@pytest.mark.anyio
async def test_slow_lookup_times_out_as_unverified():
    gate = BillingGate(SlowSubscriptionProvider(), production=True, timeout=0.01)
    decision = await gate.check(OWNER_ID, CAMPAIGN_ID, "sub_1")
    assert decision.error == "Unable to verify billing."
