"""Campaign-level billing gate for the drip sequencer.

One ``BillingGate`` lives for exactly one pass; its cache is keyed by
``"{owner_id}:{campaign_id}"`` so each campaign costs at most one provider call
per pass.
"""

from __future__ import annotations

import asyncio
import logging
import uuid
from dataclasses import dataclass
from typing import Protocol

from dripline.domain.nurture.statuses import BILLING_OK_STATUSES
from dripline.infra.metrics import metrics

logger = logging.getLogger(__name__)

REASON_UNAVAILABLE = "Billing is unavailable."
REASON_MISSING_SUBSCRIPTION = "Missing campaign subscription."
REASON_INACTIVE = "Campaign subscription inactive."
REASON_UNVERIFIED = "Unable to verify billing."
REASON_DEFAULT = "Billing required."


class SubscriptionStatusProvider(Protocol):
    @property
    def configured(self) -> bool: ...

    async def get_status(self, subscription_id: str) -> str: ...


@dataclass(frozen=True)
class GateDecision:
    ok: bool
    reason: str | None = None

    @property
    def error(self) -> str:
        return self.reason or REASON_DEFAULT


class BillingGate:
    def __init__(
        self,
        provider: SubscriptionStatusProvider,
        *,
        production: bool,
        timeout: float | None = None,
    ) -> None:
        self.provider = provider
        self.production = production
        self.timeout = timeout
        self.cache: dict[str, GateDecision] = {}

    async def check(
        self, owner_id: uuid.UUID, campaign_id: uuid.UUID, subscription_id: str | None
    ) -> GateDecision:
        key = f"{owner_id}:{campaign_id}"
        cached = self.cache.get(key)
        if cached is not None:
            return cached
        decision = await self._evaluate(subscription_id)
        self.cache[key] = decision
        metrics.record_billing_gate("allowed" if decision.ok else "denied")
        if not decision.ok:
            logger.info(
                "billing_gate_denied",
                extra={
                    "extra": {
                        "owner_id": str(owner_id),
                        "campaign_id": str(campaign_id),
                        "reason": decision.reason,
                    }
                },
            )
        return decision

    async def _evaluate(self, subscription_id: str | None) -> GateDecision:
        if not self.provider.configured:
            # Local development runs drips without a billing account.
            if not self.production:
                return GateDecision(ok=True)
            return GateDecision(ok=False, reason=REASON_UNAVAILABLE)

        subscription_id = (subscription_id or "").strip()
        if not subscription_id:
            return GateDecision(ok=False, reason=REASON_MISSING_SUBSCRIPTION)

        try:
            status = await asyncio.wait_for(self.provider.get_status(subscription_id), timeout=self.timeout)
        except Exception as exc:  # noqa: BLE001
            logger.warning("billing_gate_lookup_failed", extra={"extra": {"reason": type(exc).__name__}})
            return GateDecision(ok=False, reason=REASON_UNVERIFIED)

        if (status or "").strip().lower() in BILLING_OK_STATUSES:
            return GateDecision(ok=True)
        return GateDecision(ok=False, reason=REASON_INACTIVE)
