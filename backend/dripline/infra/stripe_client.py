from __future__ import annotations

from typing import Any, Callable

import anyio

from dripline.domain.errors import BillingUnavailableError
from dripline.settings import settings
from dripline.shared.circuit_breaker import CircuitBreaker

stripe_circuit = CircuitBreaker(
    name="stripe",
    failure_threshold=settings.stripe_circuit_failure_threshold,
    recovery_time=settings.stripe_circuit_recovery_seconds,
    window_seconds=settings.stripe_circuit_window_seconds,
    half_open_max_calls=settings.stripe_circuit_half_open_max_calls,
    timeout_seconds=settings.stripe_circuit_timeout_seconds,
)


class StripeClient:
    """Read-only Stripe access used by the billing gate."""

    def __init__(
        self,
        *,
        secret_key: str | None,
        stripe_sdk: Any | None = None,
        circuit: CircuitBreaker | None = None,
    ) -> None:
        """Passing ``None`` for ``secret_key`` falls back to global settings.

        Lookups fail fast with ``BillingUnavailableError`` when no key is configured.
        """
        if stripe_sdk is None:
            import stripe as stripe_sdk  # type: ignore

        self.stripe = stripe_sdk
        self.secret_key = secret_key or settings.stripe_secret_key
        self.circuit = circuit or stripe_circuit

    @property
    def configured(self) -> bool:
        return bool(self.secret_key and self.secret_key.strip())

    async def _call(self, fn: Callable[..., Any], /, *args, **kwargs) -> Any:
        def _sync_call() -> Any:
            return fn(*args, **kwargs)

        return await self.circuit.call(lambda: anyio.to_thread.run_sync(_sync_call))

    async def retrieve_subscription(self, subscription_id: str) -> Any:
        if not self.configured:
            raise BillingUnavailableError("Stripe secret key not configured")
        return await self._call(
            self.stripe.Subscription.retrieve, subscription_id, api_key=self.secret_key
        )

    async def get_status(self, subscription_id: str) -> str:
        subscription = await self.retrieve_subscription(subscription_id)
        if isinstance(subscription, dict):
            status = subscription.get("status")
        else:
            status = getattr(subscription, "status", None)
        return str(status or "")


def resolve_subscription_provider(app_settings) -> StripeClient:
    return StripeClient(secret_key=app_settings.stripe_secret_key)
