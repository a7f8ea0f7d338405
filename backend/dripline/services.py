from __future__ import annotations

from dataclasses import dataclass
from typing import Any

from dripline.domain.automations.actions import AutomationActionRunner
from dripline.infra.messaging import MessageSender, resolve_message_sender
from dripline.infra.metrics import Metrics, configure_metrics
from dripline.infra.stripe_client import StripeClient, resolve_subscription_provider


@dataclass
class AppServices:
    """Typed container for runtime services stored on `app.state.services`."""

    message_sender: MessageSender
    subscription_provider: StripeClient
    action_runner: AutomationActionRunner
    metrics: Metrics


def build_app_services(app_settings, *, metrics: Metrics | None = None) -> AppServices:
    metrics_client = metrics or configure_metrics(app_settings.metrics_enabled)
    message_sender = resolve_message_sender(app_settings)
    return AppServices(
        message_sender=message_sender,
        subscription_provider=resolve_subscription_provider(app_settings),
        action_runner=AutomationActionRunner(message_sender),
        metrics=metrics_client,
    )


def resolve_services(container_like: Any) -> AppServices | None:
    if isinstance(container_like, AppServices):
        return container_like
    if container_like is None:
        return None
    state = getattr(container_like, "state", container_like)
    return getattr(state, "services", None)
