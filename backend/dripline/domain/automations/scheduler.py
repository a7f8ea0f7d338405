from __future__ import annotations

import asyncio
import logging
from datetime import datetime

from sqlalchemy.ext.asyncio import AsyncSession

from dripline.domain.automations import service as automations_service
from dripline.domain.automations.actions import AutomationActionRunner
from dripline.domain.automations.graph import ScheduledTrigger, scheduled_triggers
from dripline.domain.automations.schedule import format_timestamp, is_due, parse_timestamp
from dripline.domain.automations.statuses import TRIGGER_SCHEDULED_TIME
from dripline.infra.metrics import metrics
from dripline.settings import settings
from dripline.shared.budget import PassBudget

logger = logging.getLogger(__name__)

OWNERS_LIMIT_MAX = 10_000
PER_OWNER_MAX_FIRES_CAP = 100


def _clamp(value: int | None, default: int, high: int) -> int:
    return max(1, min(high, int(value or default)))


def due_triggers(
    document: automations_service.SetupDocument, now: datetime, max_fires: int
) -> list[ScheduledTrigger]:
    state = document.schedule_state
    due: list[ScheduledTrigger] = []
    for trigger in scheduled_triggers(document.automations):
        if is_due(trigger.schedule, parse_timestamp(state.get(trigger.key)), now):
            due.append(trigger)
            if len(due) >= max_fires:
                break
    return due


async def run_scheduled_pass(
    session: AsyncSession,
    action_runner: AutomationActionRunner,
    *,
    now: datetime,
    owners_limit: int | None = None,
    per_owner_max_fires: int | None = None,
    budget: PassBudget | None = None,
    item_timeout: float | None = None,
) -> dict[str, int]:
    """Fire every due ``scheduled_time`` trigger across tenants.

    Due triggers are stamped and claimed with one compare-and-set write per
    tenant before any action chain runs, so an overlapping pass cannot fire
    them again. Action failures do not un-fire a trigger; the next occurrence
    supersedes it.
    """
    owners_limit = _clamp(owners_limit, settings.automations_owners_limit, OWNERS_LIMIT_MAX)
    max_fires = _clamp(per_owner_max_fires, settings.automations_per_owner_max_fires, PER_OWNER_MAX_FIRES_CAP)
    timeout = item_timeout if item_timeout is not None else settings.collaborator_timeout_seconds
    budget = budget or PassBudget(None)

    owners_checked = 0
    triggers_fired = 0
    claims_lost = 0

    documents = await automations_service.list_setups(session, limit=owners_limit)
    for document in documents:
        if budget.exhausted():
            logger.info(
                "scheduled_automations_budget_exhausted",
                extra={"extra": {"owners_checked": owners_checked, "elapsed_ms": budget.elapsed_ms}},
            )
            break
        owners_checked += 1

        try:
            due = due_triggers(document, now, max_fires)
        except Exception as exc:  # noqa: BLE001
            logger.warning(
                "scheduled_automations_evaluation_failed",
                extra={"extra": {"owner_id": str(document.owner_id), "reason": type(exc).__name__}},
            )
            continue
        if not due:
            continue

        stamped = format_timestamp(now)
        next_state = {**document.schedule_state, **{trigger.key: stamped for trigger in due}}
        if not await automations_service.save_setup(
            session, document, {**document.data, "scheduleState": next_state}
        ):
            await session.rollback()
            claims_lost += 1
            continue
        await session.commit()

        for trigger in due:
            try:
                await asyncio.wait_for(
                    action_runner.run_trigger_node(
                        session,
                        document.owner_id,
                        trigger.automation_id,
                        trigger.node_id,
                        TRIGGER_SCHEDULED_TIME,
                        event={"triggerNodeId": trigger.node_id},
                    ),
                    timeout=timeout,
                )
                await session.commit()
            except Exception as exc:  # noqa: BLE001
                await session.rollback()
                logger.warning(
                    "automation_trigger_failed",
                    extra={
                        "extra": {
                            "owner_id": str(document.owner_id),
                            "automation_id": trigger.automation_id,
                            "node_id": trigger.node_id,
                            "reason": type(exc).__name__,
                        }
                    },
                )
            triggers_fired += 1
            logger.info(
                "automation_trigger_fired",
                extra={
                    "extra": {
                        "owner_id": str(document.owner_id),
                        "automation_id": trigger.automation_id,
                        "node_id": trigger.node_id,
                    }
                },
            )

    metrics.record_automation_trigger("fired", triggers_fired)
    metrics.record_automation_trigger("claim_lost", claims_lost)
    return {"owners_checked": owners_checked, "triggers_fired": triggers_fired}
