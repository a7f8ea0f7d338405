import argparse
import asyncio
import logging
from collections.abc import Awaitable, Callable
from datetime import datetime, timezone

from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from dripline.domain.automations.dispatcher import run_missed_appointment_scan
from dripline.domain.automations.scheduler import run_scheduled_pass
from dripline.domain.nurture.runner import run_nurture_pass
from dripline.infra.db import get_session_factory
from dripline.infra.logging import clear_log_context, configure_logging, update_log_context
from dripline.jobs.heartbeat import record_heartbeat, record_job_result
from dripline.services import AppServices, build_app_services
from dripline.settings import settings
from dripline.shared.budget import PassBudget

logger = logging.getLogger(__name__)

JOB_SCHEDULED_AUTOMATIONS = "scheduled-automations"
JOB_MISSED_APPOINTMENTS = "missed-appointments"
JOB_NURTURE_DRIP = "nurture-drip"
DEFAULT_JOBS = [JOB_SCHEDULED_AUTOMATIONS, JOB_MISSED_APPOINTMENTS, JOB_NURTURE_DRIP]

JobRunner = Callable[[AsyncSession, datetime, PassBudget], Awaitable[dict]]


async def _run_job(name: str, session_factory: async_sessionmaker, runner: JobRunner) -> dict:
    update_log_context(job=name)
    try:
        budget = PassBudget(settings.pass_time_budget_seconds)
        async with session_factory() as session:
            result = await runner(session, datetime.now(tz=timezone.utc), budget)
        summary = {key: value for key, value in result.items() if isinstance(value, int)}
        logger.info("job_complete", extra={"extra": {"job": name, "ms": budget.elapsed_ms, **summary}})
        await record_job_result(session_factory, name, success=True)
        return result
    finally:
        clear_log_context()


def _job_runner(name: str, services: AppServices) -> JobRunner:
    if name == JOB_SCHEDULED_AUTOMATIONS:
        return lambda session, now, budget: run_scheduled_pass(
            session, services.action_runner, now=now, budget=budget
        )
    if name == JOB_MISSED_APPOINTMENTS:
        return lambda session, now, budget: run_missed_appointment_scan(
            session, services.action_runner, now=now, budget=budget
        )
    if name == JOB_NURTURE_DRIP:
        return lambda session, now, budget: run_nurture_pass(
            session,
            services.message_sender,
            services.subscription_provider,
            now=now,
            budget=budget,
        )
    raise ValueError(f"unknown_job:{name}")


async def run_jobs_once(
    session_factory: async_sessionmaker, services: AppServices, job_names: list[str]
) -> dict[str, bool]:
    """Run each job once; a failing job is recorded and does not stop the others."""
    outcomes: dict[str, bool] = {}
    for name in job_names:
        runner = _job_runner(name, services)
        try:
            await _run_job(name, session_factory, runner)
            outcomes[name] = True
        except Exception as exc:  # noqa: BLE001
            logger.warning("job_failed", extra={"extra": {"job": name, "reason": type(exc).__name__}})
            await record_job_result(session_factory, name, success=False, error_reason=type(exc).__name__)
            outcomes[name] = False
    await record_heartbeat(session_factory)
    return outcomes


async def main(argv: list[str] | None = None) -> None:
    parser = argparse.ArgumentParser(description="Run automation and nurture passes")
    parser.add_argument(
        "--job", action="append", dest="jobs", choices=DEFAULT_JOBS, help="Job name to run"
    )
    parser.add_argument("--interval", type=int, default=60, help="Seconds between loops when not using --once")
    parser.add_argument("--once", action="store_true", help="Run jobs once and exit")
    args = parser.parse_args(argv)

    configure_logging(settings.log_level)
    services = build_app_services(settings)
    session_factory = get_session_factory()
    job_names = args.jobs or DEFAULT_JOBS

    while True:
        await run_jobs_once(session_factory, services, job_names)
        if args.once:
            break
        await asyncio.sleep(max(args.interval, 1))


def cli() -> None:
    asyncio.run(main())


if __name__ == "__main__":
    cli()
