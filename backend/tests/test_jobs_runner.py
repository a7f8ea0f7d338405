import pytest
import sqlalchemy as sa

from dripline.domain.automations.actions import AutomationActionRunner
from dripline.domain.ops.db_models import JobHeartbeat
from dripline.infra.metrics import Metrics
from dripline.jobs import run as jobs_run
from dripline.jobs.heartbeat import RUNNER_JOB_NAME, record_job_result
from dripline.services import AppServices


@pytest.fixture()
def services(message_sender, subscription_provider):
    return AppServices(
        message_sender=message_sender,
        subscription_provider=subscription_provider,
        action_runner=AutomationActionRunner(message_sender),
        metrics=Metrics(enabled=False),
    )


async def _heartbeats(async_session_maker) -> dict[str, JobHeartbeat]:
    async with async_session_maker() as session:
        records = (await session.scalars(sa.select(JobHeartbeat))).all()
        return {record.name: record for record in records}


@pytest.mark.anyio
async def test_run_jobs_once_records_heartbeats(async_session_maker, services):
    outcomes = await jobs_run.run_jobs_once(async_session_maker, services, jobs_run.DEFAULT_JOBS)

    assert outcomes == {name: True for name in jobs_run.DEFAULT_JOBS}
    heartbeats = await _heartbeats(async_session_maker)
    assert set(heartbeats) == {*jobs_run.DEFAULT_JOBS, RUNNER_JOB_NAME}
    assert heartbeats["nurture-drip"].consecutive_failures == 0
    assert heartbeats[RUNNER_JOB_NAME].runner_id


@pytest.mark.anyio
async def test_failing_job_is_recorded_and_others_still_run(async_session_maker, services, monkeypatch):
    async def broken_pass(*args, **kwargs):
        raise RuntimeError("database went away")

    monkeypatch.setattr(jobs_run, "run_nurture_pass", broken_pass)

    outcomes = await jobs_run.run_jobs_once(
        async_session_maker, services, ["nurture-drip", "scheduled-automations"]
    )

    assert outcomes == {"nurture-drip": False, "scheduled-automations": True}
    heartbeats = await _heartbeats(async_session_maker)
    assert heartbeats["nurture-drip"].consecutive_failures == 1
    assert heartbeats["nurture-drip"].last_error == "RuntimeError"
    assert heartbeats[RUNNER_JOB_NAME].consecutive_failures == 0


@pytest.mark.anyio
async def test_consecutive_failures_accumulate_until_success(async_session_maker):
    await record_job_result(async_session_maker, "nurture-drip", success=False, error_reason="TimeoutError")
    await record_job_result(async_session_maker, "nurture-drip", success=False, error_reason="RuntimeError")
    assert (await _heartbeats(async_session_maker))["nurture-drip"].consecutive_failures == 2

    await record_job_result(async_session_maker, "nurture-drip", success=True)
    record = (await _heartbeats(async_session_maker))["nurture-drip"]
    assert record.consecutive_failures == 0
    assert record.last_error is None


def test_unknown_job_name_is_rejected(services):
    with pytest.raises(ValueError):
        jobs_run._job_runner("bogus", services)


@pytest.mark.anyio
async def test_main_rejects_unknown_job():
    with pytest.raises(SystemExit):
        await jobs_run.main(["--job", "bogus"])


@pytest.mark.anyio
async def test_main_once_runs_selected_job(async_session_maker, monkeypatch):
    monkeypatch.setattr(jobs_run, "get_session_factory", lambda: async_session_maker)

    await jobs_run.main(["--once", "--job", "missed-appointments"])

    heartbeats = await _heartbeats(async_session_maker)
    assert set(heartbeats) == {"missed-appointments", RUNNER_JOB_NAME}
