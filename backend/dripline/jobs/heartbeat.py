"""Heartbeat rows for the jobs runner and for each pass it drives.

``/readyz`` reads the ``jobs-runner`` row; the per-job rows carry the failure
streak and the last error type for operators.
"""

import socket
from datetime import datetime, timezone

from sqlalchemy.ext.asyncio import async_sessionmaker

from dripline.domain.ops.db_models import JobHeartbeat
from dripline.infra.metrics import metrics

RUNNER_JOB_NAME = "jobs-runner"


async def _upsert(
    session_factory: async_sessionmaker,
    name: str,
    *,
    success: bool,
    error_reason: str | None = None,
    runner_id: str | None = None,
) -> datetime:
    now = datetime.now(tz=timezone.utc)
    async with session_factory() as session:
        record = await session.get(JobHeartbeat, name)
        if record is None:
            record = JobHeartbeat(name=name, consecutive_failures=0)
            session.add(record)
        record.last_heartbeat = now
        record.updated_at = now
        if runner_id is not None:
            record.runner_id = runner_id
        if success:
            record.last_success_at = now
            record.consecutive_failures = 0
            record.last_error = None
            record.last_error_at = None
        else:
            record.consecutive_failures = (record.consecutive_failures or 0) + 1
            record.last_error = (error_reason or "unknown")[:128]
            record.last_error_at = now
        await session.commit()
    return now


async def record_heartbeat(
    session_factory: async_sessionmaker, name: str = RUNNER_JOB_NAME, *, runner_id: str | None = None
) -> None:
    runner_id = (runner_id or "").strip() or socket.gethostname()
    now = await _upsert(session_factory, name, success=True, runner_id=runner_id)
    metrics.record_job_heartbeat(name, now.timestamp())


async def record_job_result(
    session_factory: async_sessionmaker, job: str, *, success: bool, error_reason: str | None = None
) -> None:
    now = await _upsert(session_factory, job, success=success, error_reason=error_reason)
    if success:
        metrics.record_job_success(job, now.timestamp())
    else:
        metrics.record_job_error(job, error_reason or "unknown")
