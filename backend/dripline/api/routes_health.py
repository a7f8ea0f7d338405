import asyncio
import logging
import secrets
import time
from datetime import datetime, timezone
from typing import Any

from fastapi import APIRouter, HTTPException, Request, Response
from fastapi.responses import JSONResponse
from sqlalchemy import select, text

from dripline.domain.ops.db_models import JobHeartbeat
from dripline.jobs.heartbeat import RUNNER_JOB_NAME

router = APIRouter()
logger = logging.getLogger(__name__)

_DB_CHECK_TIMEOUT_SECONDS = 2.0


@router.get("/healthz")
async def healthz() -> dict[str, str]:
    return {"status": "ok"}


async def _db_check(request: Request) -> tuple[bool, dict[str, Any]]:
    session_factory = getattr(request.app.state, "db_session_factory", None)
    if session_factory is None:
        return False, {"message": "database session factory unavailable"}

    async def _ping_db():
        async with session_factory() as session:
            await session.execute(text("SELECT 1"))

    try:
        await asyncio.wait_for(_ping_db(), timeout=_DB_CHECK_TIMEOUT_SECONDS)
    except asyncio.TimeoutError:
        return False, {"message": "database check timed out", "timeout_seconds": _DB_CHECK_TIMEOUT_SECONDS}
    except Exception as exc:  # noqa: BLE001
        logger.debug("database_check_failed", exc_info=exc)
        return False, {"message": "database check failed", "error": exc.__class__.__name__}
    return True, {"message": "database reachable"}


def _age_seconds(value: datetime | None, now: datetime) -> float | None:
    if value is None:
        return None
    if value.tzinfo is None:
        value = value.replace(tzinfo=timezone.utc)
    return (now - value).total_seconds()


async def _jobs_check(request: Request) -> tuple[bool, dict[str, Any]]:
    """Report every job's heartbeat; only the runner heartbeat gates readiness."""
    session_factory = getattr(request.app.state, "db_session_factory", None)
    if session_factory is None:
        return False, {"message": "database session factory unavailable"}
    app_settings = getattr(request.app.state, "app_settings", None)
    ttl_seconds = int(getattr(app_settings, "job_heartbeat_ttl_seconds", 300)) if app_settings else 300

    async def _fetch():
        async with session_factory() as session:
            return list((await session.scalars(select(JobHeartbeat).order_by(JobHeartbeat.name))).all())

    try:
        records = await asyncio.wait_for(_fetch(), timeout=_DB_CHECK_TIMEOUT_SECONDS)
    except asyncio.TimeoutError:
        return False, {"message": "job heartbeat check timed out"}
    except Exception as exc:  # noqa: BLE001
        logger.debug("jobs_check_failed", exc_info=exc)
        return False, {"message": "job heartbeat check failed", "error": type(exc).__name__}

    now = datetime.now(tz=timezone.utc)
    jobs = {
        record.name: {
            "age_seconds": _age_seconds(record.last_heartbeat, now),
            "consecutive_failures": record.consecutive_failures,
            "last_error": record.last_error,
        }
        for record in records
    }
    runner = jobs.get(RUNNER_JOB_NAME)
    if runner is None:
        # A deployment driven only by HTTP cron has no runner heartbeat.
        return True, {"message": "job runner not reporting", "jobs": jobs}
    ok = runner["age_seconds"] is not None and runner["age_seconds"] <= ttl_seconds
    return ok, {"threshold_seconds": ttl_seconds, "jobs": jobs}


async def _run_check(name: str, check_fn) -> dict[str, Any]:  # noqa: ANN001
    start = time.perf_counter()
    try:
        ok, detail = await check_fn()
    except Exception as exc:  # noqa: BLE001
        logger.exception("readiness_check_failed", extra={"extra": {"check": name}})
        ok, detail = False, {"message": "unexpected error", "error": type(exc).__name__}
    return {"name": name, "ok": bool(ok), "ms": round((time.perf_counter() - start) * 1000, 2), "detail": detail}


@router.get("/readyz")
async def readyz(request: Request) -> JSONResponse:
    checks = [
        await _run_check("db", lambda: _db_check(request)),
        await _run_check("jobs", lambda: _jobs_check(request)),
    ]
    overall_ok = all(check["ok"] for check in checks)
    return JSONResponse(status_code=200 if overall_ok else 503, content={"ok": overall_ok, "checks": checks})


@router.get("/metrics")
async def metrics_endpoint(request: Request) -> Response:
    metrics_client = getattr(request.app.state, "metrics", None)
    if metrics_client is None or not getattr(metrics_client, "enabled", False):
        raise HTTPException(status_code=404, detail="Metrics disabled")

    app_settings = getattr(request.app.state, "app_settings", None)
    token = getattr(app_settings, "metrics_token", None) if app_settings else None
    if app_settings is not None and app_settings.app_env == "prod":
        if not token:
            raise HTTPException(status_code=500, detail="Metrics token misconfigured")
        auth_header = request.headers.get("Authorization") or ""
        provided = auth_header.split(" ", 1)[1] if auth_header.lower().startswith("bearer ") else None
        provided = provided or request.query_params.get("token")
        if not provided or not secrets.compare_digest(provided, token):
            raise HTTPException(status_code=401, detail="Unauthorized")

    payload, content_type = metrics_client.render()
    return Response(content=payload, media_type=content_type)
