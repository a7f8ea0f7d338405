"""``application/problem+json`` error bodies and the handlers that emit them."""

import logging
import uuid
from http import HTTPStatus
from typing import Any

from fastapi import FastAPI, Request
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse
from starlette.exceptions import HTTPException

from dripline.domain.errors import DomainError
from dripline.infra.logging import update_log_context

logger = logging.getLogger(__name__)

PROBLEM_BASE = "https://dripline.dev/problems"
PROBLEM_TYPE_VALIDATION = f"{PROBLEM_BASE}/validation-error"
PROBLEM_TYPE_DOMAIN = f"{PROBLEM_BASE}/domain-error"
PROBLEM_TYPE_UNAUTHORIZED = f"{PROBLEM_BASE}/unauthorized"
PROBLEM_TYPE_NOT_FOUND = f"{PROBLEM_BASE}/not-found"
PROBLEM_TYPE_UNAVAILABLE = f"{PROBLEM_BASE}/unavailable"
PROBLEM_TYPE_SERVER = f"{PROBLEM_BASE}/server-error"

_TYPES_BY_STATUS = {
    401: PROBLEM_TYPE_UNAUTHORIZED,
    404: PROBLEM_TYPE_NOT_FOUND,
    422: PROBLEM_TYPE_VALIDATION,
    503: PROBLEM_TYPE_UNAVAILABLE,
}


def request_id_for(request: Request) -> str:
    request_id = getattr(request.state, "request_id", None) or request.headers.get("X-Request-ID")
    request.state.request_id = request_id or str(uuid.uuid4())
    return request.state.request_id


def problem_type_for(status_code: int) -> str:
    if status_code in _TYPES_BY_STATUS:
        return _TYPES_BY_STATUS[status_code]
    return PROBLEM_TYPE_SERVER if status_code >= 500 else PROBLEM_TYPE_DOMAIN


def problem_details(
    request: Request,
    *,
    status: int,
    detail: str,
    title: str | None = None,
    errors: list[dict[str, Any]] | None = None,
    type_: str | None = None,
    headers: dict[str, str] | None = None,
) -> JSONResponse:
    request_id = request_id_for(request)
    try:
        default_title = HTTPStatus(status).phrase
    except ValueError:
        default_title = "Error"
    response = JSONResponse(
        status_code=status,
        content={
            "type": type_ or problem_type_for(status),
            "title": title or default_title,
            "status": status,
            "detail": detail,
            "instance": request.url.path,
            "request_id": request_id,
            "errors": errors or [],
        },
        headers=headers,
        media_type="application/problem+json",
    )
    response.headers.setdefault("X-Request-ID", request_id)
    return response


async def _on_validation_error(request: Request, exc: RequestValidationError) -> JSONResponse:
    errors = []
    for error in exc.errors():
        location = [str(part) for part in error.get("loc", ()) if part not in {"body", "query", "path"}]
        errors.append({"field": ".".join(location) or "body", "message": error.get("msg", "Invalid value")})
    return problem_details(
        request, status=422, title="Validation Error", detail="Request validation failed", errors=errors
    )


async def _on_domain_error(request: Request, exc: DomainError) -> JSONResponse:
    return problem_details(
        request,
        status=400,
        title=exc.title,
        detail=exc.detail,
        errors=exc.errors or [],
        type_=exc.type or PROBLEM_TYPE_DOMAIN,
    )


async def _on_http_error(request: Request, exc: HTTPException) -> JSONResponse:
    detail = exc.detail if isinstance(exc.detail, str) else "Request failed"
    return problem_details(request, status=exc.status_code, detail=detail, headers=exc.headers)


async def _on_unhandled_error(request: Request, exc: Exception) -> JSONResponse:
    update_log_context(request_id=request_id_for(request), status_code=500, error_type=type(exc).__name__)
    logger.exception("unhandled_exception", extra={"extra": {"path": request.url.path}})
    return problem_details(request, status=500, title="Internal Server Error", detail="Unexpected error")


def register_problem_handlers(app: FastAPI) -> None:
    app.add_exception_handler(RequestValidationError, _on_validation_error)
    app.add_exception_handler(DomainError, _on_domain_error)
    app.add_exception_handler(HTTPException, _on_http_error)
    app.add_exception_handler(Exception, _on_unhandled_error)
