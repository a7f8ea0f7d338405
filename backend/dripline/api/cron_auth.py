import logging
import secrets

from fastapi import HTTPException, Request, status

from dripline.settings import settings

logger = logging.getLogger(__name__)

CRON_SECRET_HEADER = "X-Cron-Secret"


def _provided_secret(request: Request) -> str | None:
    header_value = request.headers.get(CRON_SECRET_HEADER)
    if header_value:
        return header_value.strip()
    auth_header = request.headers.get("Authorization")
    if auth_header and auth_header.lower().startswith("bearer "):
        return auth_header.split(" ", 1)[1].strip()
    query_value = request.query_params.get("secret")
    return query_value.strip() if query_value else None


async def require_cron_secret(request: Request) -> None:
    """Reject cron and event calls that do not carry the shared secret.

    Without a configured secret, dev environments are open and prod is closed.
    """
    expected = (settings.cron_secret or "").strip()
    if not expected:
        if settings.app_env == "prod":
            logger.warning("cron_secret_missing", extra={"extra": {"path": request.url.path}})
            raise HTTPException(status_code=status.HTTP_503_SERVICE_UNAVAILABLE, detail="Cron secret not configured")
        return

    provided = _provided_secret(request)
    if not provided or not secrets.compare_digest(provided.encode(), expected.encode()):
        raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="Unauthorized")
