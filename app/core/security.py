import hmac
import logging
from typing import Optional
from uuid import uuid4

from fastapi import Depends, Header, Request

from app.core.config import Settings, get_settings
from app.core.errors import CronAuthError

logger = logging.getLogger("uvicorn.error")

CRON_SECRET_HEADER = "X-Cron-Secret"


def mask_user_id(user_id: Optional[str]) -> str:
    if not user_id:
        return "undefined"
    value = str(user_id)
    if len(value) <= 8:
        return value
    return f"{value[:8]}..."


def secrets_match(provided: str, expected: str) -> bool:
    return hmac.compare_digest(provided.encode("utf-8"), expected.encode("utf-8"))


def verify_cron_secret(
    request: Request,
    x_cron_secret: Optional[str] = Header(default=None, alias=CRON_SECRET_HEADER),
    settings: Settings = Depends(get_settings),
) -> str:
    request_id = str(uuid4())
    request.state.request_id = request_id
    expected = settings.CRON_SECRET_KEY
    if not expected:
        logger.error("cron_auth_config_error request_id=%s detail=CRON_SECRET_KEY not configured", request_id)
        raise CronAuthError(
            status_code=500,
            code="AUTH_CONFIG_ERROR",
            error="Server configuration error",
            request_id=request_id,
        )

    user_agent = request.headers.get("User-Agent", "unknown")
    logger.info(
        "cron_auth_attempt request_id=%s path=%s user_agent=%s has_secret=%s",
        request_id,
        request.url.path,
        user_agent,
        bool(x_cron_secret),
    )
    if not x_cron_secret or not secrets_match(x_cron_secret, expected):
        reason = "missing_secret" if not x_cron_secret else "invalid_secret"
        logger.warning("cron_auth_rejected request_id=%s reason=%s user_agent=%s", request_id, reason, user_agent)
        raise CronAuthError(
            status_code=401,
            code="AUTH_INVALID_CREDENTIALS",
            error="Unauthorized",
            request_id=request_id,
            message="Valid authentication credentials required",
        )
    return request_id
