import logging

from fastapi import FastAPI, Request
from fastapi.responses import JSONResponse

from app.api.cron import router as cron_router
from app.core.config import get_settings
from app.core.errors import ConfigurationError, CronAuthError, JobFailedError, RateLimitExceeded
from app.db.session import create_tables

logger = logging.getLogger("uvicorn.error")

app = FastAPI(title="Proactive Coach Jobs")


@app.on_event("startup")
def on_startup() -> None:
    create_tables()
    settings = get_settings()
    # Requests still fail per endpoint; this surfaces the gap once at boot.
    for name in ("CRON_SECRET_KEY", "OPENAI_API_KEY", "REDIS_URL"):
        if not getattr(settings, name):
            logger.warning("startup_config_missing setting=%s", name)


@app.exception_handler(CronAuthError)
def cron_auth_error_handler(request: Request, exc: CronAuthError) -> JSONResponse:
    body = {"error": exc.error, "code": exc.code, "requestId": exc.request_id}
    if exc.message:
        body["message"] = exc.message
    headers = {"WWW-Authenticate": "X-Cron-Secret"} if exc.status_code == 401 else None
    return JSONResponse(status_code=exc.status_code, content=body, headers=headers)


@app.exception_handler(RateLimitExceeded)
def rate_limit_error_handler(request: Request, exc: RateLimitExceeded) -> JSONResponse:
    return JSONResponse(
        status_code=429,
        content={
            "error": "Too Many Requests",
            "code": "RATE_LIMIT_EXCEEDED",
            "message": f"Rate limit exceeded. Maximum {exc.limit} requests per hour.",
            "requestId": getattr(request.state, "request_id", None),
            "retryAfter": exc.reset_at,
            "requestCount": exc.request_count,
            "limit": exc.limit,
        },
        headers={
            "Retry-After": str(exc.retry_after_seconds),
            "X-RateLimit-Limit": str(exc.limit),
            "X-RateLimit-Remaining": "0",
            "X-RateLimit-Reset": exc.reset_at,
        },
    )


@app.exception_handler(ConfigurationError)
def configuration_error_handler(request: Request, exc: ConfigurationError) -> JSONResponse:
    logger.error("configuration_error path=%s detail=%s", request.url.path, str(exc))
    return JSONResponse(status_code=500, content={"success": False, "error": str(exc), "code": "CONFIG_ERROR"})


@app.exception_handler(JobFailedError)
def job_failed_handler(request: Request, exc: JobFailedError) -> JSONResponse:
    return JSONResponse(status_code=500, content={"success": False, "error": str(exc)})


@app.exception_handler(Exception)
def unhandled_error_handler(request: Request, exc: Exception) -> JSONResponse:
    logger.exception("unhandled_error path=%s detail=%s", request.url.path, str(exc)[:220])
    return JSONResponse(status_code=500, content={"success": False, "error": str(exc) or "Internal server error"})


@app.get("/health")
def health() -> dict[str, str]:
    return {"status": "ok"}


app.include_router(cron_router)
