from datetime import datetime
from typing import Any, Optional

from fastapi import APIRouter, Depends, Query
from pydantic import BaseModel
from sqlalchemy.orm import Session

from app.core.config import Settings, get_settings
from app.core.rate_limit import RateLimiter, enforce_rate_limit, get_rate_limiter
from app.core.security import verify_cron_secret
from app.db.session import get_db
from app.services.cron_runs import list_cron_runs, run_details
from app.services.llm import Summarizer
from app.services.proactive_notifier import FUNCTION_NAME as CHECK_USER_STATUS
from app.services.proactive_notifier import check_user_status
from app.services.weekly_digest import FUNCTION_NAME as GENERATE_WEEKLY_DIGEST
from app.services.weekly_digest import generate_weekly_digest, resolve_summarizer

router = APIRouter(prefix="/cron", tags=["cron"])


class TriggeredNotification(BaseModel):
    userId: str
    stressfulDays: int
    pattern: str


class CheckUserStatusResponse(BaseModel):
    success: bool
    message: str
    notifications: list[TriggeredNotification]
    failures: list[str]
    skippedNoConsent: list[str]


class DigestResult(BaseModel):
    userId: str
    digest: str
    logCount: int


class WeeklyDigestResponse(BaseModel):
    success: bool
    message: str
    results: list[DigestResult]
    failures: list[str]


class CronRunItem(BaseModel):
    id: int
    function_name: str
    run_status: str
    run_time: datetime
    details: dict[str, Any]
    duration_ms: Optional[int] = None
    attempts: int
    error_message: Optional[str] = None


class CronRunListResponse(BaseModel):
    items: list[CronRunItem]


class RateLimitResetResponse(BaseModel):
    job_name: str
    reset: bool


def get_digest_summarizer(
    settings: Settings = Depends(get_settings),
    db: Session = Depends(get_db),
) -> Summarizer:
    return resolve_summarizer(db, settings)


@router.post("/check-user-status", response_model=CheckUserStatusResponse)
def run_check_user_status(
    _request_id: str = Depends(verify_cron_secret),
    _rate_limit=Depends(enforce_rate_limit(CHECK_USER_STATUS)),
    db: Session = Depends(get_db),
) -> CheckUserStatusResponse:
    return CheckUserStatusResponse(**check_user_status(db))


@router.post("/generate-weekly-digest", response_model=WeeklyDigestResponse)
def run_generate_weekly_digest(
    _request_id: str = Depends(verify_cron_secret),
    _rate_limit=Depends(enforce_rate_limit(GENERATE_WEEKLY_DIGEST)),
    summarizer: Summarizer = Depends(get_digest_summarizer),
    db: Session = Depends(get_db),
) -> WeeklyDigestResponse:
    return WeeklyDigestResponse(**generate_weekly_digest(db, summarizer))


@router.get("/runs", response_model=CronRunListResponse)
def get_cron_runs(
    function_name: Optional[str] = Query(default=None, max_length=64),
    limit: int = Query(default=20, ge=1, le=200),
    _request_id: str = Depends(verify_cron_secret),
    db: Session = Depends(get_db),
) -> CronRunListResponse:
    rows = list_cron_runs(db, function_name=function_name, limit=limit)
    return CronRunListResponse(
        items=[
            CronRunItem(
                id=row.id,
                function_name=row.function_name,
                run_status=row.run_status,
                run_time=row.run_time,
                details=run_details(row),
                duration_ms=row.duration_ms,
                attempts=row.attempts,
                error_message=row.error_message,
            )
            for row in rows
        ]
    )


@router.delete("/rate-limit/{job_name}", response_model=RateLimitResetResponse)
def reset_rate_limit(
    job_name: str,
    _request_id: str = Depends(verify_cron_secret),
    limiter: RateLimiter = Depends(get_rate_limiter),
) -> RateLimitResetResponse:
    return RateLimitResetResponse(job_name=job_name, reset=limiter.reset(job_name))
