"""Weekly recap notes built from the past seven days of successful coach
conversations.

Re-running the job for the same week inserts another note per user; notes
are not deduplicated against earlier runs.
"""
import logging
import time
from collections.abc import Sequence
from datetime import datetime, timedelta
from typing import Any, Callable, Optional

from sqlalchemy.orm import Session

from app.core.config import Settings
from app.core.errors import ConfigurationError, JobFailedError
from app.core.retry import retry_with_backoff
from app.core.security import mask_user_id
from app.db.models import WEEKLY_SUMMARY_NOTE_TYPE, CoachNote, InteractionLog
from app.services.cron_runs import (
    RUN_ERROR,
    as_utc_naive,
    classify_run,
    date_range,
    group_logs_by_user,
    record_failed_run,
    run_error_message,
    try_record_cron_run,
)
from app.services.llm import Summarizer, get_summarizer

logger = logging.getLogger("uvicorn.error")

FUNCTION_NAME = "generateWeeklyDigest"
LOOKBACK = timedelta(days=7)
EXCERPT_CHARS = 200
NO_ACTIVITY_NOTE = "No activity recorded this week."

DIGEST_PROMPT_TEMPLATE = """You are a health and fitness coach summarizing a user's weekly activity. \
Based on the following interactions from the past 7 days, create a concise natural-language summary highlighting:
1. Key training activities
2. Nutrition patterns
3. Sleep quality or mentions
4. Mood or stress levels
5. Notable patterns or concerns

Keep it under 200 words and write in a supportive, observational tone.

Weekly Interactions:
{interactions}

Weekly Summary:"""


def fetch_week_logs(db: Session, since: datetime) -> list[InteractionLog]:
    return (
        db.query(InteractionLog)
        .filter(InteractionLog.timestamp >= since, InteractionLog.success.is_(True))
        .order_by(InteractionLog.timestamp.asc(), InteractionLog.id.asc())
        .all()
    )


def build_digest_prompt(logs: Sequence[InteractionLog]) -> str:
    lines = []
    for idx, log in enumerate(logs, start=1):
        lines.append(
            f"[{idx}] User: {(log.user_message or '')[:EXCERPT_CHARS]}\n"
            f"    AI: {(log.ai_response or '')[:EXCERPT_CHARS]}"
        )
    return DIGEST_PROMPT_TEMPLATE.format(interactions="\n".join(lines))


def resolve_summarizer(db: Session, settings: Settings) -> Summarizer:
    """Build the summarizer, recording an error run when it is not configured."""
    try:
        return get_summarizer(settings)
    except ConfigurationError as exc:
        logger.error("weekly_digest_config_error detail=%s", str(exc))
        record_failed_run(db, FUNCTION_NAME, str(exc), duration_ms=0)
        raise


def generate_user_digest(
    logs: Sequence[InteractionLog],
    summarizer: Summarizer,
    sleep: Callable[[float], None] = time.sleep,
) -> str:
    if not logs:
        return NO_ACTIVITY_NOTE
    prompt = build_digest_prompt(logs)
    return retry_with_backoff(lambda: summarizer.summarize(prompt), sleep=sleep, label="summarize_week")


def generate_weekly_digest(
    db: Session,
    summarizer: Summarizer,
    now: Optional[datetime] = None,
    sleep: Callable[[float], None] = time.sleep,
) -> dict[str, Any]:
    started = time.monotonic()
    now = as_utc_naive(now or datetime.utcnow())
    since = now - LOOKBACK

    try:
        logs_by_user = group_logs_by_user(fetch_week_logs(db, since))
        logger.info("weekly_digest_started users=%s since=%s", len(logs_by_user), since.isoformat())

        results: list[dict[str, Any]] = []
        failures: list[str] = []

        for user_id, user_logs in logs_by_user.items():
            try:
                digest = generate_user_digest(user_logs, summarizer, sleep=sleep)
                db.add(CoachNote(user_id=user_id, note=digest, type=WEEKLY_SUMMARY_NOTE_TYPE))
                db.commit()
                results.append({"userId": user_id, "digest": digest, "logCount": len(user_logs)})
                logger.info(
                    "weekly_digest_generated user_id=%s log_count=%s", mask_user_id(user_id), len(user_logs)
                )
            except Exception as exc:
                db.rollback()
                logger.exception(
                    "weekly_digest_user_error user_id=%s detail=%s", mask_user_id(user_id), str(exc)[:220]
                )
                failures.append(user_id)
    except Exception as exc:
        error_message = str(exc) or "Unknown error"
        logger.exception("weekly_digest_error detail=%s", error_message[:220])
        record_failed_run(db, FUNCTION_NAME, error_message, int((time.monotonic() - started) * 1000))
        raise JobFailedError(FUNCTION_NAME, error_message) from exc

    run_status = classify_run(len(results), len(failures), len(logs_by_user))
    try_record_cron_run(
        db,
        function_name=FUNCTION_NAME,
        run_status=run_status,
        details={
            "totalUsers": len(logs_by_user),
            "successfulDigests": len(results),
            "failedDigests": len(failures),
            "dateRange": date_range(since, now),
        },
        duration_ms=int((time.monotonic() - started) * 1000),
        error_message=run_error_message(run_status, len(results), len(failures), "digests"),
    )

    return {
        "success": run_status != RUN_ERROR,
        "message": f"Generated {len(results)} weekly digests",
        "results": results,
        "failures": failures,
    }
