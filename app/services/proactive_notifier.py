"""Daily proactive check: queue a supportive notification for users whose
recent coach conversations show stress on two or more distinct days."""
import logging
import time
from datetime import datetime, timedelta
from typing import Any, Callable, Optional

from sqlalchemy.orm import Session

from app.core.consent import get_active_consent
from app.core.errors import JobFailedError
from app.core.retry import retry_with_backoff
from app.core.security import mask_user_id
from app.core.stress import count_stressful_days, detect_stress_pattern
from app.db.models import (
    OPENAI_PROCESSING_CONSENT,
    PROACTIVE_NOTIFICATION_TYPE,
    CoachNotification,
    InteractionLog,
)
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

logger = logging.getLogger("uvicorn.error")

FUNCTION_NAME = "checkUserStatus"
LOOKBACK = timedelta(days=3)
STRESS_PATTERN = "high_stress"
PROACTIVE_MESSAGE = (
    "Hey, I noticed the past couple of days have been tough. "
    "Want to adjust your plan or talk about what's going on?"
)


def fetch_recent_logs(db: Session, since: datetime) -> list[InteractionLog]:
    return (
        db.query(InteractionLog)
        .filter(InteractionLog.timestamp >= since)
        .order_by(InteractionLog.timestamp.asc(), InteractionLog.id.asc())
        .all()
    )


def has_recent_notification(db: Session, user_id: str, since: datetime) -> bool:
    row = (
        db.query(CoachNotification.id)
        .filter(
            CoachNotification.user_id == user_id,
            CoachNotification.type == PROACTIVE_NOTIFICATION_TYPE,
            CoachNotification.created_at >= since,
        )
        .first()
    )
    return row is not None


def insert_proactive_notification(db: Session, user_id: str) -> CoachNotification:
    row = CoachNotification(
        user_id=user_id,
        message=PROACTIVE_MESSAGE,
        type=PROACTIVE_NOTIFICATION_TYPE,
        priority="normal",
        delivery_channel="in-app",
        status="pending",
    )
    db.add(row)
    try:
        db.commit()
    except Exception:
        db.rollback()
        raise
    return row


def check_user_status(
    db: Session,
    now: Optional[datetime] = None,
    sleep: Callable[[float], None] = time.sleep,
) -> dict[str, Any]:
    started = time.monotonic()
    now = as_utc_naive(now or datetime.utcnow())
    since = now - LOOKBACK

    try:
        logs = retry_with_backoff(lambda: fetch_recent_logs(db, since), sleep=sleep, label="fetch_recent_logs")
        logs_by_user = group_logs_by_user(logs)
        logger.info("check_user_status_started users=%s since=%s", len(logs_by_user), since.isoformat())

        notifications: list[dict[str, Any]] = []
        failures: list[str] = []
        skipped_no_consent: list[str] = []

        for user_id, user_logs in logs_by_user.items():
            try:
                if not detect_stress_pattern(user_logs):
                    continue

                consent = get_active_consent(db, user_id, OPENAI_PROCESSING_CONSENT)
                if consent is None:
                    logger.info("check_user_status_skipped_no_consent user_id=%s", mask_user_id(user_id))
                    skipped_no_consent.append(user_id)
                    continue
                logger.info(
                    "check_user_status_consent_confirmed user_id=%s granted_at=%s",
                    mask_user_id(user_id),
                    consent.granted_at.isoformat() if consent.granted_at else None,
                )

                if has_recent_notification(db, user_id, since):
                    logger.info("check_user_status_skipped_recent_notification user_id=%s", mask_user_id(user_id))
                    continue

                retry_with_backoff(
                    lambda: insert_proactive_notification(db, user_id),
                    sleep=sleep,
                    label="insert_proactive_notification",
                )
                notifications.append(
                    {
                        "userId": user_id,
                        "stressfulDays": count_stressful_days(user_logs),
                        "pattern": STRESS_PATTERN,
                    }
                )
                logger.info("check_user_status_notification_queued user_id=%s", mask_user_id(user_id))
            except Exception as exc:
                db.rollback()
                logger.exception(
                    "check_user_status_user_error user_id=%s detail=%s", mask_user_id(user_id), str(exc)[:220]
                )
                failures.append(user_id)
    except Exception as exc:
        error_message = str(exc) or "Unknown error"
        logger.exception("check_user_status_error detail=%s", error_message[:220])
        record_failed_run(db, FUNCTION_NAME, error_message, int((time.monotonic() - started) * 1000))
        raise JobFailedError(FUNCTION_NAME, error_message) from exc

    run_status = classify_run(len(notifications), len(failures), len(logs_by_user))
    # Notifications are already committed; a lost run row is only logged.
    try_record_cron_run(
        db,
        function_name=FUNCTION_NAME,
        run_status=run_status,
        details={
            "totalUsers": len(logs_by_user),
            "triggeredNotifications": len(notifications),
            "failures": len(failures),
            "skippedNoConsent": len(skipped_no_consent),
            "dateRange": date_range(since, now),
        },
        duration_ms=int((time.monotonic() - started) * 1000),
        error_message=run_error_message(run_status, len(notifications), len(failures), "users"),
    )

    return {
        "success": run_status != RUN_ERROR,
        "message": (
            f"Checked {len(logs_by_user)} users, triggered {len(notifications)} notifications, "
            f"skipped {len(skipped_no_consent)} users (no consent)"
        ),
        "notifications": notifications,
        "failures": failures,
        "skippedNoConsent": skipped_no_consent,
    }
