import json
import logging
from collections.abc import Iterable
from datetime import datetime, timezone
from typing import Any, Optional

from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from app.db.models import InteractionLog, SystemCronLog

logger = logging.getLogger("uvicorn.error")

RUN_SUCCESS = "success"
RUN_PARTIAL_SUCCESS = "partial_success"
RUN_ERROR = "error"


def group_logs_by_user(logs: Iterable[InteractionLog]) -> dict[str, list[InteractionLog]]:
    # dict keeps first-seen user order; each list keeps fetch order.
    grouped: dict[str, list[InteractionLog]] = {}
    for log in logs:
        grouped.setdefault(log.user_id, []).append(log)
    return grouped


def classify_run(successes: int, failures: int, total_users: int) -> str:
    if failures > 0 and successes == 0 and total_users > 0:
        return RUN_ERROR
    if failures > 0:
        return RUN_PARTIAL_SUCCESS
    return RUN_SUCCESS


def run_error_message(run_status: str, successes: int, failures: int, noun: str) -> Optional[str]:
    if run_status == RUN_ERROR:
        return f"Failed to process all {noun}. Failures: {failures}"
    if run_status == RUN_PARTIAL_SUCCESS:
        return f"Partial success. Successes: {successes}, Failures: {failures}"
    return None


def as_utc_naive(value: datetime) -> datetime:
    # Stored timestamps are naive UTC.
    if value.tzinfo is not None:
        return value.astimezone(timezone.utc).replace(tzinfo=None)
    return value


def date_range(start: datetime, end: datetime) -> dict[str, str]:
    return {"from": start.isoformat(), "to": end.isoformat()}


def record_cron_run(
    db: Session,
    function_name: str,
    run_status: str,
    details: dict[str, Any],
    duration_ms: int,
    error_message: Optional[str] = None,
    attempts: int = 1,
) -> SystemCronLog:
    row = SystemCronLog(
        function_name=function_name,
        run_status=run_status,
        run_time=datetime.utcnow(),
        details_json=json.dumps(details, separators=(",", ":")),
        duration_ms=duration_ms,
        attempts=attempts,
        error_message=error_message,
    )
    db.add(row)
    db.commit()
    db.refresh(row)
    logger.info(
        "cron_run_recorded function=%s status=%s duration_ms=%s", function_name, run_status, duration_ms
    )
    return row


def try_record_cron_run(
    db: Session,
    function_name: str,
    run_status: str,
    details: dict[str, Any],
    duration_ms: int,
    error_message: Optional[str] = None,
) -> Optional[SystemCronLog]:
    """Best-effort run row; a failure here is logged and never raised."""
    try:
        return record_cron_run(db, function_name, run_status, details, duration_ms, error_message=error_message)
    except Exception as exc:
        logger.exception("cron_run_record_error function=%s detail=%s", function_name, str(exc)[:220])
        db.rollback()
        return None


def record_failed_run(
    db: Session, function_name: str, error_message: str, duration_ms: int
) -> Optional[SystemCronLog]:
    try:
        db.rollback()
    except SQLAlchemyError as exc:
        logger.warning("cron_run_rollback_error function=%s detail=%s", function_name, str(exc)[:220])
    return try_record_cron_run(
        db,
        function_name=function_name,
        run_status=RUN_ERROR,
        details={"error": error_message},
        duration_ms=duration_ms,
        error_message=error_message,
    )


def run_details(row: SystemCronLog) -> dict[str, Any]:
    if not row.details_json:
        return {}
    try:
        loaded = json.loads(row.details_json)
    except json.JSONDecodeError:
        return {}
    return loaded if isinstance(loaded, dict) else {}


def list_cron_runs(db: Session, function_name: Optional[str] = None, limit: int = 20) -> list[SystemCronLog]:
    query = db.query(SystemCronLog)
    if function_name:
        query = query.filter(SystemCronLog.function_name == function_name)
    return query.order_by(SystemCronLog.run_time.desc(), SystemCronLog.id.desc()).limit(limit).all()
