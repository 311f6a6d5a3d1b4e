from collections.abc import Iterable, Mapping
from datetime import date, datetime, timezone
from typing import Any

STRESS_KEYWORDS = [
    "stress",
    "stressed",
    "anxious",
    "anxiety",
    "overwhelmed",
    "tired",
    "exhausted",
    "difficult",
    "tough",
    "hard time",
    "struggling",
    "down",
    "sad",
    "depressed",
    "frustrated",
    "angry",
    "upset",
]

STRESSFUL_DAYS_THRESHOLD = 2


def _field(log: Any, name: str) -> Any:
    if isinstance(log, Mapping):
        return log.get(name)
    return getattr(log, name, None)


def log_day(timestamp: Any) -> date:
    """Calendar day of a log in UTC. Naive datetimes are already UTC."""
    if isinstance(timestamp, datetime):
        if timestamp.tzinfo is not None:
            timestamp = timestamp.astimezone(timezone.utc)
        return timestamp.date()
    if isinstance(timestamp, date):
        return timestamp
    return date.fromisoformat(str(timestamp).split("T")[0])


def contains_stress_keyword(text: str) -> bool:
    lowered = (text or "").lower()
    return any(keyword in lowered for keyword in STRESS_KEYWORDS)


def count_stressful_days(logs: Iterable[Any]) -> int:
    days: dict[date, bool] = {}
    for log in logs:
        day = log_day(_field(log, "timestamp"))
        if days.get(day):
            continue
        text = f"{_field(log, 'user_message') or ''} {_field(log, 'ai_response') or ''}"
        days[day] = contains_stress_keyword(text)
    return sum(1 for flagged in days.values() if flagged)


def detect_stress_pattern(logs: Iterable[Any]) -> bool:
    logs = list(logs)
    if not logs:
        return False
    return count_stressful_days(logs) >= STRESSFUL_DAYS_THRESHOLD
