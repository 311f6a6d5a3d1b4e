from datetime import datetime, timedelta

import pytest

from app.core.errors import JobFailedError
from app.db.models import CoachNotification, SystemCronLog
from app.services import cron_runs, proactive_notifier
from app.services.cron_runs import run_details
from app.services.proactive_notifier import PROACTIVE_MESSAGE, check_user_status

NOW = datetime(2025, 10, 22, 9, 0)


def _no_sleep(_seconds: float) -> None:
    return None


def _stressed_two_days(seed_log, user_id: str) -> None:
    seed_log(user_id, "Work has me so stressed", NOW - timedelta(days=2))
    seed_log(user_id, "Ate a good breakfast", NOW - timedelta(days=1))
    seed_log(user_id, "Feeling overwhelmed again", NOW - timedelta(hours=2))


def _notifications(db_session, user_id: str) -> list[CoachNotification]:
    return db_session.query(CoachNotification).filter(CoachNotification.user_id == user_id).all()


def test_three_user_scenario(db_session, seed_log, grant_consent) -> None:
    _stressed_two_days(seed_log, "user-a")
    grant_consent("user-a")
    seed_log("user-b", "Pretty tired today", NOW - timedelta(days=1))
    seed_log("user-b", "Great session at the gym", NOW - timedelta(hours=3))
    grant_consent("user-b")
    _stressed_two_days(seed_log, "user-c")

    result = check_user_status(db_session, now=NOW, sleep=_no_sleep)

    assert result["success"] is True
    assert [n["userId"] for n in result["notifications"]] == ["user-a"]
    assert result["notifications"][0]["stressfulDays"] == 2
    assert result["notifications"][0]["pattern"] == "high_stress"
    assert result["failures"] == []
    assert result["skippedNoConsent"] == ["user-c"]
    assert result["message"] == "Checked 3 users, triggered 1 notifications, skipped 1 users (no consent)"

    rows = _notifications(db_session, "user-a")
    assert len(rows) == 1
    assert rows[0].message == PROACTIVE_MESSAGE
    assert rows[0].type == "ai_coach_proactive"
    assert rows[0].status == "pending"
    assert rows[0].priority == "normal"
    assert rows[0].delivery_channel == "in-app"
    assert rows[0].read is False
    assert _notifications(db_session, "user-b") == []
    assert _notifications(db_session, "user-c") == []

    run = db_session.query(SystemCronLog).one()
    assert run.function_name == "checkUserStatus"
    assert run.run_status == "success"
    assert run.error_message is None
    details = run_details(run)
    assert details["totalUsers"] == 3
    assert details["triggeredNotifications"] == 1
    assert details["failures"] == 0
    assert details["skippedNoConsent"] == 1
    assert details["dateRange"]["from"] == (NOW - timedelta(days=3)).isoformat()


def test_recent_notification_suppresses_new_one(db_session, seed_log, grant_consent, seed_notification) -> None:
    _stressed_two_days(seed_log, "user-dedup")
    grant_consent("user-dedup")
    seed_notification("user-dedup", created_at=NOW - timedelta(days=1))

    result = check_user_status(db_session, now=NOW, sleep=_no_sleep)

    assert result["notifications"] == []
    assert result["failures"] == []
    assert len(_notifications(db_session, "user-dedup")) == 1


def test_notification_older_than_window_does_not_suppress(
    db_session, seed_log, grant_consent, seed_notification
) -> None:
    _stressed_two_days(seed_log, "user-old")
    grant_consent("user-old")
    seed_notification("user-old", created_at=NOW - timedelta(days=4))

    result = check_user_status(db_session, now=NOW, sleep=_no_sleep)

    assert [n["userId"] for n in result["notifications"]] == ["user-old"]
    assert len(_notifications(db_session, "user-old")) == 2


def test_second_run_is_deduplicated(db_session, seed_log, grant_consent) -> None:
    _stressed_two_days(seed_log, "user-twice")
    grant_consent("user-twice")

    first = check_user_status(db_session, now=NOW, sleep=_no_sleep)
    second = check_user_status(db_session, now=NOW + timedelta(hours=1), sleep=_no_sleep)

    assert len(first["notifications"]) == 1
    assert second["notifications"] == []
    assert len(_notifications(db_session, "user-twice")) == 1


@pytest.mark.parametrize("granted,withdrawn", [(False, False), (True, True)])
def test_denied_consent_never_inserts(db_session, seed_log, grant_consent, granted, withdrawn) -> None:
    _stressed_two_days(seed_log, "user-denied")
    grant_consent("user-denied", granted=granted, withdrawn_at=NOW - timedelta(days=10) if withdrawn else None)

    result = check_user_status(db_session, now=NOW, sleep=_no_sleep)

    assert result["skippedNoConsent"] == ["user-denied"]
    assert _notifications(db_session, "user-denied") == []


def test_logs_outside_window_are_ignored(db_session, seed_log, grant_consent) -> None:
    seed_log("user-stale", "stressed", NOW - timedelta(days=5))
    seed_log("user-stale", "stressed", NOW - timedelta(days=4))
    grant_consent("user-stale")

    result = check_user_status(db_session, now=NOW, sleep=_no_sleep)

    assert result["message"].startswith("Checked 0 users")
    assert result["notifications"] == []


def test_insert_failure_is_isolated_per_user(db_session, seed_log, grant_consent, monkeypatch) -> None:
    for user_id in ("user-ok", "user-broken"):
        _stressed_two_days(seed_log, user_id)
        grant_consent(user_id)

    real_insert = proactive_notifier.insert_proactive_notification
    attempts: list[str] = []

    def flaky_insert(db, user_id):
        attempts.append(user_id)
        if user_id == "user-broken":
            raise RuntimeError("insert rejected")
        return real_insert(db, user_id)

    monkeypatch.setattr(proactive_notifier, "insert_proactive_notification", flaky_insert)
    sleeps: list[float] = []

    result = check_user_status(db_session, now=NOW, sleep=sleeps.append)

    assert [n["userId"] for n in result["notifications"]] == ["user-ok"]
    assert result["failures"] == ["user-broken"]
    assert result["success"] is True
    assert attempts.count("user-broken") == 3
    assert sleeps == [3.0, 10.0]

    run = db_session.query(SystemCronLog).one()
    assert run.run_status == "partial_success"
    assert run.error_message == "Partial success. Successes: 1, Failures: 1"


def test_all_users_failing_marks_run_as_error(db_session, seed_log, grant_consent, monkeypatch) -> None:
    _stressed_two_days(seed_log, "user-broken")
    grant_consent("user-broken")

    def broken_insert(db, user_id):
        raise RuntimeError("insert rejected")

    monkeypatch.setattr(proactive_notifier, "insert_proactive_notification", broken_insert)

    result = check_user_status(db_session, now=NOW, sleep=_no_sleep)

    assert result["success"] is False
    assert result["failures"] == ["user-broken"]
    run = db_session.query(SystemCronLog).one()
    assert run.run_status == "error"
    assert run.error_message == "Failed to process all users. Failures: 1"


def test_fetch_failure_aborts_run_and_records_error(db_session, monkeypatch) -> None:
    calls: list[datetime] = []

    def broken_fetch(db, since):
        calls.append(since)
        raise ConnectionError("database unreachable")

    monkeypatch.setattr(proactive_notifier, "fetch_recent_logs", broken_fetch)

    with pytest.raises(JobFailedError, match="database unreachable"):
        check_user_status(db_session, now=NOW, sleep=_no_sleep)

    assert len(calls) == 3
    run = db_session.query(SystemCronLog).one()
    assert run.run_status == "error"
    assert run.error_message == "database unreachable"
    assert run_details(run) == {"error": "database unreachable"}


def test_aware_now_is_normalised_to_utc(db_session, seed_log, grant_consent) -> None:
    from datetime import timezone

    _stressed_two_days(seed_log, "user-aware")
    grant_consent("user-aware")

    result = check_user_status(db_session, now=NOW.replace(tzinfo=timezone.utc), sleep=_no_sleep)

    assert [n["userId"] for n in result["notifications"]] == ["user-aware"]


def test_consent_lookup_crash_counts_as_skip(db_session, seed_log, grant_consent, monkeypatch) -> None:
    from app.core.consent import get_active_consent

    class CrashingSession:
        def query(self, *args, **kwargs):
            raise RuntimeError("driver exploded")

        def rollback(self) -> None:
            return None

    _stressed_two_days(seed_log, "user-crash")
    grant_consent("user-crash")
    monkeypatch.setattr(
        proactive_notifier,
        "get_active_consent",
        lambda db, user_id, consent_type: get_active_consent(CrashingSession(), user_id, consent_type),
    )

    result = check_user_status(db_session, now=NOW, sleep=_no_sleep)

    assert result["skippedNoConsent"] == ["user-crash"]
    assert result["failures"] == []
    assert _notifications(db_session, "user-crash") == []
    assert db_session.query(SystemCronLog).one().run_status == "success"


def test_lost_run_record_does_not_fail_completed_job(db_session, seed_log, grant_consent, monkeypatch) -> None:
    _stressed_two_days(seed_log, "user-logged")
    grant_consent("user-logged")

    def failing_record(*args, **kwargs):
        raise RuntimeError("cron log table locked")

    monkeypatch.setattr(cron_runs, "record_cron_run", failing_record)

    result = check_user_status(db_session, now=NOW, sleep=_no_sleep)

    assert result["success"] is True
    assert [n["userId"] for n in result["notifications"]] == ["user-logged"]
    assert len(_notifications(db_session, "user-logged")) == 1
    assert db_session.query(SystemCronLog).count() == 0
