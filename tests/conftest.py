from datetime import datetime
from pathlib import Path
from typing import Callable, Optional

import pytest
import redis
from fastapi.testclient import TestClient
from sqlalchemy.orm import Session

from app.api.cron import get_digest_summarizer
from app.core.config import Settings, get_settings
from app.core.rate_limit import RateLimiter, get_rate_limiter
from app.db.models import (
    OPENAI_PROCESSING_CONSENT,
    PROACTIVE_NOTIFICATION_TYPE,
    Base,
    CoachNotification,
    InteractionLog,
    UserConsent,
)
from app.db.session import SessionLocal, configure_database, create_tables

CRON_SECRET = "test-cron-secret"


class FakeRedis:
    """In-memory stand-in for the three counter commands the limiter uses."""

    def __init__(self) -> None:
        self.counts: dict[str, int] = {}
        self.ttls: dict[str, int] = {}
        self.calls: list[str] = []

    def incr(self, key: str) -> int:
        self.calls.append("incr")
        self.counts[key] = self.counts.get(key, 0) + 1
        return self.counts[key]

    def expire(self, key: str, seconds: int) -> bool:
        self.calls.append("expire")
        self.ttls[key] = seconds
        return True

    def ttl(self, key: str) -> int:
        self.calls.append("ttl")
        if key not in self.counts:
            return -2
        return self.ttls.get(key, -1)

    def delete(self, key: str) -> int:
        self.calls.append("delete")
        existed = key in self.counts
        self.counts.pop(key, None)
        self.ttls.pop(key, None)
        return int(existed)


class BrokenRedis:
    def incr(self, key: str) -> int:
        raise redis.ConnectionError("connection refused")


class FakeSummarizer:
    def __init__(self, reply: str = "You kept a steady rhythm this week.", fail_times: int = 0) -> None:
        self.reply = reply
        self.fail_times = fail_times
        self.prompts: list[str] = []

    def summarize(self, prompt: str) -> str:
        self.prompts.append(prompt)
        if self.fail_times > 0:
            self.fail_times -= 1
            raise TimeoutError("simulated timeout")
        return self.reply


@pytest.fixture(scope="session")
def test_db_path(tmp_path_factory: pytest.TempPathFactory) -> Path:
    db_path = tmp_path_factory.mktemp("db") / "coach_jobs_test.db"
    configure_database(str(db_path))
    create_tables()
    return db_path


@pytest.fixture(scope="session")
def app(test_db_path: Path):
    from app.main import app as fastapi_app

    return fastapi_app


@pytest.fixture(autouse=True)
def clean_tables(test_db_path: Path):
    # Jobs scan every user, so each test starts from empty tables.
    db = SessionLocal()
    try:
        for table in reversed(Base.metadata.sorted_tables):
            db.execute(table.delete())
        db.commit()
    finally:
        db.close()
    yield


@pytest.fixture
def settings() -> Settings:
    return Settings(CRON_SECRET_KEY=CRON_SECRET, OPENAI_API_KEY="sk-test-12345678", REDIS_URL=None)


@pytest.fixture
def fake_redis() -> FakeRedis:
    return FakeRedis()


@pytest.fixture
def broken_redis() -> BrokenRedis:
    return BrokenRedis()


@pytest.fixture
def fake_summarizer() -> FakeSummarizer:
    return FakeSummarizer()


@pytest.fixture
def client(app, settings: Settings, fake_redis: FakeRedis, fake_summarizer: FakeSummarizer):
    app.dependency_overrides = {
        get_settings: lambda: settings,
        get_rate_limiter: lambda: RateLimiter(client=fake_redis, limit=settings.RATE_LIMIT_MAX_REQUESTS),
        get_digest_summarizer: lambda: fake_summarizer,
    }
    with TestClient(app) as test_client:
        yield test_client
    app.dependency_overrides = {}


@pytest.fixture
def cron_headers() -> dict[str, str]:
    return {"X-Cron-Secret": CRON_SECRET}


@pytest.fixture
def db_session(test_db_path: Path):
    db = SessionLocal()
    try:
        yield db
    finally:
        db.close()


@pytest.fixture
def seed_log(db_session: Session) -> Callable[..., InteractionLog]:
    def _seed(
        user_id: str,
        user_message: str,
        timestamp: datetime,
        ai_response: str = "Thanks for sharing, let's keep going.",
        success: bool = True,
    ) -> InteractionLog:
        row = InteractionLog(
            user_id=user_id,
            session_id=f"session-{user_id}",
            user_message=user_message,
            ai_response=ai_response,
            success=success,
            timestamp=timestamp,
        )
        db_session.add(row)
        db_session.commit()
        db_session.refresh(row)
        return row

    return _seed


@pytest.fixture
def grant_consent(db_session: Session) -> Callable[..., UserConsent]:
    def _grant(
        user_id: str,
        granted: bool = True,
        withdrawn_at: Optional[datetime] = None,
        consent_type: str = OPENAI_PROCESSING_CONSENT,
    ) -> UserConsent:
        row = UserConsent(
            user_id=user_id,
            consent_type=consent_type,
            granted=granted,
            granted_at=datetime.utcnow() if granted else None,
            withdrawn_at=withdrawn_at,
        )
        db_session.add(row)
        db_session.commit()
        db_session.refresh(row)
        return row

    return _grant


@pytest.fixture
def seed_notification(db_session: Session) -> Callable[..., CoachNotification]:
    def _seed(user_id: str, created_at: datetime) -> CoachNotification:
        row = CoachNotification(
            user_id=user_id,
            message="Earlier check-in",
            type=PROACTIVE_NOTIFICATION_TYPE,
            created_at=created_at,
        )
        db_session.add(row)
        db_session.commit()
        db_session.refresh(row)
        return row

    return _seed
