"""Fixed-window request counting per scheduled job, backed by Redis."""
import logging
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from functools import lru_cache
from typing import Any, Optional

import redis
from fastapi import Depends

from app.core.config import Settings, get_settings
from app.core.errors import RateLimitExceeded

logger = logging.getLogger("uvicorn.error")

# A broken or missing counter store must never block the scheduled jobs.
FAIL_OPEN = "fail_open"
RATE_LIMIT_FAILURE_POLICY = FAIL_OPEN

DEFAULT_LIMIT = 100
DEFAULT_WINDOW_SECONDS = 60 * 60


@dataclass
class RateLimitDecision:
    allowed: bool
    request_count: int
    limit: int
    retry_after_seconds: int
    reset_at: str


def rate_limit_key(job_name: str) -> str:
    return f"rate_limit:{job_name}"


class RateLimiter:
    def __init__(
        self,
        client: Optional[Any] = None,
        limit: int = DEFAULT_LIMIT,
        window_seconds: int = DEFAULT_WINDOW_SECONDS,
    ) -> None:
        self.client = client
        self.limit = limit
        self.window_seconds = window_seconds

    def _open(self, job_name: str, reason: str) -> RateLimitDecision:
        logger.warning(
            "rate_limit_unavailable job=%s policy=%s detail=%s", job_name, RATE_LIMIT_FAILURE_POLICY, reason
        )
        return RateLimitDecision(
            allowed=True,
            request_count=0,
            limit=self.limit,
            retry_after_seconds=0,
            reset_at=datetime.now(timezone.utc).isoformat(),
        )

    def check(self, job_name: str) -> RateLimitDecision:
        if self.client is None:
            return self._open(job_name, "redis not configured")

        key = rate_limit_key(job_name)
        try:
            request_count = int(self.client.incr(key))
            if request_count == 1:
                self.client.expire(key, self.window_seconds)
            ttl_seconds = int(self.client.ttl(key))
        except redis.RedisError as exc:
            return self._open(job_name, str(exc)[:220])
        except Exception as exc:
            logger.exception("rate_limit_check_error job=%s", job_name)
            return self._open(job_name, str(exc)[:220])

        # -1/-2 mean no expiry / missing key; fall back to a full window.
        if ttl_seconds < 0:
            ttl_seconds = self.window_seconds
        reset_at = (datetime.now(timezone.utc) + timedelta(seconds=ttl_seconds)).isoformat()
        logger.info(
            "rate_limit_counted job=%s count=%s limit=%s reset_at=%s", job_name, request_count, self.limit, reset_at
        )

        if request_count > self.limit:
            logger.warning("rate_limit_exceeded job=%s count=%s limit=%s", job_name, request_count, self.limit)
            return RateLimitDecision(
                allowed=False,
                request_count=request_count,
                limit=self.limit,
                retry_after_seconds=ttl_seconds,
                reset_at=reset_at,
            )
        return RateLimitDecision(
            allowed=True,
            request_count=request_count,
            limit=self.limit,
            retry_after_seconds=0,
            reset_at=reset_at,
        )

    def reset(self, job_name: str) -> bool:
        if self.client is None:
            logger.warning("rate_limit_reset_skipped job=%s detail=redis not configured", job_name)
            return False
        self.client.delete(rate_limit_key(job_name))
        logger.info("rate_limit_reset job=%s", job_name)
        return True


@lru_cache
def _redis_for_url(url: str) -> redis.Redis:
    return redis.Redis.from_url(url, decode_responses=True)


def _get_redis(settings: Settings) -> Optional[Any]:
    if not settings.REDIS_URL:
        return None
    try:
        return _redis_for_url(settings.REDIS_URL)
    except (ValueError, redis.RedisError) as exc:
        logger.warning(
            "rate_limit_client_error policy=%s detail=%s", RATE_LIMIT_FAILURE_POLICY, str(exc)[:220]
        )
        return None


def get_rate_limiter(settings: Settings = Depends(get_settings)) -> RateLimiter:
    return RateLimiter(
        client=_get_redis(settings),
        limit=settings.RATE_LIMIT_MAX_REQUESTS,
        window_seconds=settings.RATE_LIMIT_WINDOW_SECONDS,
    )


def enforce_rate_limit(job_name: str):
    def _dependency(limiter: RateLimiter = Depends(get_rate_limiter)) -> RateLimitDecision:
        decision = limiter.check(job_name)
        if not decision.allowed:
            raise RateLimitExceeded(
                job_name=job_name,
                request_count=decision.request_count,
                limit=decision.limit,
                retry_after_seconds=decision.retry_after_seconds,
                reset_at=decision.reset_at,
            )
        return decision

    return _dependency
