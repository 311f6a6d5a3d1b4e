import logging
import time
from typing import Callable, Sequence, TypeVar

logger = logging.getLogger("uvicorn.error")

T = TypeVar("T")

DEFAULT_MAX_ATTEMPTS = 3
# Seconds to wait before attempt 1, 2 and 3.
DEFAULT_DELAYS_SECONDS = (0.0, 3.0, 10.0)


def retry_with_backoff(
    operation: Callable[[], T],
    max_attempts: int = DEFAULT_MAX_ATTEMPTS,
    delays: Sequence[float] = DEFAULT_DELAYS_SECONDS,
    sleep: Callable[[float], None] = time.sleep,
    label: str = "operation",
) -> T:
    """Run ``operation`` until it succeeds or ``max_attempts`` is exhausted.

    ``delays[n]`` is the pause before attempt ``n + 1``; missing or zero
    entries mean no pause. The last error is re-raised unchanged.
    """
    if max_attempts < 1:
        raise ValueError("max_attempts must be at least 1")

    for attempt in range(max_attempts):
        delay = delays[attempt] if attempt < len(delays) else 0
        if attempt > 0 and delay:
            sleep(delay)
        try:
            return operation()
        except Exception as exc:
            logger.warning(
                "retry_attempt_failed label=%s attempt=%s max_attempts=%s detail=%s",
                label,
                attempt + 1,
                max_attempts,
                str(exc)[:220],
            )
            if attempt == max_attempts - 1:
                raise
    raise RuntimeError("unreachable")
