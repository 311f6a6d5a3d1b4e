from typing import Optional


class ConfigurationError(RuntimeError):
    """A required setting is missing; the invocation must not proceed."""


class CronAuthError(RuntimeError):
    def __init__(self, status_code: int, code: str, error: str, request_id: str, message: Optional[str] = None):
        super().__init__(error)
        self.status_code = status_code
        self.code = code
        self.error = error
        self.request_id = request_id
        self.message = message


class RateLimitExceeded(RuntimeError):
    def __init__(self, job_name: str, request_count: int, limit: int, retry_after_seconds: int, reset_at: str):
        super().__init__(f"Rate limit exceeded for {job_name}")
        self.job_name = job_name
        self.request_count = request_count
        self.limit = limit
        self.retry_after_seconds = retry_after_seconds
        self.reset_at = reset_at


class JobFailedError(RuntimeError):
    """Raised after a scheduled job aborted and its error run was recorded."""

    def __init__(self, function_name: str, message: str):
        super().__init__(message)
        self.function_name = function_name
