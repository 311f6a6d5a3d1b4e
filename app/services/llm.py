from typing import Optional, Protocol

import httpx

from app.core.config import Settings
from app.core.errors import ConfigurationError

OPENAI_CHAT_COMPLETIONS_URL = "https://api.openai.com/v1/chat/completions"
DIGEST_SYSTEM_PROMPT = "You are a helpful fitness coach creating weekly summaries."


class LLMRequestError(RuntimeError):
    def __init__(self, provider: str, model: str, message: str, status_code: Optional[int] = None):
        super().__init__(message)
        self.provider = provider
        self.model = model
        self.status_code = status_code


class Summarizer(Protocol):
    def summarize(self, prompt: str) -> str:
        ...


class OpenAISummarizer:
    def __init__(
        self,
        api_key: str,
        model: str = "gpt-4o-mini",
        max_tokens: int = 300,
        temperature: float = 0.7,
        timeout_seconds: float = 60.0,
        connect_timeout_seconds: float = 10.0,
    ) -> None:
        self.api_key = api_key
        self.model = model
        self.max_tokens = max_tokens
        self.temperature = temperature
        self.timeout = httpx.Timeout(timeout_seconds, connect=connect_timeout_seconds)

    def summarize(self, prompt: str) -> str:
        payload = {
            "model": self.model,
            "messages": [
                {"role": "system", "content": DIGEST_SYSTEM_PROMPT},
                {"role": "user", "content": prompt},
            ],
            "temperature": self.temperature,
            "max_tokens": self.max_tokens,
        }
        try:
            response = httpx.post(
                OPENAI_CHAT_COMPLETIONS_URL,
                headers={"Authorization": f"Bearer {self.api_key}", "Content-Type": "application/json"},
                json=payload,
                timeout=self.timeout,
            )
            response.raise_for_status()
        except httpx.HTTPStatusError as exc:
            status = exc.response.status_code if exc.response is not None else None
            detail = ""
            if exc.response is not None:
                detail = (exc.response.text or "").strip()[:220]
            raise LLMRequestError(
                provider="openai",
                model=self.model,
                status_code=status,
                message=f"OpenAI request failed (status={status}): {detail or 'no response body'}",
            ) from exc
        except httpx.HTTPError as exc:
            raise LLMRequestError(
                provider="openai",
                model=self.model,
                message=f"OpenAI request failed: {str(exc)[:220]}",
            ) from exc

        data = response.json()
        try:
            text = str(data["choices"][0]["message"].get("content") or "").strip()
        except (KeyError, IndexError, TypeError) as exc:
            raise LLMRequestError(
                provider="openai", model=self.model, message="OpenAI response missing choices"
            ) from exc
        if not text:
            raise LLMRequestError(
                provider="openai", model=self.model, message="OpenAI chat completion returned empty content"
            )
        return text


def get_summarizer(settings: Settings) -> Summarizer:
    if not settings.OPENAI_API_KEY:
        raise ConfigurationError("OPENAI_API_KEY is not configured")
    return OpenAISummarizer(
        api_key=settings.OPENAI_API_KEY,
        model=settings.DIGEST_MODEL,
        max_tokens=settings.DIGEST_MAX_TOKENS,
        temperature=settings.DIGEST_TEMPERATURE,
        timeout_seconds=settings.LLM_TIMEOUT_SECONDS,
        connect_timeout_seconds=settings.LLM_CONNECT_TIMEOUT_SECONDS,
    )
