"""Thin wrapper around the OpenAI Chat Completions API.

Transient failures (connection drops, timeouts, 429s and 5xx) are retried
with exponential back-off; anything else surfaces as UpstreamError.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional

from openai import APIConnectionError, APIError, InternalServerError, OpenAI, RateLimitError
from tenacity import Retrying, RetryError, retry_if_exception_type, stop_after_attempt, wait_exponential

from .config import Settings
from .errors import ConfigurationError, UpstreamError

logger = logging.getLogger("medreport.llm")

TRANSIENT_ERRORS = (APIConnectionError, RateLimitError, InternalServerError)


@dataclass
class Completion:
    text: str
    finish_reason: str = ""
    model: str = ""
    usage: Dict[str, int] = field(default_factory=dict)

    @property
    def truncated(self) -> bool:
        return self.finish_reason == "length"


def get_openai_client(settings: Settings) -> OpenAI:
    # Lazy so the app boots without a key; the first analysis reports it.
    if not settings.openai_api_key:
        raise ConfigurationError(details="OPENAI_API_KEY is not set")
    return OpenAI(api_key=settings.openai_api_key, timeout=settings.timeout, max_retries=0)


def _usage(resp: Any) -> Dict[str, int]:
    usage = getattr(resp, "usage", None)
    if not usage:
        return {}
    return {
        "prompt_tokens": getattr(usage, "prompt_tokens", 0) or 0,
        "completion_tokens": getattr(usage, "completion_tokens", 0) or 0,
        "total_tokens": getattr(usage, "total_tokens", 0) or 0,
    }


class VisionClient:
    """Chat-completions client used by both analysis stages."""

    def __init__(self, settings: Settings, client: Optional[OpenAI] = None):
        self.settings = settings
        self._client = client

    @property
    def client(self) -> OpenAI:
        if self._client is None:
            self._client = get_openai_client(self.settings)
        return self._client

    def _create(self, messages: List[Dict[str, Any]], max_tokens: int, model: str) -> Any:
        return self.client.chat.completions.create(
            model=model,
            messages=messages,
            max_tokens=max_tokens,
            temperature=self.settings.temperature,
        )

    def complete(self, messages: List[Dict[str, Any]], *, max_tokens: int, model: Optional[str] = None) -> Completion:
        model = model or self.settings.model
        retrying = Retrying(
            stop=stop_after_attempt(max(1, self.settings.max_attempts)),
            wait=wait_exponential(multiplier=1, min=1, max=10),
            retry=retry_if_exception_type(TRANSIENT_ERRORS),
            before_sleep=lambda state: logger.warning(
                "OpenAI call failed (attempt %d): %s", state.attempt_number, state.outcome.exception()
            ),
            reraise=False,
        )
        try:
            resp = retrying(self._create, messages, max_tokens, model)
        except RetryError as e:
            cause = e.last_attempt.exception()
            logger.error("OpenAI call gave up after %d attempts: %s", e.last_attempt.attempt_number, cause)
            raise UpstreamError(details=str(cause)) from cause
        except APIError as e:
            logger.error("OpenAI call rejected: %s", e)
            raise UpstreamError(details=getattr(e, "message", None) or str(e)) from e

        try:
            choice = resp.choices[0]
            text = choice.message.content or ""
        except (AttributeError, IndexError) as e:
            raise UpstreamError(details=f"No content in response: {e}") from e

        completion = Completion(
            text=text,
            finish_reason=getattr(choice, "finish_reason", "") or "",
            model=getattr(resp, "model", model) or model,
            usage=_usage(resp),
        )
        if completion.usage:
            logger.info(
                "[USAGE] model=%s prompt=%s completion=%s total=%s",
                completion.model,
                completion.usage["prompt_tokens"],
                completion.usage["completion_tokens"],
                completion.usage["total_tokens"],
            )
        if completion.truncated:
            logger.warning("completion hit max_tokens=%d; output is truncated", max_tokens)
        return completion
