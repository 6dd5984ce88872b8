"""
Shared helpers for the OpenAI-compatible chat completion collaborator.

Environment variables:
    OPENAI_API_KEY / DEEPSEEK_API_KEY → required for live calls (either one)
    OPENAI_BASE_URL                   → API base URL (DeepSeek by default)
    LLM_COMPLETION_MODEL              → chat/completions model for recommendation picks
    LLM_COMPLETION_MAX_TOKENS         → token limit for completion calls
    LLM_COMPLETION_TEMPERATURE        → sampling temperature
    LLM_REQUEST_TIMEOUT_S             → per-request timeout

Centralises configuration, client creation and logging so the live generator
and anything else that talks to the model behave consistently and can be tuned
from environment variables.
"""

from __future__ import annotations

import logging
import os
from dataclasses import dataclass
from functools import lru_cache
from typing import Callable, Coroutine, Optional, TypeVar

from openai import AsyncOpenAI

from settings import _env_float, _env_int

logger = logging.getLogger(__name__)

DEFAULT_BASE_URL = "https://api.deepseek.com"


@dataclass(frozen=True)
class LLMSettings:
    """Resolved configuration for the completion collaborator."""

    api_key: str
    base_url: str
    completion_model: str
    completion_max_tokens: int
    completion_temperature: float
    request_timeout_s: float


@lru_cache(maxsize=1)
def load_settings() -> LLMSettings:
    """Load and cache LLM configuration from environment variables."""

    raw_key = (os.getenv("OPENAI_API_KEY") or os.getenv("DEEPSEEK_API_KEY") or "").strip()
    if not raw_key:
        logger.warning("No LLM API key configured; recommendations will use the fallback picker")

    return LLMSettings(
        api_key=raw_key,
        base_url=os.getenv("OPENAI_BASE_URL", DEFAULT_BASE_URL),
        completion_model=os.getenv("LLM_COMPLETION_MODEL", "deepseek-chat"),
        completion_max_tokens=_env_int("LLM_COMPLETION_MAX_TOKENS", 600),
        completion_temperature=_env_float("LLM_COMPLETION_TEMPERATURE", 0.7),
        request_timeout_s=_env_float("LLM_REQUEST_TIMEOUT_S", 60.0),
    )


@lru_cache(maxsize=1)
def get_async_client() -> AsyncOpenAI:
    """Return a singleton AsyncOpenAI client shared across services."""

    settings = load_settings()
    return AsyncOpenAI(
        api_key=settings.api_key or None,
        base_url=settings.base_url,
        timeout=settings.request_timeout_s,
        max_retries=0,  # degrade to fallback instead of retrying
    )


def should_use_llm() -> bool:
    """Quick check to see if we have an API key configured."""

    return bool(load_settings().api_key)


T = TypeVar("T")


async def run_with_common_errors(
    operation: str,
    coro_factory: Callable[[], Coroutine[None, None, T]],
    *,
    on_error: Optional[Callable[[Exception], Optional[T]]] = None,
) -> Optional[T]:
    """
    Await an OpenAI coroutine and capture/log failures consistently.

    Args:
        operation: High-level description (e.g. "recommendation picks").
        coro_factory: Callable returning the coroutine to await.
        on_error: Optional callback producing a fallback result.
    """

    try:
        return await coro_factory()
    except Exception as exc:
        logger.error("LLM %s failed: %s", operation, exc, exc_info=True)
        if on_error:
            return on_error(exc)
        return None
