"""
llm_client.py — Azure OpenAI chat-completion access
====================================================
One client used by every stage agent. Adds three things on top of the
``openai`` SDK:

  * a single per-request timeout (CI_COPILOT_REQUEST_TIMEOUT, default 60 s);
  * exponential backoff with jitter on 429 / timeouts / connection errors /
    5xx, honouring ``Retry-After`` when the service sends one;
  * a SQLite response cache keyed by SHA-256 of the request, so re-running a
    stage on unchanged input is free.

SDK-level retries are disabled (``max_retries=0``) so the backoff policy here
is the only one in play.
"""

from __future__ import annotations

import hashlib
import json
import logging
import random
import time
from typing import Any, Callable, Optional

import openai
from openai import AzureOpenAI

from ci_copilot import database
from ci_copilot.config import AzureOpenAIConfig, LLMConfig, get_settings
from ci_copilot.errors import LLMNotConfiguredError

logger = logging.getLogger(__name__)

RETRYABLE_ERRORS = (
    openai.RateLimitError,
    openai.APITimeoutError,
    openai.APIConnectionError,
    openai.InternalServerError,
)


def cache_key(model: str, messages: list[dict[str, Any]], json_mode: bool) -> str:
    payload = json.dumps(
        {"model": model, "messages": messages, "json_mode": json_mode},
        sort_keys=True, ensure_ascii=False,
    )
    return hashlib.sha256(payload.encode("utf-8")).hexdigest()


def _retry_after_seconds(exc: Exception) -> Optional[float]:
    """Seconds from a Retry-After header on the failed response, if any."""
    response = getattr(exc, "response", None)
    headers = getattr(response, "headers", None)
    if not headers:
        return None
    value = headers.get("retry-after") or headers.get("Retry-After")
    try:
        return float(value) if value is not None else None
    except (TypeError, ValueError):
        return None


def backoff_delay(attempt: int, base: float, cap: float, jitter: float = 0.5) -> float:
    """Delay before retry number *attempt* (1-based): min(cap, base**attempt) + U(0, jitter)."""
    return min(cap, base ** attempt) + random.uniform(0, jitter)


class ChatClient:
    """
    Thin wrapper around ``AzureOpenAI.chat.completions.create``.

    Raises LLMNotConfiguredError on construction when the endpoint or key
    is missing / a placeholder, so callers can fall back to their mock path.
    """

    tier = "azure_openai"

    def __init__(
        self,
        config: AzureOpenAIConfig | None = None,
        llm_config: LLMConfig | None = None,
        cache_path: Optional[str] = None,
        sdk_client: Any = None,
        sleep: Callable[[float], None] = time.sleep,
    ) -> None:
        settings = get_settings()
        self._cfg = config or settings.openai
        self._llm = llm_config or settings.llm
        self._cache_path = cache_path or settings.pipeline.db_path
        self._sleep = sleep

        if sdk_client is not None:
            self._client = sdk_client
        else:
            if not self._cfg.is_configured:
                raise LLMNotConfiguredError("Azure OpenAI endpoint/key not configured.")
            self._client = AzureOpenAI(
                azure_endpoint = self._cfg.endpoint,
                api_key        = self._cfg.api_key,
                api_version    = self._cfg.api_version,
                timeout        = self._llm.request_timeout,
                max_retries    = 0,
            )

    @property
    def deployment(self) -> str:
        return self._cfg.deployment

    # ── Retry loop ───────────────────────────────────────────────────────────

    def _create(self, **kwargs) -> Any:
        attempt = 0
        while True:
            try:
                return self._client.chat.completions.create(**kwargs)
            except RETRYABLE_ERRORS as exc:
                attempt += 1
                if attempt > self._llm.max_retries:
                    logger.error("Model call failed after %d retries: %s", self._llm.max_retries, exc)
                    raise
                delay = _retry_after_seconds(exc)
                if delay is None:
                    delay = backoff_delay(attempt, self._llm.backoff_base, self._llm.backoff_max)
                else:
                    delay = min(delay, self._llm.backoff_max)
                logger.warning(
                    "%s from model endpoint; retry %d/%d in %.1fs",
                    type(exc).__name__, attempt, self._llm.max_retries, delay,
                )
                self._sleep(delay)

    # ── Public interface ─────────────────────────────────────────────────────

    def complete(self, system: str, user: str, json_mode: bool = False) -> str:
        """Single-turn completion; returns the assistant text."""
        messages = [
            {"role": "system", "content": system},
            {"role": "user",   "content": user},
        ]
        key = cache_key(self._cfg.deployment, messages, json_mode)
        if self._llm.cache_enabled:
            cached = database.get_llm_cache(key, self._cache_path)
            if cached is not None:
                logger.debug("LLM cache hit %s", key[:12])
                return cached["content"]

        kwargs: dict[str, Any] = dict(
            model       = self._cfg.deployment,
            messages    = messages,
            temperature = self._llm.temperature,
            max_tokens  = self._llm.max_tokens,
        )
        if json_mode:
            kwargs["response_format"] = {"type": "json_object"}

        response = self._create(**kwargs)
        content = response.choices[0].message.content or ""
        usage = getattr(response, "usage", None)
        if usage is not None:
            logger.debug("Tokens in=%s out=%s", usage.prompt_tokens, usage.completion_tokens)

        if self._llm.cache_enabled and content:
            database.set_llm_cache(key, self.tier, self._cfg.deployment, {"content": content}, self._cache_path)
        return content

    def complete_json(self, system: str, user: str) -> dict[str, Any]:
        """JSON-mode completion parsed into a dict.

        Raises json.JSONDecodeError when the model returns non-JSON.
        """
        return json.loads(self.complete(system, user, json_mode=True))

    def chat(
        self,
        messages: list[dict[str, Any]],
        tools: Optional[list[dict[str, Any]]] = None,
        json_mode: bool = False,
    ) -> Any:
        """Multi-turn call returning the raw assistant message (tool calls included).

        Not cached: tool results make every turn unique.
        """
        kwargs: dict[str, Any] = dict(
            model       = self._cfg.deployment,
            messages    = messages,
            temperature = self._llm.temperature,
            max_tokens  = self._llm.max_tokens,
        )
        if tools:
            kwargs["tools"] = tools
        if json_mode:
            kwargs["response_format"] = {"type": "json_object"}
        return self._create(**kwargs).choices[0].message
