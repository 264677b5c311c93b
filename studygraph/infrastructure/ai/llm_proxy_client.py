"""
LLM invocation primitive.

Sends one chat-completion request through the intermediary proxy and returns
the text content of the first choice. No business logic lives here: callers
parse and validate the text themselves even when JSON mode was requested.
"""

from __future__ import annotations

import time
from typing import Any, Dict, List, Optional

import httpx
import structlog
from tenacity import AsyncRetrying, RetryCallState, retry_if_exception_type, stop_after_attempt, wait_incrementing

from studygraph.core.settings import settings
from studygraph.domain.exceptions import (
    EmptyModelOutputError,
    LLMConfigurationError,
    LLMServiceError,
    TransientServiceError,
)
from studygraph.domain.ports import ILLMClient
from studygraph.infrastructure.concurrency.rate_limiter import (
    CallSpacingLimiter,
    get_call_spacing_limiter,
)
from studygraph.infrastructure.observability.generation_logging import compact_error

logger = structlog.get_logger(__name__)


class _RateLimited(Exception):
    def __init__(self, detail: str):
        super().__init__(detail)
        self.detail = detail


def _error_detail(body: Any, fallback: str) -> str:
    if isinstance(body, dict):
        error = body.get("error")
        if isinstance(error, dict):
            return compact_error(error.get("message") or error, limit=240)
        if error:
            return compact_error(error, limit=240)
    return compact_error(fallback, limit=240)


def _content_text(content: Any) -> str:
    if isinstance(content, str):
        return content
    if isinstance(content, list):
        parts = []
        for part in content:
            if isinstance(part, dict) and isinstance(part.get("text"), str):
                parts.append(part["text"])
            elif isinstance(part, str):
                parts.append(part)
        return "".join(parts)
    return ""


class LLMProxyClient(ILLMClient):
    """Chat-completion client for the proxy endpoint with self-imposed rate limiting."""

    def __init__(
        self,
        base_url: Optional[str] = None,
        api_key: Optional[str] = None,
        *,
        model: Optional[str] = None,
        temperature: Optional[float] = None,
        timeout_seconds: Optional[float] = None,
        max_rate_limit_retries: Optional[int] = None,
        rate_limit_backoff_seconds: Optional[float] = None,
        limiter: Optional[CallSpacingLimiter] = None,
        http_client: Optional[httpx.AsyncClient] = None,
    ):
        self.base_url = str(base_url or getattr(settings, "LLM_PROXY_URL", "") or "").strip()
        self.api_key = str(api_key or getattr(settings, "LLM_PROXY_API_KEY", "") or "").strip()
        self.model = str(model or getattr(settings, "GRAPH_GENERATION_MODEL", "gpt-4o-mini"))
        self.temperature = float(
            temperature
            if temperature is not None
            else getattr(settings, "GRAPH_GENERATION_TEMPERATURE", 0.7)
        )
        self.timeout_seconds = float(
            timeout_seconds or getattr(settings, "LLM_TIMEOUT_SECONDS", 180.0) or 180.0
        )
        self._max_retries = max(
            0,
            int(
                max_rate_limit_retries
                if max_rate_limit_retries is not None
                else getattr(settings, "LLM_RATE_LIMIT_MAX_RETRIES", 2)
            ),
        )
        self._backoff_seconds = max(
            0.0,
            float(
                rate_limit_backoff_seconds
                if rate_limit_backoff_seconds is not None
                else getattr(settings, "LLM_RATE_LIMIT_BACKOFF_SECONDS", 3.0)
            ),
        )
        self._limiter = limiter or get_call_spacing_limiter()
        self._http_client = http_client

    async def aclose(self) -> None:
        if self._http_client is not None:
            await self._http_client.aclose()
            self._http_client = None

    def _headers(self) -> Dict[str, str]:
        headers = {"Content-Type": "application/json"}
        if self.api_key:
            headers["Authorization"] = f"Bearer {self.api_key}"
        return headers

    async def complete(
        self,
        messages: List[Dict[str, Any]],
        *,
        max_tokens: int,
        model: Optional[str] = None,
        temperature: Optional[float] = None,
        json_mode: bool = True,
    ) -> str:
        if not messages:
            raise ValueError("messages must not be empty")
        if int(max_tokens) <= 0:
            raise ValueError("max_tokens must be positive")
        if not self.base_url:
            raise LLMConfigurationError("LLM_PROXY_URL is not configured")

        payload: Dict[str, Any] = {
            "messages": messages,
            "model": model or self.model,
            "temperature": self.temperature if temperature is None else float(temperature),
            "max_tokens": int(max_tokens),
        }
        if json_mode:
            payload["response_format"] = {"type": "json_object"}

        started = time.perf_counter()
        try:
            async for attempt in AsyncRetrying(
                retry=retry_if_exception_type(_RateLimited),
                stop=stop_after_attempt(self._max_retries + 1),
                wait=wait_incrementing(start=self._backoff_seconds, increment=self._backoff_seconds),
                before_sleep=self._log_rate_limit_retry,
                reraise=True,
            ):
                with attempt:
                    data = await self._post_once(payload)
        except _RateLimited as exc:
            logger.warning("llm_rate_limit_exhausted", retries=self._max_retries, detail=exc.detail)
            raise TransientServiceError(f"rate limited by LLM proxy: {exc.detail}") from exc

        content, finish_reason = self._first_choice(data)
        logger.info(
            "llm_call_completed",
            model=payload["model"],
            chars=len(content),
            finish_reason=finish_reason,
            elapsed_ms=round((time.perf_counter() - started) * 1000),
        )
        if finish_reason == "length":
            logger.warning("llm_output_truncated", model=payload["model"], max_tokens=payload["max_tokens"])
        if not content.strip():
            raise EmptyModelOutputError("LLM returned empty content")
        return content

    def _log_rate_limit_retry(self, retry_state: RetryCallState) -> None:
        delay = retry_state.next_action.sleep if retry_state.next_action else 0.0
        logger.warning(
            "llm_rate_limit_retry",
            attempt=retry_state.attempt_number,
            max_retries=self._max_retries,
            delay=round(float(delay), 2),
        )

    async def _post_once(self, payload: Dict[str, Any]) -> Dict[str, Any]:
        # Every attempt, retries included, takes its own spacing slot.
        await self._limiter.wait_turn()
        try:
            if self._http_client is not None:
                response = await self._http_client.post(
                    self.base_url, json=payload, headers=self._headers()
                )
            else:
                async with httpx.AsyncClient(timeout=self.timeout_seconds) as client:
                    response = await client.post(self.base_url, json=payload, headers=self._headers())
        except httpx.TimeoutException as exc:
            raise TransientServiceError(f"LLM proxy timed out: {compact_error(exc)}") from exc
        except httpx.HTTPError as exc:
            raise LLMServiceError(f"LLM proxy transport error: {compact_error(exc)}") from exc

        try:
            body: Any = response.json()
        except ValueError:
            body = None

        status = response.status_code
        if status < 400 and isinstance(body, dict) and body.get("error"):
            # Proxy reports upstream failures as {error, status} bodies.
            try:
                status = int(body.get("status") or 502)
            except (TypeError, ValueError):
                status = 502

        detail = _error_detail(body, response.text)
        if status == 429:
            raise _RateLimited(detail)
        if status in (401, 403):
            raise LLMConfigurationError(f"LLM proxy rejected credentials ({status}): {detail}")
        if status >= 400:
            raise LLMServiceError(f"llm_proxy_error:{status}:{detail}", status_code=status)
        if not isinstance(body, dict):
            raise LLMServiceError("LLM proxy returned a non-JSON body", status_code=status)
        return body

    @staticmethod
    def _first_choice(data: Dict[str, Any]) -> tuple[str, Optional[str]]:
        choices = data.get("choices")
        first = choices[0] if isinstance(choices, list) and choices else None
        if not isinstance(first, dict):
            return "", None
        message = first.get("message") if isinstance(first.get("message"), dict) else {}
        finish_reason = first.get("finish_reason")
        return _content_text(message.get("content")), (str(finish_reason) if finish_reason else None)
