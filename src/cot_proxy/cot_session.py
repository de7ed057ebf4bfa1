from __future__ import annotations

import asyncio
import random
from collections.abc import Awaitable, Callable
from typing import Any

import httpx
import structlog

from .errors import AuthenticationError, ChainOfThoughtError, RateLimitError, UpstreamProtocolError

log = structlog.get_logger()


class CoTSession:
    """
    OpenAI-compatible chat client for the auxiliary chain-of-thought model.

    Retries 429, 5xx and transport failures with exponential backoff; returns the
    first choice's text or raises `ChainOfThoughtError` when it is empty or refused.
    """

    def __init__(
        self,
        *,
        base_url: str,
        api_key: str | None,
        client: httpx.AsyncClient | None = None,
        timeout_seconds: float = 120,
        max_attempts: int = 3,
        backoff_initial_seconds: float = 0.5,
        backoff_max_seconds: float = 8.0,
        sleeper: Callable[[float], Awaitable[None]] | None = None,
    ):
        self.api_key = api_key
        self._owns_client = client is None
        self._client = client or httpx.AsyncClient(timeout=timeout_seconds)
        self._base_url = base_url.rstrip("/")
        self._timeout_seconds = timeout_seconds
        self._max_attempts = max(1, max_attempts)
        self._backoff_initial_seconds = max(0.0, backoff_initial_seconds)
        self._backoff_max_seconds = max(self._backoff_initial_seconds, backoff_max_seconds)
        self._sleep: Callable[[float], Awaitable[None]] = sleeper or asyncio.sleep

    async def close(self) -> None:
        if self._owns_client:
            await self._client.aclose()

    def _compute_backoff(self, attempt_index: int) -> float:
        base = float(min(self._backoff_max_seconds, self._backoff_initial_seconds * (2**attempt_index)))
        jitter = float(random.uniform(0.0, min(0.25, base * 0.1))) if base > 0 else 0.0
        return base + jitter

    def _headers(self) -> dict[str, str]:
        headers = {"Accept": "application/json"}
        if self.api_key:
            headers["Authorization"] = f"Bearer {self.api_key}"
        return headers

    async def complete(
        self,
        *,
        model: str,
        messages: list[dict[str, str]],
        max_tokens: int | None = None,
        temperature: float | None = None,
    ) -> str:
        payload: dict[str, Any] = {"model": model, "messages": messages, "stream": False}
        if max_tokens is not None:
            payload["max_tokens"] = max_tokens
        if temperature is not None:
            payload["temperature"] = temperature

        url = f"{self._base_url}/chat/completions"
        data: Any = None
        for attempt in range(self._max_attempts):
            last_attempt = attempt >= self._max_attempts - 1
            try:
                resp = await self._client.post(
                    url, json=payload, headers=self._headers(), timeout=self._timeout_seconds
                )
            except httpx.TimeoutException as e:
                if last_attempt:
                    raise UpstreamProtocolError("Chain-of-thought request timed out.") from e
                await self._sleep(self._compute_backoff(attempt))
                continue
            except httpx.HTTPError as e:
                if last_attempt:
                    raise UpstreamProtocolError("Chain-of-thought request failed.") from e
                await self._sleep(self._compute_backoff(attempt))
                continue

            if resp.status_code in (401, 403):
                raise AuthenticationError("Chain-of-thought model rejected credentials (check COT_API_KEY).")

            if resp.status_code == 429:
                retry_after = resp.headers.get("retry-after")
                retry_seconds = int(retry_after) if retry_after and retry_after.isdigit() else None
                if last_attempt:
                    raise RateLimitError(retry_after_seconds=retry_seconds)
                await self._sleep(retry_seconds if retry_seconds is not None else self._compute_backoff(attempt))
                continue

            if 500 <= resp.status_code <= 599:
                if last_attempt:
                    log.warning("cot_upstream_5xx", status_code=resp.status_code, body=resp.text[:500])
                    raise UpstreamProtocolError(f"Chain-of-thought upstream error {resp.status_code}.")
                await self._sleep(self._compute_backoff(attempt))
                continue

            if resp.status_code >= 400:
                raise UpstreamProtocolError(f"Chain-of-thought upstream error {resp.status_code}.")

            try:
                data = resp.json()
            except ValueError as e:
                raise UpstreamProtocolError("Chain-of-thought response is not JSON.") from e
            break

        return self._extract_text(data)

    @staticmethod
    def _extract_text(data: Any) -> str:
        if not isinstance(data, dict):
            raise UpstreamProtocolError("Chain-of-thought response must be a JSON object.")
        choices = data.get("choices")
        if not isinstance(choices, list) or not choices:
            raise ChainOfThoughtError("Chain-of-thought model returned no choices.")

        choice = choices[0] if isinstance(choices[0], dict) else {}
        if choice.get("finish_reason") == "content_filter":
            raise ChainOfThoughtError("Chain-of-thought model refused to answer.")
        message = choice.get("message")
        if not isinstance(message, dict):
            raise ChainOfThoughtError("Chain-of-thought model returned no message.")
        if message.get("refusal"):
            raise ChainOfThoughtError("Chain-of-thought model refused to answer.")

        text = message.get("content")
        if not isinstance(text, str) or not text.strip():
            raise ChainOfThoughtError("Chain-of-thought model returned an empty completion.")
        return text
