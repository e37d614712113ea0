"""LLM adapter — the model-call collaborator used by analysis and replay.

Talks to any OpenAI-compatible chat completions endpoint, prices each call from
the static model catalog, and turns transport/HTTP errors into classified
ModelCallFailure errors.
"""

from __future__ import annotations

import asyncio
import logging
import threading
import time
from collections import deque
from dataclasses import dataclass
from typing import Protocol

import httpx

from kpitrace.config import settings
from kpitrace.engine.errors import ModelCallErrorKind, ModelCallFailure, SessionConfigError

logger = logging.getLogger(__name__)

SYSTEM_PROMPT = "You are a financial analyst extracting KPIs from CSV data. Always return valid JSON."


@dataclass(frozen=True)
class ModelConfig:
    model: str
    temperature: float
    max_tokens: int
    cost_per_1k_input: float
    cost_per_1k_output: float


MODELS: dict[str, ModelConfig] = {
    "gpt-4.1": ModelConfig("gpt-4.1", 0, 4096, 0.002, 0.008),
    "gpt-4.1-mini": ModelConfig("gpt-4.1-mini", 0, 4096, 0.0004, 0.0016),
    "gpt-4o": ModelConfig("gpt-4o", 0, 4096, 0.0025, 0.010),
    "gpt-4o-mini": ModelConfig("gpt-4o-mini", 0, 4096, 0.00015, 0.0006),
    # Non-deterministic variant, kept for comparisons
    "gpt-4o-mini-creative": ModelConfig("gpt-4o-mini", 0.7, 4096, 0.00015, 0.0006),
}


def get_model_config(model_key: str) -> ModelConfig:
    config = MODELS.get(model_key)
    if config is None:
        raise SessionConfigError(f"Unknown model: {model_key}. Choose from: {list(MODELS)}")
    return config


@dataclass
class ModelCallResult:
    content: str
    model: str
    temperature: float
    input_tokens: int = 0
    output_tokens: int = 0
    total_tokens: int = 0
    cost: float = 0.0
    latency_ms: float = 0.0


class ModelCaller(Protocol):
    async def call(
        self, prompt: str, model_key: str, *, temperature: float | None = None,
    ) -> ModelCallResult: ...


def classify_http_error(exc: Exception) -> ModelCallFailure:
    """Map an httpx exception onto the model-call error taxonomy."""
    if isinstance(exc, httpx.TimeoutException):
        return ModelCallFailure(ModelCallErrorKind.TIMEOUT, "Request timed out. The data might be too large.")
    if isinstance(exc, httpx.ConnectError):
        return ModelCallFailure(ModelCallErrorKind.UNAVAILABLE, f"Cannot reach model endpoint: {exc}")
    if isinstance(exc, httpx.HTTPStatusError):
        status = exc.response.status_code
        body = exc.response.text
        if status == 429:
            return ModelCallFailure(ModelCallErrorKind.RATE_LIMITED, "Rate limit exceeded. Please try again in a moment.")
        if status == 401:
            return ModelCallFailure(ModelCallErrorKind.UNAUTHORIZED, "Invalid API key. Please check your configuration.")
        if status == 503:
            return ModelCallFailure(ModelCallErrorKind.UNAVAILABLE, "Model service temporarily unavailable.")
        if "context_length_exceeded" in body:
            return ModelCallFailure(ModelCallErrorKind.INPUT_TOO_LARGE, "Input too large. Please use a smaller CSV file.")
        return ModelCallFailure(ModelCallErrorKind.UNKNOWN, f"HTTP {status}: {body[:200]}")
    return ModelCallFailure(ModelCallErrorKind.UNKNOWN, str(exc))


class RequestThrottle:
    """Sliding-window limit on requests per minute."""

    def __init__(self, per_minute: int, window_s: float = 60.0):
        self.per_minute = per_minute
        self.window_s = window_s
        self._sent: deque[float] = deque()
        self._lock = asyncio.Lock()

    async def acquire(self):
        if self.per_minute <= 0:
            return
        async with self._lock:
            while True:
                now = time.monotonic()
                while self._sent and now - self._sent[0] >= self.window_s:
                    self._sent.popleft()
                if len(self._sent) < self.per_minute:
                    self._sent.append(now)
                    return
                await asyncio.sleep(self.window_s - (now - self._sent[0]))


class LLMAdapter:
    """Async OpenAI-compatible client for KPI extraction prompts."""

    def __init__(
        self,
        base_url: str | None = None,
        api_key: str | None = None,
        timeout: int | None = None,
        requests_per_minute: int | None = None,
        transport: httpx.AsyncBaseTransport | None = None,
    ):
        self.base_url = (base_url or settings.llm_base_url).rstrip("/")
        self.api_key = api_key if api_key is not None else settings.llm_api_key
        self.timeout = timeout or settings.llm_timeout
        self.throttle = RequestThrottle(
            requests_per_minute if requests_per_minute is not None else settings.llm_requests_per_minute
        )
        self._transport = transport

    def _headers(self) -> dict[str, str]:
        h = {"Content-Type": "application/json"}
        if self.api_key:
            h["Authorization"] = f"Bearer {self.api_key}"
        return h

    def _make_client(self) -> httpx.AsyncClient:
        """Create an httpx client, bypassing proxy for local endpoints."""
        is_local = any(h in self.base_url for h in ("localhost", "127.0.0.1", "0.0.0.0", "host.docker.internal"))
        return httpx.AsyncClient(timeout=self.timeout, trust_env=not is_local, transport=self._transport)

    async def call(
        self, prompt: str, model_key: str, *, temperature: float | None = None,
    ) -> ModelCallResult:
        """One JSON-mode chat completion, priced from the model catalog."""
        config = get_model_config(model_key)
        temp = temperature if temperature is not None else config.temperature
        payload = {
            "model": config.model,
            "temperature": temp,
            "max_tokens": config.max_tokens,
            "messages": [
                {"role": "system", "content": SYSTEM_PROMPT},
                {"role": "user", "content": prompt},
            ],
            "response_format": {"type": "json_object"},
        }

        await self.throttle.acquire()
        t0 = time.perf_counter()
        try:
            async with self._make_client() as client:
                resp = await client.post(
                    f"{self.base_url}/chat/completions",
                    json=payload,
                    headers=self._headers(),
                )
                resp.raise_for_status()
                data = resp.json()
        except httpx.HTTPError as e:
            failure = classify_http_error(e)
            logger.warning(f"LLM call to {config.model} failed: {failure}")
            raise failure from e
        except ValueError as e:
            raise ModelCallFailure(ModelCallErrorKind.UNKNOWN, f"Malformed response body: {e}") from e

        latency_ms = (time.perf_counter() - t0) * 1000
        usage = data.get("usage") or {}
        input_tokens = usage.get("prompt_tokens", 0)
        output_tokens = usage.get("completion_tokens", 0)
        total_tokens = usage.get("total_tokens", input_tokens + output_tokens)

        if total_tokens > settings.llm_token_limit:
            logger.warning(f"High token usage: {total_tokens} tokens used")

        cost = (
            input_tokens / 1000 * config.cost_per_1k_input
            + output_tokens / 1000 * config.cost_per_1k_output
        )
        choices = data.get("choices") or [{}]
        content = (choices[0].get("message") or {}).get("content") or "{}"

        return ModelCallResult(
            content=content,
            model=data.get("model", config.model),
            temperature=temp,
            input_tokens=input_tokens,
            output_tokens=output_tokens,
            total_tokens=total_tokens,
            cost=cost,
            latency_ms=latency_ms,
        )


# Thread-safe singleton default adapter
_default_adapter: LLMAdapter | None = None
_adapter_lock = threading.Lock()


def get_llm_adapter(**kwargs) -> LLMAdapter:
    global _default_adapter
    if kwargs:
        return LLMAdapter(**kwargs)
    if _default_adapter is None:
        with _adapter_lock:
            if _default_adapter is None:
                _default_adapter = LLMAdapter()
    return _default_adapter
