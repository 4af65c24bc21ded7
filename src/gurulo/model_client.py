"""Completion client for OpenAI-compatible chat endpoints.

Architecture:
    Orchestrator -> ModelClient -> httpx POST {api_base}/chat/completions

Two tiers map to two configured models. Transient failures (429, 5xx,
timeouts, connection errors) are retried in a bounded loop; rate limits
back off on a fixed progressive schedule, everything else exponentially.
When no API key is configured, or offline mode is forced, the degraded
OfflineModelClient answers instead.
"""

import asyncio
import json
import logging
import time
from dataclasses import dataclass, field
from typing import Any, Awaitable, Callable, Protocol, Sequence

import httpx

from gurulo.config import ModelConfig
from gurulo.errors import (
    ModelAuthError,
    ModelResponseError,
    ModelTransientError,
    ModelUnavailableError,
)
from gurulo.query_router import ModelTier

logger = logging.getLogger(__name__)

ROLES = ("system", "user", "assistant")

RATE_LIMIT_DELAYS = (2.0, 5.0, 10.0)
BASE_DELAY = 2.0
MAX_DELAY = 10.0

OFFLINE_LABEL = "Offline"


@dataclass(frozen=True)
class ConversationTurn:
    """One message in a conversation."""
    role: str
    content: str

    def __post_init__(self):
        if self.role not in ROLES:
            raise ValueError(f"Unknown role: {self.role}")

    def to_message(self) -> dict[str, str]:
        return {"role": self.role, "content": self.content}

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "ConversationTurn":
        return cls(role=data.get("role", "user"), content=str(data.get("content") or ""))


@dataclass
class Completion:
    """Normalized completion result."""
    content: str
    model_label: str
    tier: ModelTier
    model: str = ""
    usage: dict[str, Any] = field(default_factory=dict)
    attempts: int = 1
    duration_ms: int = 0
    is_fallback: bool = False
    native_calls: list[dict[str, Any]] = field(default_factory=list)


class CompletionBackend(Protocol):
    async def complete(
        self,
        messages: Sequence[ConversationTurn],
        tier: ModelTier,
        request_id: str | None = None,
        stream: bool = False,
    ) -> Completion: ...

    async def complete_with_fallback(
        self,
        messages: Sequence[ConversationTurn],
        tier: ModelTier,
        request_id: str | None = None,
        stream: bool = False,
    ) -> Completion: ...


def backoff_delay(attempt: int, rate_limited: bool) -> float:
    """Seconds to wait before retry number `attempt` (0-based)."""
    if rate_limited:
        return RATE_LIMIT_DELAYS[min(attempt, len(RATE_LIMIT_DELAYS) - 1)]
    return min(BASE_DELAY * (2 ** attempt), MAX_DELAY)


def _join_parts(parts: list) -> str:
    texts = []
    for part in parts:
        if isinstance(part, str):
            texts.append(part)
        elif isinstance(part, dict) and isinstance(part.get("text"), str):
            texts.append(part["text"])
    return "".join(texts)


def extract_native_calls(data: Any) -> list[dict[str, Any]]:
    """Function-call payloads from ``choices[0].message.tool_calls``, if any."""
    try:
        calls = data["choices"][0]["message"].get("tool_calls")
    except (KeyError, IndexError, TypeError, AttributeError):
        return []
    return [c for c in calls if isinstance(c, dict)] if isinstance(calls, list) else []


def extract_content(data: Any, allow_empty: bool = False) -> str:
    """Pull the reply text out of the payload shapes backends return."""
    if not isinstance(data, dict):
        raise ModelResponseError("Completion payload is not an object")

    content: Any = None
    choices = data.get("choices")
    if isinstance(choices, list) and choices and isinstance(choices[0], dict):
        first = choices[0]
        message = first.get("message")
        if isinstance(message, dict):
            content = message.get("content")
        if content is None:
            content = first.get("text")
    if content is None:
        content = data.get("content")

    if isinstance(content, list):
        content = _join_parts(content)
    if allow_empty and content is None:
        return ""
    if not isinstance(content, str) or (not content.strip() and not allow_empty):
        raise ModelResponseError("Completion payload has no content")
    return content


def _classify_status(status: int, body: str) -> None:
    if 200 <= status < 300:
        return
    snippet = body[:200]
    if status == 429:
        raise ModelTransientError(f"Rate limited: {snippet}", status, rate_limited=True)
    if status >= 500:
        raise ModelTransientError(f"Server error {status}: {snippet}", status)
    if status in (401, 403):
        raise ModelAuthError(f"Authentication failed ({status})", status)
    raise ModelResponseError(f"Request rejected ({status}): {snippet}", status)


class ModelClient:
    """Small/large tier completion client with bounded retries."""

    def __init__(
        self,
        config: ModelConfig,
        transport: httpx.AsyncBaseTransport | None = None,
        sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep,
    ):
        self.config = config
        self._transport = transport
        self._sleep = sleep
        self._client: httpx.AsyncClient | None = None
        self._request_count = 0
        self._retry_count = 0
        self._fallback_count = 0

    def _get_client(self) -> httpx.AsyncClient:
        if self._client is None:
            self._client = httpx.AsyncClient(
                base_url=self.config.api_base.rstrip("/"),
                headers={
                    "Authorization": f"Bearer {self.config.api_key}",
                    "Content-Type": "application/json",
                },
                timeout=self.config.request_timeout,
                transport=self._transport,
            )
        return self._client

    async def aclose(self) -> None:
        if self._client is not None:
            await self._client.aclose()
            self._client = None

    def _model_for(self, tier: ModelTier) -> tuple[str, str, int]:
        if tier == ModelTier.SMALL:
            return self.config.small, self.config.small_label, self.config.small_max_tokens
        if tier == ModelTier.LARGE:
            return self.config.large, self.config.large_label, self.config.large_max_tokens
        raise ValueError(f"No model serves tier {tier}")

    def label_for(self, tier: ModelTier) -> str:
        return self._model_for(tier)[1]

    async def complete(
        self,
        messages: Sequence[ConversationTurn],
        tier: ModelTier,
        request_id: str | None = None,
        stream: bool = False,
    ) -> Completion:
        """Run one completion on `tier`, retrying transient failures."""
        model, label, max_tokens = self._model_for(tier)
        payload = {
            "model": model,
            "messages": [m.to_message() for m in messages],
            "temperature": self.config.temperature,
            "max_tokens": max_tokens,
        }
        start = time.monotonic()
        last_error: ModelTransientError | None = None
        attempt = 0

        while True:
            self._request_count += 1
            try:
                if stream:
                    content, usage, native_calls = await self._stream(payload)
                else:
                    content, usage, native_calls = await self._post(payload)
            except ModelTransientError as e:
                last_error = e
                if attempt >= self.config.max_retries:
                    break
                delay = backoff_delay(attempt, e.rate_limited)
                self._retry_count += 1
                logger.warning(
                    f"[{request_id}] {label} attempt {attempt + 1} failed ({e}); "
                    f"retrying in {delay:.0f}s"
                )
                await self._sleep(delay)
                attempt += 1
                continue

            duration_ms = int((time.monotonic() - start) * 1000)
            logger.info(f"[{request_id}] {label} completed in {duration_ms}ms (attempts={attempt + 1})")
            return Completion(
                content=content,
                model_label=label,
                tier=tier,
                model=model,
                usage=usage,
                attempts=attempt + 1,
                duration_ms=duration_ms,
                native_calls=native_calls,
            )

        logger.error(f"[{request_id}] {label} unavailable after {attempt + 1} attempts: {last_error}")
        raise ModelUnavailableError(
            f"{label} unavailable after {attempt + 1} attempts",
            attempts=attempt + 1,
            last_error=last_error,
        )

    async def complete_with_fallback(
        self,
        messages: Sequence[ConversationTurn],
        tier: ModelTier,
        request_id: str | None = None,
        stream: bool = False,
    ) -> Completion:
        """Like complete(), but a transient LARGE failure falls back to SMALL once."""
        try:
            return await self.complete(messages, tier, request_id=request_id, stream=stream)
        except ModelTransientError as e:
            if tier != ModelTier.LARGE:
                raise
            self._fallback_count += 1
            logger.warning(f"[{request_id}] Large model failed ({e}); falling back to small model")
            completion = await self.complete(messages, ModelTier.SMALL, request_id=request_id, stream=stream)
            completion.is_fallback = True
            return completion

    async def _post(self, payload: dict[str, Any]) -> tuple[str, dict[str, Any], list[dict[str, Any]]]:
        client = self._get_client()
        try:
            response = await client.post(
                "/chat/completions", json=payload, timeout=self.config.request_timeout
            )
        except httpx.TimeoutException as e:
            raise ModelTransientError(f"Request timed out: {e}") from e
        except httpx.TransportError as e:
            raise ModelTransientError(f"Connection failed: {e}") from e

        _classify_status(response.status_code, response.text)
        try:
            data = response.json()
        except ValueError as e:
            raise ModelResponseError("Malformed JSON in completion response", response.status_code) from e
        usage = data.get("usage") if isinstance(data, dict) else None
        native_calls = extract_native_calls(data)
        content = extract_content(data, allow_empty=bool(native_calls))
        return content, usage if isinstance(usage, dict) else {}, native_calls

    async def _stream(self, payload: dict[str, Any]) -> tuple[str, dict[str, Any], list[dict[str, Any]]]:
        """Accumulate server-sent delta chunks into one reply."""
        client = self._get_client()
        pieces: list[str] = []
        usage: dict[str, Any] = {}
        try:
            async with client.stream(
                "POST",
                "/chat/completions",
                json={**payload, "stream": True},
                timeout=self.config.stream_timeout,
            ) as response:
                if response.status_code >= 300:
                    body = (await response.aread()).decode("utf-8", errors="ignore")
                    _classify_status(response.status_code, body)
                async for line in response.aiter_lines():
                    line = line.strip()
                    if not line.startswith("data:"):
                        continue
                    data = line[len("data:"):].strip()
                    if data == "[DONE]":
                        break
                    try:
                        chunk = json.loads(data)
                    except json.JSONDecodeError:
                        logger.debug(f"Skipping malformed stream chunk: {data[:80]}")
                        continue
                    if isinstance(chunk.get("usage"), dict):
                        usage = chunk["usage"]
                    for choice in chunk.get("choices") or []:
                        delta = (choice.get("delta") or {}).get("content")
                        if isinstance(delta, str):
                            pieces.append(delta)
        except httpx.TimeoutException as e:
            raise ModelTransientError(f"Stream timed out: {e}") from e
        except httpx.TransportError as e:
            raise ModelTransientError(f"Stream connection failed: {e}") from e

        content = "".join(pieces)
        if not content.strip():
            raise ModelResponseError("Stream produced no content")
        return content, usage, []

    def get_stats(self) -> dict[str, Any]:
        """Get client statistics."""
        return {
            "requests": self._request_count,
            "retries": self._retry_count,
            "fallbacks": self._fallback_count,
            "api_base": self.config.api_base,
        }


class OfflineModelClient:
    """Degraded client used when no backend credentials are available."""

    def __init__(self, reason: str = "offline_mode"):
        self.reason = reason

    def label_for(self, tier: ModelTier) -> str:
        return OFFLINE_LABEL

    async def complete(
        self,
        messages: Sequence[ConversationTurn],
        tier: ModelTier,
        request_id: str | None = None,
        stream: bool = False,
    ) -> Completion:
        if tier not in (ModelTier.SMALL, ModelTier.LARGE):
            raise ValueError(f"No model serves tier {tier}")
        last_user = next((m.content for m in reversed(messages) if m.role == "user"), "")
        preview = " ".join(last_user.split())[:160]
        parts = ["🔌 Offline mode is active: no language model is configured."]
        if preview:
            parts.append(f'Your last message: "{preview}{"…" if len(last_user) > 160 else ""}"')
        parts.append("Set GROQ_API_KEY (or unset AI_OFFLINE_MODE) to enable full answers.")
        logger.warning(f"[{request_id}] Offline reply ({self.reason})")
        return Completion(
            content="\n\n".join(parts),
            model_label=OFFLINE_LABEL,
            tier=tier,
            model="offline",
            attempts=0,
        )

    async def complete_with_fallback(
        self,
        messages: Sequence[ConversationTurn],
        tier: ModelTier,
        request_id: str | None = None,
        stream: bool = False,
    ) -> Completion:
        return await self.complete(messages, tier, request_id=request_id, stream=stream)

    def get_stats(self) -> dict[str, Any]:
        return {"offline": True, "reason": self.reason}

    async def aclose(self) -> None:
        return None


def create_model_client(config: ModelConfig, **kwargs) -> "ModelClient | OfflineModelClient":
    """Pick the live client, or the offline one when it cannot work."""
    if config.offline_mode:
        return OfflineModelClient(reason="offline_mode")
    if not config.api_key:
        logger.warning("No API key configured; using offline model client")
        return OfflineModelClient(reason="missing_key")
    return ModelClient(config, **kwargs)
