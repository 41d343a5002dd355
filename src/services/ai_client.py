"""Streaming client for the LLM proxy, with one-step provider failover.

Every turn goes to the primary provider first.  If that attempt fails in
any way (transport error, non-2xx status, a stream that never produced a
decodable chunk, or an upstream chunk reporting a fatal error) the caller
gets a single notice chunk and the whole exchange is replayed against the
fallback provider.  Each call of :meth:`AIAgentClient.process_message_stream`
ends with exactly one chunk where ``done`` is true.

Control markers (``[ESCALATE: ...]``, ``[QUICK_REPLIES: ...]``) are filtered
out of the forwarded deltas and surface on the terminal chunk instead.
"""

from __future__ import annotations

import logging
import time
from collections.abc import AsyncIterator
from typing import Any

import httpx
from pydantic import BaseModel, ValidationError

from src.config import AIAgentConfig
from src.models import ROLE_USER, ConversationMessage
from src.prompts import get_system_prompt
from src.services.estimators import local_sentiment, local_summary
from src.services.markers import MarkerScanner, strip_markers
from src.services.metrics import metrics
from src.services.schemas import (
    AIAgentResponse,
    AIChatRequest,
    AIStreamChunk,
    ConversationContext,
    HealthCheckResult,
    SentimentRequest,
    SentimentResult,
    SummaryRequest,
)
from src.services.sse import iter_sse_data

logger = logging.getLogger(__name__)

STREAM_PATH = "/api/v1/chat/stream"
SUMMARY_PATH = "/api/v1/summarize"
SENTIMENT_PATH = "/api/v1/sentiment"
HEALTH_PATH = "/api/v1/health"

FALLBACK_NOTICE = "Primary provider unavailable, switching to {provider}..."
UNAVAILABLE_MESSAGE = "AI service unavailable. Please try again later or speak with an agent."

# Providers do not report a confidence score.
PLACEHOLDER_CONFIDENCE = 0.85

_SERVICE = "ai_proxy"


class AIServiceError(Exception):
    """Raised when no provider produced any text for a turn."""


class ProviderStreamError(Exception):
    """One provider's attempt at a turn failed; the next provider is tried."""


def _now_ms() -> int:
    return int(time.time() * 1000)


def _elapsed_ms(started: float) -> float:
    return (time.perf_counter() - started) * 1000


class _Attempt:
    """Bookkeeping for one provider's attempt at a turn."""

    def __init__(self, provider: str) -> None:
        self.provider = provider
        self.scanner = MarkerScanner()
        self.decoded = 0
        self.upstream_done: AIStreamChunk | None = None

    def terminal_chunk(self) -> AIStreamChunk:
        """Merge what the scanner found with any metadata the proxy sent on ``done``."""
        upstream = self.upstream_done or AIStreamChunk()
        should_escalate = self.scanner.should_escalate or upstream.should_escalate
        reason = self.scanner.escalation_reason or upstream.escalation_reason
        replies = self.scanner.suggested_replies or list(upstream.suggested_replies or [])
        return AIStreamChunk(
            done=True,
            should_escalate=should_escalate,
            escalation_reason=reason if should_escalate else None,
            suggested_replies=replies,
            provider=self.provider,
        )


class AIAgentClient:
    """Async client for the LLM proxy.

    Parameters
    ----------
    config:
        Provider names, generation settings and the proxy URL.
    http_client:
        Optional pre-built ``httpx.AsyncClient`` (tests pass one backed by
        ``httpx.MockTransport``).  A client passed in is not closed by
        :meth:`aclose`.
    """

    def __init__(
        self,
        config: AIAgentConfig | None = None,
        http_client: httpx.AsyncClient | None = None,
    ) -> None:
        self._config = config or AIAgentConfig()
        self._owns_client = http_client is None
        self._client = http_client or httpx.AsyncClient(
            headers={"Content-Type": "application/json"},
            timeout=self._config.request_timeout_seconds,
        )
        self._system_prompt = get_system_prompt(self._config.system_prompt)
        self.current_provider: str = self._config.primary_provider
        self.is_available: bool = True

    async def aclose(self) -> None:
        if self._owns_client:
            await self._client.aclose()

    async def __aenter__(self) -> AIAgentClient:
        return self

    async def __aexit__(self, *exc_info) -> None:
        await self.aclose()

    def _url(self, path: str) -> str:
        return self._config.proxy_base_url.rstrip("/") + path

    # ── Streaming turn ───────────────────────────────────────────────

    async def process_message_stream(
        self,
        user_message: str,
        context: ConversationContext,
    ) -> AsyncIterator[AIStreamChunk]:
        """Stream one virtual-agent turn.

        Yields delta chunks, at most one fallback notice (``error`` set,
        ``done`` false), and finally exactly one ``done`` chunk.
        """
        messages = [
            *context.messages,
            ConversationMessage(role=ROLE_USER, content=user_message, timestamp=_now_ms()),
        ]
        primary = self._config.primary_provider
        fallback = self._config.fallback_provider

        for provider in (primary, fallback):
            attempt = _Attempt(provider)
            failure: Exception | None = None
            try:
                async for chunk in self._stream_provider(attempt, messages, context.session_id):
                    yield chunk
            except (httpx.HTTPError, ProviderStreamError) as exc:
                failure = exc

            if failure is None:
                tail = attempt.scanner.finish()
                if tail:
                    yield AIStreamChunk(delta=tail, provider=provider)
                self.current_provider = provider
                self.is_available = True
                yield attempt.terminal_chunk()
                return

            logger.warning("AI provider %s failed: %s", provider, failure)
            if provider == primary:
                metrics.record_fallback(primary, fallback)
                self.current_provider = fallback
                yield AIStreamChunk(error=FALLBACK_NOTICE.format(provider=fallback), provider=fallback)
                continue

            self.is_available = False
            logger.error("All AI providers failed for session %s", context.session_id)
            yield AIStreamChunk(done=True, error=UNAVAILABLE_MESSAGE, provider=provider)
            return

    async def _stream_provider(
        self,
        attempt: _Attempt,
        messages: list[ConversationMessage],
        session_id: str,
    ) -> AsyncIterator[AIStreamChunk]:
        request = AIChatRequest(
            messages=messages,
            provider=attempt.provider,
            max_tokens=self._config.max_tokens,
            temperature=self._config.temperature,
            system_prompt=self._system_prompt,
            session_id=session_id,
        )
        operation = f"POST {STREAM_PATH}"
        started = time.perf_counter()
        try:
            async with self._client.stream(
                "POST",
                self._url(STREAM_PATH),
                json=request.model_dump(mode="json", by_alias=True, exclude_none=True),
                headers={"X-Provider": attempt.provider},
            ) as response:
                if response.status_code >= 400:
                    await response.aread()
                    raise ProviderStreamError(
                        f"{attempt.provider} returned HTTP {response.status_code}"
                    )
                async for payload in iter_sse_data(response.aiter_lines()):
                    chunk = self._decode(payload, attempt.provider)
                    if chunk is None:
                        continue
                    attempt.decoded += 1
                    if chunk.error and chunk.done:
                        raise ProviderStreamError(chunk.error)
                    if chunk.error:
                        logger.warning("Upstream %s reported: %s", attempt.provider, chunk.error)
                        continue
                    if chunk.delta:
                        visible = attempt.scanner.feed(chunk.delta)
                        if visible:
                            yield AIStreamChunk(delta=visible, provider=attempt.provider)
                    if chunk.done:
                        attempt.upstream_done = chunk
                        break
            if attempt.decoded == 0:
                raise ProviderStreamError(f"{attempt.provider} stream had no decodable chunks")
        except (httpx.HTTPError, ProviderStreamError) as exc:
            metrics.record_failure(
                _SERVICE, operation, error_type=type(exc).__name__, latency_ms=_elapsed_ms(started),
            )
            raise
        metrics.record_success(_SERVICE, operation, latency_ms=_elapsed_ms(started))

    @staticmethod
    def _decode(payload: str, provider: str) -> AIStreamChunk | None:
        try:
            return AIStreamChunk.model_validate_json(payload)
        except ValidationError:
            logger.warning("Skipping malformed stream payload from %s: %.80s", provider, payload)
            metrics.record_malformed_chunk(provider)
            return None

    async def process_message(
        self,
        user_message: str,
        context: ConversationContext,
    ) -> AIAgentResponse:
        """Collect a whole turn into one response.

        Raises:
            AIServiceError: if no provider produced any text.
        """
        parts: list[str] = []
        error: str | None = None
        provider = self.current_provider
        terminal = AIStreamChunk(done=True)

        async for chunk in self.process_message_stream(user_message, context):
            if chunk.provider:
                provider = chunk.provider
            if chunk.done:
                terminal = chunk
                error = chunk.error or error
            elif chunk.error:
                parts.clear()
                error = chunk.error
            elif chunk.delta:
                parts.append(chunk.delta)

        text = strip_markers("".join(parts))
        if not text and error:
            raise AIServiceError(error)
        return AIAgentResponse(
            response_text=text,
            should_escalate=terminal.should_escalate,
            escalation_reason=terminal.escalation_reason,
            suggested_replies=list(terminal.suggested_replies or []),
            confidence=PLACEHOLDER_CONFIDENCE,
            provider=provider,
        )

    # ── Auxiliary endpoints ──────────────────────────────────────────

    async def _post_json(self, path: str, body: BaseModel) -> Any:
        operation = f"POST {path}"
        started = time.perf_counter()
        try:
            response = await self._client.post(
                self._url(path),
                json=body.model_dump(mode="json", by_alias=True, exclude_none=True),
            )
            response.raise_for_status()
            data = response.json()
        except (httpx.HTTPError, ValueError) as exc:
            metrics.record_failure(
                _SERVICE, operation, error_type=type(exc).__name__, latency_ms=_elapsed_ms(started),
            )
            raise
        metrics.record_success(_SERVICE, operation, latency_ms=_elapsed_ms(started))
        return data

    async def _probe(self, provider: str) -> bool:
        started = time.perf_counter()
        try:
            response = await self._client.get(
                self._url(HEALTH_PATH), headers={"X-Provider": provider},
            )
        except httpx.HTTPError as exc:
            logger.info("Health check for %s failed: %s", provider, exc)
            metrics.record_failure(_SERVICE, f"GET {HEALTH_PATH}", error_type=type(exc).__name__)
            return False
        if not response.is_success:
            logger.info("Health check for %s returned %d", provider, response.status_code)
            metrics.record_failure(
                _SERVICE, f"GET {HEALTH_PATH}", error_type=f"HTTP{response.status_code}",
                latency_ms=_elapsed_ms(started),
            )
            return False
        metrics.record_success(_SERVICE, f"GET {HEALTH_PATH}", latency_ms=_elapsed_ms(started))
        return True

    async def health_check(self) -> HealthCheckResult:
        """Probe both providers and report which one would serve the next turn."""
        primary = self._config.primary_provider
        fallback = self._config.fallback_provider
        primary_ok = await self._probe(primary)
        fallback_ok = await self._probe(fallback)

        if primary_ok:
            active = primary
        elif fallback_ok:
            active = fallback
        else:
            active = primary
        self.is_available = primary_ok or fallback_ok
        return HealthCheckResult(
            primary_available=primary_ok,
            fallback_available=fallback_ok,
            active_provider=active,
        )

    async def generate_summary(self, context: ConversationContext) -> str:
        """Ask the proxy for a summary, falling back to a local one on any failure."""
        request = SummaryRequest(messages=context.messages, provider=self.current_provider)
        try:
            data = await self._post_json(SUMMARY_PATH, request)
            summary = data.get("summary") if isinstance(data, dict) else None
            if isinstance(summary, str) and summary.strip():
                return summary
            logger.warning("Summary response had no usable 'summary' field")
        except (httpx.HTTPError, ValueError) as exc:
            logger.warning("Summary generation failed, using local summary: %s", exc)
        return local_summary(context.messages)

    async def analyze_sentiment(self, context: ConversationContext) -> SentimentResult:
        """Ask the proxy for sentiment, falling back to keyword matching on any failure."""
        try:
            data = await self._post_json(SENTIMENT_PATH, SentimentRequest(messages=context.messages))
            return SentimentResult.model_validate(data)
        except (httpx.HTTPError, ValueError) as exc:
            logger.warning("Sentiment analysis failed, using local estimate: %s", exc)
        return local_sentiment(context.messages)
