"""Resilient Anthropic Client — AsyncAnthropic streaming with setup retry and error mapping.

Invariants:
    - Rate limits (429): exponential backoff with jitter, Retry-After honoured
    - Transient failures (5xx, 529 overloaded, connection): retried up to max_retries
    - Timeouts and client errors (4xx except 429): fail at once
    - Retries happen only while opening the stream; once events flow, a failure
      is final for that call
    - Every SDK failure leaves as AnthropicAPIError (core/errors.py);
      asyncio.CancelledError passes through untouched

Design Decisions:
    - One classifier for setup and mid-stream failures: the retry loop and the
      stream wrapper cannot disagree on what an error means
    - ±25% jitter on backoff: concurrent runs sharing a rate limit spread out
"""

import asyncio
import logging
import random
from contextlib import AsyncExitStack, asynccontextmanager
from dataclasses import dataclass

import anthropic
from anthropic import (
    APIConnectionError, APIError, APIStatusError, APITimeoutError,
    InternalServerError, RateLimitError,
)

from turnloop.core.errors import AnthropicAPIError, ErrorContext

logger = logging.getLogger(__name__)

# The SDK has no public class for HTTP 529
_OVERLOADED_STATUS = 529


@dataclass(frozen=True)
class ApiFailure:
    kind: str
    retryable: bool
    retry_after_ms: int | None = None


def classify(error: APIError) -> ApiFailure:
    """Map an SDK error onto (kind, retryable). Order matters: timeouts are
    connection errors in the SDK hierarchy."""
    if isinstance(error, RateLimitError):
        return ApiFailure("rate_limit", True, retry_after_ms(error))
    if isinstance(error, APITimeoutError):
        return ApiFailure("timeout", False)
    if isinstance(error, (APIConnectionError, InternalServerError)):
        return ApiFailure("connection_error", True)
    if isinstance(error, APIStatusError) and error.status_code == _OVERLOADED_STATUS:
        return ApiFailure("overloaded", True)
    return ApiFailure("client_error", False)


def retry_after_ms(error: APIStatusError) -> int | None:
    """Retry-After header (seconds) as milliseconds, if present and numeric."""
    response = getattr(error, "response", None)
    if response is None:
        return None
    value = response.headers.get("retry-after")
    if not value:
        return None
    try:
        return int(float(value) * 1000)
    except ValueError:
        return None


class ResilientAnthropicClient:
    """Opens Anthropic message streams under a retry policy."""

    def __init__(
        self,
        api_key: str,
        max_retries: int = 3,
        base_delay_ms: int = 1000,
        max_delay_ms: int = 60_000,
        timeout_seconds: int = 300,
        client: anthropic.AsyncAnthropic | None = None,
    ):
        # SDK-level retries off: the policy below is the only one
        self.client = client or anthropic.AsyncAnthropic(
            api_key=api_key, timeout=timeout_seconds, max_retries=0,
        )
        self.max_retries = max_retries
        self.base_delay_ms = base_delay_ms
        self.max_delay_ms = max_delay_ms

    @asynccontextmanager
    async def stream_message(
        self,
        *,
        model: str,
        max_tokens: int,
        system: str,
        tools: list,
        messages: list,
        context: ErrorContext | None = None,
    ):
        """Yield an open SDK message stream.

        Errors raised by the caller's `async for` re-enter here through the
        yield and are mapped like setup errors, without a retry.
        """
        params = {"model": model, "max_tokens": max_tokens, "messages": messages}
        if system:
            params["system"] = system
        if tools:
            params["tools"] = tools

        async with AsyncExitStack() as stack:
            stream = await self._open(stack, params, context)
            try:
                yield stream
            except APIError as e:
                failure = classify(e)
                raise AnthropicAPIError(
                    f"{e} (during stream)", failure.kind,
                    retry_after_ms=failure.retry_after_ms, context=context,
                ) from e

    async def _open(self, stack: AsyncExitStack, params: dict, context):
        attempt = 0
        while True:
            try:
                stream = await stack.enter_async_context(
                    self.client.messages.stream(**params),
                )
            except APIError as e:
                failure = classify(e)
                if not failure.retryable or attempt >= self.max_retries:
                    if failure.retryable:
                        logger.error("Anthropic %s persisted after %d retries",
                            failure.kind, attempt, extra={"error_code": failure.kind})
                    raise AnthropicAPIError(
                        str(e), failure.kind,
                        retry_after_ms=failure.retry_after_ms, context=context,
                    ) from e
                delay = failure.retry_after_ms or self._backoff(attempt)
                attempt += 1
                logger.warning("Anthropic %s, retrying in %dms", failure.kind, delay,
                    extra={"attempt": attempt, "error_code": failure.kind})
                await asyncio.sleep(delay / 1000)
                continue
            if attempt:
                logger.info("Anthropic stream opened after %d retries", attempt,
                    extra={"attempt": attempt + 1})
            return stream

    def _backoff(self, attempt: int) -> int:
        delay = min(self.max_delay_ms, (2 ** attempt) * self.base_delay_ms)
        return int(delay * random.uniform(0.75, 1.25))  # nosec B311
