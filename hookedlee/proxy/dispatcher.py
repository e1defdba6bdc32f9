"""Upstream proxy dispatcher: model routing, server credentials, 429 retry.

Only HTTP 429 from a provider is retried: up to ``retry_max_attempts``
attempts in total, waiting 2s, then 4s, and so on. Every other failure
surfaces immediately. Each request has a deadline (5 minutes for chat,
60 seconds for images); when the next backoff would cross it the loop
stops with ``UpstreamTimeoutError``.

There is no idempotency key: a 429 that was in fact processed upstream
can be billed twice when retried.
"""

import asyncio
import time
from collections.abc import AsyncGenerator, AsyncIterator, Awaitable, Callable
from dataclasses import dataclass
from typing import Any, TypeVar

from tenacity import AsyncRetrying, RetryCallState, retry_if_exception_type, wait_exponential

from hookedlee.config.settings import Settings
from hookedlee.errors import UpstreamTimeoutError, UpstreamTransientError
from hookedlee.logging.audit import get_audit_logger, sanitize_log_output
from hookedlee.providers.base import UpstreamResponse
from hookedlee.providers.catalog import CHAT_COMPLETIONS_PATH, IMAGE_GENERATIONS_PATH
from hookedlee.providers.registry import ProviderRegistry

T = TypeVar("T")


@dataclass(frozen=True)
class RetryPolicy:
    max_attempts: int = 3
    initial_delay: float = 2.0
    multiplier: float = 2.0

    def delay_for(self, attempt_number: int) -> float:
        """Backoff after the given (1-based) failed attempt."""
        return self.initial_delay * self.multiplier ** (attempt_number - 1)


class Dispatcher:
    def __init__(
        self,
        registry: ProviderRegistry,
        settings: Settings,
        sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep,
        clock: Callable[[], float] = time.monotonic,
    ):
        self.registry = registry
        self._settings = settings
        self._policy = RetryPolicy(
            max_attempts=settings.retry_max_attempts,
            initial_delay=settings.retry_initial_delay_seconds,
        )
        self._sleep = sleep
        self._clock = clock

    # --- Chat completions ---

    def _chat_body(self, model_id: str, payload: dict) -> dict:
        s = self._settings

        def _or_default(key: str, default):
            value = payload.get(key)
            return default if value is None else value

        return {
            "model": model_id,
            "messages": payload.get("messages", []),
            "temperature": _or_default("temperature", s.default_temperature),
            "top_p": _or_default("top_p", s.default_top_p),
            "max_tokens": _or_default("max_tokens", s.default_max_tokens),
            "stream": bool(payload.get("stream") or False),
        }

    async def dispatch_chat(self, model_id: str, payload: dict) -> UpstreamResponse:
        """Forward a chat completion to the provider that serves ``model_id``."""
        _, provider = self.registry.resolve_chat(model_id)
        body = self._chat_body(model_id, payload)

        async def call(timeout: float) -> UpstreamResponse:
            return await provider.post_json(CHAT_COMPLETIONS_PATH, body, timeout)

        return await self._with_retry(
            call, self._settings.chat_timeout_seconds, provider.name, model_id
        )

    async def stream_chat(self, model_id: str, payload: dict) -> AsyncIterator[str]:
        """Open an upstream SSE stream, retrying 429s before the first byte.

        Errors raised here happen before anything is relayed, so callers can
        still answer with a normal error envelope.
        """
        _, provider = self.registry.resolve_chat(model_id)
        body = {**self._chat_body(model_id, payload), "stream": True}

        async def open_stream(timeout: float) -> tuple[AsyncGenerator[str, None], str | None]:
            stream = provider.stream_lines(CHAT_COMPLETIONS_PATH, body, timeout)
            try:
                first = await stream.__anext__()
            except StopAsyncIteration:
                return stream, None
            except BaseException:
                await stream.aclose()
                raise
            return stream, first

        stream, first = await self._with_retry(
            open_stream, self._settings.chat_timeout_seconds, provider.name, model_id
        )

        async def relay() -> AsyncGenerator[str, None]:
            try:
                if first is not None:
                    yield first
                async for line in stream:
                    yield line
            finally:
                await stream.aclose()

        return relay()

    # --- Image generation ---

    async def dispatch_image(self, prompt: str, size: str | None = None, is_hero: bool = False) -> UpstreamResponse:
        """Generate an image. ``is_hero`` selects the higher-capability model."""
        s = self._settings
        provider = self.registry.image_provider()
        model_id = s.image_model_hero if is_hero else s.image_model_default
        body = {"model": model_id, "prompt": prompt, "size": size or s.default_image_size}

        get_audit_logger().info(
            "Image generation dispatched",
            extra={"audit_data": {"model": model_id, "is_hero": is_hero, "size": body["size"]}},
        )

        async def call(timeout: float) -> UpstreamResponse:
            return await provider.post_json(IMAGE_GENERATIONS_PATH, body, timeout)

        return await self._with_retry(call, s.image_timeout_seconds, provider.name, model_id)

    # --- Retry loop ---

    async def _with_retry(
        self,
        call: Callable[[float], Awaitable[T]],
        ceiling_seconds: float,
        provider_name: str,
        model_id: str,
    ) -> T:
        logger = get_audit_logger()
        policy = self._policy
        deadline = self._clock() + ceiling_seconds

        async def attempt() -> T:
            remaining = deadline - self._clock()
            if remaining <= 0:
                raise UpstreamTimeoutError(f"{provider_name} request exceeded {ceiling_seconds:.0f}s")
            return await call(remaining)

        def should_stop(retry_state: RetryCallState) -> bool:
            if retry_state.attempt_number >= policy.max_attempts:
                return True
            return self._clock() + policy.delay_for(retry_state.attempt_number) >= deadline

        def give_up(retry_state: RetryCallState):
            error = retry_state.outcome.exception()
            if retry_state.attempt_number < policy.max_attempts:
                logger.warning(
                    "Upstream deadline reached during backoff",
                    extra={"audit_data": {
                        "provider": provider_name,
                        "model": model_id,
                        "attempts": retry_state.attempt_number,
                    }},
                )
                raise UpstreamTimeoutError(
                    f"{provider_name} still rate limited when the {ceiling_seconds:.0f}s deadline hit"
                ) from error
            if isinstance(error, UpstreamTransientError) and not error.retry_after:
                error.retry_after = int(policy.delay_for(retry_state.attempt_number))
            logger.error(
                "Upstream retries exhausted",
                extra={"audit_data": {
                    "provider": provider_name,
                    "model": model_id,
                    "attempts": retry_state.attempt_number,
                    "upstream_body": sanitize_log_output(str(getattr(error, "upstream_body", "")))[:500],
                }},
            )
            raise error

        def before_sleep(retry_state: RetryCallState) -> None:
            logger.warning(
                "Upstream rate limited, retrying",
                extra={"audit_data": {
                    "provider": provider_name,
                    "model": model_id,
                    "attempt": retry_state.attempt_number,
                    "max_attempts": policy.max_attempts,
                    "delay_seconds": retry_state.next_action.sleep if retry_state.next_action else None,
                }},
            )

        retrying = AsyncRetrying(
            stop=should_stop,
            wait=wait_exponential(multiplier=policy.initial_delay, exp_base=policy.multiplier),
            retry=retry_if_exception_type(UpstreamTransientError),
            sleep=self._sleep,
            before_sleep=before_sleep,
            retry_error_callback=give_up,
        )
        return await retrying(attempt)
