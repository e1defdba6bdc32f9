"""Direct provider calls with the user's own API key (no backend)."""

import logging
import re

import httpx

from hookedlee.client.models import ClientConfig
from hookedlee.errors import ConfigurationError, RateLimitError, UnknownModelError, UpstreamFatalError
from hookedlee.providers import catalog
from hookedlee.providers.base import HTTPProvider, ProviderConfig
from hookedlee.security.ratelimit import RateLimiterStore

logger = logging.getLogger("hookedlee.client")

_PLACEHOLDER_KEYS = [
    re.compile(r"^(your-api-key-here|api-key|sk-xxxxxxxx|test-key|dummy-key)", re.IGNORECASE),
    re.compile(r"^\*+$"),
]


def validate_api_key(api_key: str | None) -> bool:
    """Cheap plausibility check so an obviously bad key never hits the network."""
    if not api_key or not isinstance(api_key, str):
        return False
    key = api_key.strip()
    if len(key) < 20:
        return False
    return not any(p.match(key) for p in _PLACEHOLDER_KEYS)


class DirectClient:
    """Calls providers with the user's key, throttled locally.

    Every call counts against a per-minute and an hourly window before any
    network traffic; a rejected call raises ``RateLimitError``.
    """

    def __init__(
        self,
        config: ClientConfig,
        transport: httpx.AsyncBaseTransport | None = None,
        limiter: RateLimiterStore | None = None,
    ):
        self._config = config
        self._transport = transport
        self._limiter = limiter or RateLimiterStore()
        self._providers: dict[str, HTTPProvider] = {}

    def can_serve(self, provider_name: str) -> bool:
        return validate_api_key(self._config.api_keys.get(provider_name))

    async def _throttle(self) -> None:
        cfg = self._config
        result = await self._limiter.check_and_record_all([
            ("minute", cfg.direct_rate_limit_per_minute, 60.0),
            ("hour", cfg.direct_rate_limit_per_hour, 3600.0),
        ])
        if not result.allowed:
            logger.warning(
                "Direct call throttled (limit %s), retry in %ss", result.limit, result.retry_after_seconds
            )
            raise RateLimitError(result.retry_after_seconds)

    async def _provider(self, name: str) -> HTTPProvider:
        key = self._config.api_keys.get(name, "")
        if not validate_api_key(key):
            raise ConfigurationError(f"No valid {name} API key configured. Please add one in settings.")
        await self._throttle()

        provider = self._providers.get(name)
        if provider is None or provider.config.api_key != key.strip():
            base_url = self._config.base_urls.get(name) or catalog.DEFAULT_BASE_URLS[name]
            provider = HTTPProvider(ProviderConfig(name, base_url, key.strip()), transport=self._transport)
            self._providers[name] = provider
        return provider

    async def chat(
        self,
        model: str,
        messages: list[dict],
        temperature: float | None = None,
        top_p: float | None = None,
        max_tokens: int | None = None,
    ) -> dict:
        info = catalog.find_chat_model(model)
        if info is None:
            raise UnknownModelError(f"Unknown model: {model}")
        provider = await self._provider(info.provider)

        cfg = self._config
        body = {
            "model": model,
            "messages": messages,
            "temperature": cfg.temperature if temperature is None else temperature,
            "top_p": cfg.top_p if top_p is None else top_p,
            "max_tokens": cfg.max_tokens if max_tokens is None else max_tokens,
            "stream": False,
        }
        logger.info("Direct chat call to %s (%s)", info.provider, model)
        result = await provider.post_json(catalog.CHAT_COMPLETIONS_PATH, body, cfg.chat_timeout_seconds)
        if not isinstance(result.body, dict) or not result.body.get("choices"):
            raise UpstreamFatalError(result.status_code, result.body, "Invalid API response")
        return result.body

    async def generate_image(self, prompt: str, size: str | None = None, is_hero: bool = False) -> str:
        cfg = self._config
        provider = await self._provider(catalog.IMAGE_PROVIDER)
        body = {
            "model": cfg.image_model_hero if is_hero else cfg.image_model_default,
            "prompt": prompt,
            "size": size or cfg.image_size,
        }
        logger.info("Direct image call (%s)", body["model"])
        result = await provider.post_json(catalog.IMAGE_GENERATIONS_PATH, body, cfg.image_timeout_seconds)
        url = first_image_url(result.body)
        if not url:
            raise UpstreamFatalError(result.status_code, result.body, "Invalid image API response")
        return url

    async def close(self) -> None:
        for provider in self._providers.values():
            await provider.close()
        self._providers.clear()


def first_image_url(body) -> str | None:
    if not isinstance(body, dict):
        return None
    data = body.get("data")
    if isinstance(data, list) and data and isinstance(data[0], dict):
        return data[0].get("url") or None
    return None
