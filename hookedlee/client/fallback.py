"""Client fallback controller: gateway first, direct provider call second.

Each backend attempt produces an ``Attempt`` value instead of an exception,
and ``FallbackController`` turns it into a decision:

    OK                 -> return the value, backend marked healthy
    NOT_CONFIGURED     -> direct
    SKIPPED_UNHEALTHY  -> direct (backend failed less than a cache window ago)
    NETWORK / BACKEND  -> backend marked unhealthy, direct
    RATE_LIMITED       -> backend healthy; direct when a key exists, else surfaced
    REJECTED (4xx)     -> same as RATE_LIMITED
    AUTH_STALE         -> cached token dropped, direct; next call logs in again
    AUTH_FAILED        -> surfaced: a freshly issued session was rejected

Direct calls need a plausible client-held key; without one they fail with
``ConfigurationError`` before any network traffic. At most
``max_concurrent_requests`` generation calls run at once.
"""

import asyncio
import enum
import logging
from collections.abc import Callable
from dataclasses import dataclass
from typing import Any, Generic, TypeVar

import httpx

from hookedlee.client.backend import BackendAuthError, BackendClient, BackendError, CodeProvider
from hookedlee.client.direct import DirectClient, first_image_url
from hookedlee.client.health import BackendHealthCache
from hookedlee.client.models import ClientConfig
from hookedlee.client.store import MemoryTokenStore, TokenStore
from hookedlee.errors import GatewayError, NetworkError, RateLimitError
from hookedlee.providers import catalog

logger = logging.getLogger("hookedlee.client")

T = TypeVar("T")


class AttemptKind(enum.Enum):
    OK = "ok"
    NOT_CONFIGURED = "not_configured"
    SKIPPED_UNHEALTHY = "skipped_unhealthy"
    NETWORK = "network"
    BACKEND = "backend"
    RATE_LIMITED = "rate_limited"
    REJECTED = "rejected"
    AUTH_STALE = "auth_stale"
    AUTH_FAILED = "auth_failed"


@dataclass
class Attempt(Generic[T]):
    kind: AttemptKind
    value: T | None = None
    error: Exception | None = None

    @property
    def ok(self) -> bool:
        return self.kind is AttemptKind.OK


class InvalidBackendResponse(GatewayError):
    error = "Invalid backend response"


def _param(params: dict, key: str, default):
    value = params.get(key)
    return default if value is None else value


def _chat_content(body: Any) -> dict:
    if not isinstance(body, dict) or not body.get("choices"):
        raise InvalidBackendResponse()
    return body


def _image_url(body: Any) -> str:
    url = first_image_url(body)
    if not url:
        raise InvalidBackendResponse()
    return url


class FallbackController:
    def __init__(
        self,
        config: ClientConfig,
        backend: BackendClient,
        direct: DirectClient,
        health: BackendHealthCache | None = None,
    ):
        self.config = config
        self.backend = backend
        self.direct = direct
        self.health = health or BackendHealthCache(config.health_cache_seconds)
        self._in_flight = asyncio.Semaphore(config.max_concurrent_requests)

    @classmethod
    def from_config(
        cls,
        config: ClientConfig,
        code_provider: CodeProvider,
        token_store: TokenStore | None = None,
        transport: httpx.AsyncBaseTransport | None = None,
    ) -> "FallbackController":
        backend = BackendClient(
            config.backend_url,
            token_store or MemoryTokenStore(),
            code_provider,
            timeout=config.backend_timeout_seconds,
            login_timeout=config.login_timeout_seconds,
            transport=transport,
        )
        return cls(config, backend, DirectClient(config, transport=transport))

    def configure_backend(self, backend_url: str) -> None:
        """Switch backends: the old session and health verdict no longer apply."""
        self.config.backend_url = backend_url
        self.backend.base_url = backend_url
        self.backend.token_store.clear()
        self.health.invalidate()

    def invalidate_health(self) -> None:
        self.health.invalidate()

    # --- Generation entry points ---

    async def chat(self, model: str, messages: list[dict], **params) -> dict:
        """Chat completion through the backend, falling back to a direct call."""
        cfg = self.config
        payload = {
            "model": model,
            "messages": messages,
            "temperature": _param(params, "temperature", cfg.temperature),
            "top_p": _param(params, "top_p", cfg.top_p),
            "max_tokens": _param(params, "max_tokens", cfg.max_tokens),
            "stream": False,
        }
        info = catalog.find_chat_model(model)
        async with self._in_flight:
            attempt = await self._try_backend("/api/proxy/chat", payload, _chat_content)
            if attempt.ok:
                return attempt.value
            self._decide(attempt, "chat", info.provider if info else None)
            return await self.direct.chat(
                model,
                messages,
                temperature=payload["temperature"],
                top_p=payload["top_p"],
                max_tokens=payload["max_tokens"],
            )

    async def generate_image(self, prompt: str, size: str | None = None, is_hero: bool = False) -> str:
        """Return an image URL, via the backend when it is usable."""
        payload = {"prompt": prompt, "size": size or self.config.image_size, "isHero": is_hero}
        async with self._in_flight:
            attempt = await self._try_backend("/api/proxy/image", payload, _image_url)
            if attempt.ok:
                return attempt.value
            self._decide(attempt, "image", catalog.IMAGE_PROVIDER)
            return await self.direct.generate_image(prompt, payload["size"], is_hero)

    # --- Backend utilities (no authentication) ---

    async def test_connection(self) -> bool:
        if not self.backend.configured:
            return False
        try:
            await self.backend.request("/api/health", method="GET", require_auth=False)
        except GatewayError as e:
            logger.warning("Backend connection test failed: %s", e)
            self.health.record(False)
            return False
        self.health.record(True)
        return True

    async def list_models(self) -> list[dict]:
        attempt = await self._try_backend(
            "/api/models", None, lambda body: body.get("models", []), method="GET", require_auth=False
        )
        if attempt.ok:
            return attempt.value
        logger.warning("Could not list backend models (%s)", attempt.kind.value)
        return []

    # --- Decision table ---

    async def _try_backend(
        self,
        endpoint: str,
        payload: dict | None,
        extract: Callable[[Any], T],
        method: str = "POST",
        require_auth: bool = True,
    ) -> Attempt[T]:
        if not self.backend.configured:
            return Attempt(AttemptKind.NOT_CONFIGURED)
        if self.health.should_skip_backend():
            return Attempt(AttemptKind.SKIPPED_UNHEALTHY)

        try:
            body = await self.backend.request(endpoint, payload, method=method, require_auth=require_auth)
        except BackendAuthError as e:
            # The backend answered, so it is up; only the session is at fault.
            self.health.record(True)
            kind = AttemptKind.AUTH_FAILED if e.fresh_login else AttemptKind.AUTH_STALE
            return Attempt(kind, error=e)
        except RateLimitError as e:
            self.health.record(True)
            return Attempt(AttemptKind.RATE_LIMITED, error=e)
        except NetworkError as e:
            self.health.record(False)
            return Attempt(AttemptKind.NETWORK, error=e)
        except BackendError as e:
            if 400 <= e.status_code < 500:
                self.health.record(True)
                return Attempt(AttemptKind.REJECTED, error=e)
            self.health.record(False)
            return Attempt(AttemptKind.BACKEND, error=e)
        except GatewayError as e:
            self.health.record(False)
            return Attempt(AttemptKind.BACKEND, error=e)

        self.health.record(True)
        try:
            return Attempt(AttemptKind.OK, value=extract(body))
        except (GatewayError, AttributeError) as e:
            return Attempt(AttemptKind.BACKEND, error=e)

    def _decide(self, attempt: Attempt, operation: str, provider_name: str | None) -> None:
        """Raise for outcomes that must not fall back; otherwise log the fallback."""
        if attempt.kind is AttemptKind.AUTH_FAILED:
            logger.error("Backend rejected a fresh session for %s", operation)
            raise attempt.error
        if attempt.kind in (AttemptKind.RATE_LIMITED, AttemptKind.REJECTED) and not (
            provider_name and self.direct.can_serve(provider_name)
        ):
            # The backend is up and its answer is the one to report
            logger.warning("Backend refused %s (%s), no direct key to fall back on", operation, attempt.kind.value)
            raise attempt.error
        if attempt.kind is AttemptKind.NOT_CONFIGURED:
            logger.debug("Backend not configured, using direct %s call", operation)
            return
        logger.warning(
            "Backend %s failed (%s), falling back to direct API: %s",
            operation,
            attempt.kind.value,
            attempt.error,
        )

    async def close(self) -> None:
        await self.backend.close()
        await self.direct.close()
