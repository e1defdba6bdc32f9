"""Shared HTTP plumbing for upstream providers."""

from collections.abc import AsyncGenerator
from dataclasses import dataclass

import httpx

from hookedlee.errors import NetworkError, UpstreamFatalError, UpstreamTimeoutError, UpstreamTransientError


@dataclass
class UpstreamResponse:
    status_code: int
    body: dict


@dataclass(frozen=True)
class ProviderConfig:
    """Immutable per-provider settings, built once at startup."""

    name: str
    base_url: str
    api_key: str

    @property
    def configured(self) -> bool:
        return bool(self.api_key)


def _retry_after_hint(response: httpx.Response) -> int:
    try:
        return max(0, int(response.headers.get("Retry-After", "0")))
    except ValueError:
        return 0


def _safe_json(response: httpx.Response):
    try:
        return response.json()
    except ValueError:
        return response.text


class HTTPProvider:
    """Posts JSON to an OpenAI-compatible endpoint with a bearer credential.

    Non-200 statuses become typed errors: 429 is transient (the dispatcher
    may retry it), everything else is fatal.
    """

    def __init__(self, config: ProviderConfig, transport: httpx.AsyncBaseTransport | None = None):
        self.config = config
        self._transport = transport
        self._client: httpx.AsyncClient | None = None

    @property
    def name(self) -> str:
        return self.config.name

    async def _get_client(self) -> httpx.AsyncClient:
        if self._client is None or self._client.is_closed:
            self._client = httpx.AsyncClient(
                timeout=httpx.Timeout(60.0, connect=10.0),
                transport=self._transport,
            )
        return self._client

    def _build_headers(self) -> dict:
        return {
            "Content-Type": "application/json",
            "Authorization": f"Bearer {self.config.api_key}",
        }

    def _url(self, path: str) -> str:
        return f"{self.config.base_url.rstrip('/')}{path}"

    async def post_json(self, path: str, body: dict, timeout: float) -> UpstreamResponse:
        client = await self._get_client()
        try:
            response = await client.post(
                self._url(path), json=body, headers=self._build_headers(), timeout=timeout
            )
        except httpx.TimeoutException:
            raise UpstreamTimeoutError(f"{self.name} did not respond in time")
        except httpx.HTTPError as e:
            raise NetworkError(f"Cannot reach {self.name}: {type(e).__name__}")

        if response.status_code == 429:
            raise UpstreamTransientError(_safe_json(response), _retry_after_hint(response))
        if response.status_code != 200:
            raise UpstreamFatalError(response.status_code, _safe_json(response))
        return UpstreamResponse(status_code=response.status_code, body=_safe_json(response))

    async def stream_lines(self, path: str, body: dict, timeout: float) -> AsyncGenerator[str, None]:
        """Yield raw SSE ``data:`` payloads. Errors are raised before the first yield."""
        client = await self._get_client()
        stream_body = {**body, "stream": True}
        try:
            async with client.stream(
                "POST", self._url(path), json=stream_body, headers=self._build_headers(), timeout=timeout
            ) as response:
                if response.status_code != 200:
                    raw = await response.aread()
                    detail = raw.decode(errors="replace")
                    if response.status_code == 429:
                        raise UpstreamTransientError(detail, _retry_after_hint(response))
                    raise UpstreamFatalError(response.status_code, detail)

                async for line in response.aiter_lines():
                    line = line.strip()
                    if not line or not line.startswith("data:"):
                        continue
                    payload = line[len("data:"):].strip()
                    yield payload
                    if payload == "[DONE]":
                        return
        except httpx.TimeoutException:
            raise UpstreamTimeoutError(f"{self.name} did not respond in time")
        except httpx.HTTPError as e:
            raise NetworkError(f"Cannot reach {self.name}: {type(e).__name__}")

    async def close(self) -> None:
        if self._client and not self._client.is_closed:
            await self._client.aclose()
            self._client = None
