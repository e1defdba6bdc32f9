"""HTTP client for the HookedLee gateway, with WeChat session login."""

import logging
from collections.abc import Awaitable, Callable
from typing import Any

import httpx

from hookedlee.client.store import TokenStore
from hookedlee.errors import AuthenticationError, ConfigurationError, GatewayError, NetworkError, RateLimitError

logger = logging.getLogger("hookedlee.client")

# Host-environment hook returning a one-time login code (wx.login on device)
CodeProvider = Callable[[], Awaitable[str]]


class BackendAuthError(AuthenticationError):
    """401 from the gateway.

    ``fresh_login`` is True when the rejected token was obtained during this
    very call (or the login itself was refused), so logging in again would
    not help.
    """

    def __init__(self, message: str, fresh_login: bool):
        super().__init__(message)
        self.fresh_login = fresh_login


class BackendError(GatewayError):
    """Any other non-200 answer from the gateway."""

    error = "Backend error"

    def __init__(self, status_code: int, message: str = ""):
        super().__init__(message or f"Backend error: {status_code}")
        self.status_code = status_code


def _error_message(response: httpx.Response) -> str:
    try:
        data = response.json()
    except ValueError:
        return ""
    if isinstance(data, dict):
        return str(data.get("message") or data.get("error") or "")
    return ""


class BackendClient:
    def __init__(
        self,
        base_url: str,
        token_store: TokenStore,
        code_provider: CodeProvider,
        timeout: float = 120.0,
        login_timeout: float = 10.0,
        transport: httpx.AsyncBaseTransport | None = None,
    ):
        self.base_url = base_url
        self.token_store = token_store
        self._code_provider = code_provider
        self._timeout = timeout
        self._login_timeout = login_timeout
        self._transport = transport
        self._client: httpx.AsyncClient | None = None

    @property
    def configured(self) -> bool:
        return bool(self.base_url.strip())

    async def _get_client(self) -> httpx.AsyncClient:
        if self._client is None or self._client.is_closed:
            self._client = httpx.AsyncClient(transport=self._transport)
        return self._client

    def _url(self, endpoint: str) -> str:
        if not self.configured:
            raise ConfigurationError("Backend not configured. Please configure backend URL in settings.")
        return f"{self.base_url.rstrip('/')}{endpoint}"

    async def _send(self, method: str, endpoint: str, timeout: float, **kwargs) -> httpx.Response:
        client = await self._get_client()
        try:
            return await client.request(method, self._url(endpoint), timeout=timeout, **kwargs)
        except httpx.HTTPError as e:
            raise NetworkError(f"Backend unreachable: {type(e).__name__}")

    async def login(self, code: str) -> str:
        """Exchange a WeChat login code for a session token and store it."""
        response = await self._send("POST", "/api/auth/login", self._login_timeout, json={"code": code})
        if response.status_code == 401:
            raise BackendAuthError(_error_message(response) or "Login failed", fresh_login=True)
        if response.status_code != 200:
            raise BackendError(response.status_code, _error_message(response) or "Login failed")

        try:
            token = response.json().get("token")
        except (ValueError, AttributeError):
            token = None
        if not token:
            raise BackendError(response.status_code, "Login response carried no token")

        self.token_store.save(token)
        logger.info("Backend login successful")
        return token

    async def ensure_logged_in(self) -> tuple[str, bool]:
        """Return ``(token, fresh)``; logs in when no token is cached."""
        token = self.token_store.get()
        if token:
            return token, False

        logger.info("No session token, logging in")
        try:
            code = await self._code_provider()
        except Exception as e:
            raise BackendAuthError(f"Could not obtain login code: {e}", fresh_login=True) from e
        return await self.login(code), True

    async def request(
        self,
        endpoint: str,
        data: dict | None = None,
        method: str = "POST",
        require_auth: bool = True,
    ) -> Any:
        """Call the gateway and return the decoded JSON body of a 200.

        A 401 clears the cached token; the request is not replayed.
        """
        headers = {"Content-Type": "application/json"}
        fresh = False
        if require_auth:
            token, fresh = await self.ensure_logged_in()
            headers["Authorization"] = f"Bearer {token}"

        kwargs: dict[str, Any] = {"headers": headers}
        if method.upper() != "GET":
            kwargs["json"] = data or {}

        response = await self._send(method.upper(), endpoint, self._timeout, **kwargs)
        logger.debug("Backend response %s %s -> %s", method, endpoint, response.status_code)

        if response.status_code == 401:
            self.token_store.clear()
            raise BackendAuthError("Authentication expired. Please try again.", fresh_login=fresh)
        if response.status_code == 429:
            retry_after = 0
            try:
                retry_after = int(response.json().get("retryAfter", 0))
            except (ValueError, AttributeError, TypeError):
                pass
            raise RateLimitError(retry_after)
        if response.status_code != 200:
            raise BackendError(response.status_code, _error_message(response))

        try:
            return response.json()
        except ValueError:
            raise BackendError(response.status_code, "Backend returned invalid JSON")

    async def close(self) -> None:
        if self._client and not self._client.is_closed:
            await self._client.aclose()
            self._client = None
