"""WeChat mini-program login: exchange a one-time ``wx.login`` code for an openid."""

import httpx

from hookedlee.logging.audit import get_audit_logger


class WeChatIdentityExchange:
    """Calls ``jscode2session``. The login code and session key are never logged."""

    def __init__(self, app_id: str, app_secret: str, session_url: str):
        self._app_id = app_id
        self._app_secret = app_secret
        self._session_url = session_url
        self._client: httpx.AsyncClient | None = None

    async def _get_client(self) -> httpx.AsyncClient:
        if self._client is None or self._client.is_closed:
            self._client = httpx.AsyncClient(timeout=httpx.Timeout(10.0, connect=5.0))
        return self._client

    async def exchange(self, code: str) -> str | None:
        """Return the openid for ``code``, or None if WeChat rejects it."""
        logger = get_audit_logger()
        if not code:
            return None
        if not self._app_id or not self._app_secret:
            logger.error("WeChat login attempted without WECHAT_APP_ID/WECHAT_APP_SECRET")
            return None

        params = {
            "appid": self._app_id,
            "secret": self._app_secret,
            "js_code": code,
            "grant_type": "authorization_code",
        }
        client = await self._get_client()
        try:
            response = await client.get(self._session_url, params=params)
            data = response.json()
        except (httpx.HTTPError, ValueError) as e:
            logger.error(
                "WeChat code exchange failed",
                extra={"audit_data": {"error_type": type(e).__name__}},
            )
            return None

        if response.status_code != 200 or not isinstance(data, dict) or data.get("errcode"):
            logger.warning(
                "WeChat rejected login code",
                extra={"audit_data": {
                    "http_status": response.status_code,
                    "errcode": data.get("errcode") if isinstance(data, dict) else None,
                }},
            )
            return None

        openid = data.get("openid")
        return openid or None

    async def close(self) -> None:
        if self._client and not self._client.is_closed:
            await self._client.aclose()
            self._client = None
