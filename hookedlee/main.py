"""HookedLee Gateway: FastAPI application entry point.

Proxies the mini-program's AI requests so provider keys never leave the
server. Pipeline per request under /api/:
Size check -> Global IP limit -> Session auth -> Per-user limit -> Dispatch -> Log
"""

import asyncio
import contextlib
import json
from collections.abc import AsyncIterator, Awaitable, Callable
from contextlib import asynccontextmanager
from datetime import datetime, timezone
from typing import Any

import httpx
from fastapi import Depends, FastAPI, Request
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse, StreamingResponse
from starlette.exceptions import HTTPException as StarletteHTTPException

from hookedlee.config.settings import Settings, get_settings
from hookedlee.errors import (
    AuthenticationError,
    GatewayError,
    InvalidRequestError,
    PayloadTooLargeError,
    UnknownModelError,
    UpstreamError,
)
from hookedlee.logging.audit import (
    RequestTimer,
    generate_request_id,
    get_audit_logger,
    mask_identifier,
    request_id_var,
    sanitize_log_output,
    setup_logging,
)
from hookedlee.providers import catalog
from hookedlee.providers.registry import ProviderRegistry
from hookedlee.proxy.dispatcher import Dispatcher
from hookedlee.proxy.schemas import ChatRequest, ImageRequest, LoginRequest
from hookedlee.security.auth import AuthenticatedUser, optional_user, require_user
from hookedlee.security.ratelimit import RateLimiterStore
from hookedlee.security.tokens import TokenService
from hookedlee.security.wechat import WeChatIdentityExchange

VERSION = "1.0.0"

GLOBAL_LIMIT_PREFIX = "/api/"
GLOBAL_LIMIT_MESSAGE = "Too many requests, please try again later."

# Helmet defaults minus Content-Security-Policy and Cross-Origin-Embedder-Policy
SECURITY_HEADERS = {
    "Cross-Origin-Opener-Policy": "same-origin",
    "Cross-Origin-Resource-Policy": "same-origin",
    "Origin-Agent-Cluster": "?1",
    "Referrer-Policy": "no-referrer",
    "Strict-Transport-Security": "max-age=15552000; includeSubDomains",
    "X-Content-Type-Options": "nosniff",
    "X-DNS-Prefetch-Control": "off",
    "X-Download-Options": "noopen",
    "X-Frame-Options": "SAMEORIGIN",
    "X-Permitted-Cross-Domain-Policies": "none",
    "X-XSS-Protection": "0",
}


def client_ip(request: Request, trust_proxy: bool) -> str:
    """Client address, honoring the hop appended by one trusted reverse proxy."""
    if trust_proxy:
        forwarded = request.headers.get("x-forwarded-for", "")
        hops = [h.strip() for h in forwarded.split(",") if h.strip()]
        if hops:
            return hops[-1]
    return request.client.host if request.client else "unknown"


async def _sweep_rate_limits(app: FastAPI) -> None:
    """Hourly drop of idle rate-limit windows to bound memory."""
    settings: Settings = app.state.settings
    logger = get_audit_logger()
    while True:
        await asyncio.sleep(settings.rate_limit_sweep_interval_seconds)
        removed = app.state.user_limiter.sweep(settings.rate_limit_max_idle_seconds)
        removed += app.state.ip_limiter.sweep(settings.rate_limit_max_idle_seconds)
        logger.info(
            "Rate limit sweep",
            extra={"audit_data": {
                "removed": removed,
                "active_users": len(app.state.user_limiter),
                "active_ips": len(app.state.ip_limiter),
            }},
        )


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Startup and shutdown lifecycle hooks."""
    setup_logging(app.state.settings)
    logger = get_audit_logger()
    logger.info(
        "Gateway started",
        extra={"audit_data": {
            "version": VERSION,
            "providers_configured": app.state.settings.providers_configured,
        }},
    )
    sweeper = asyncio.create_task(_sweep_rate_limits(app))
    yield
    sweeper.cancel()
    with contextlib.suppress(asyncio.CancelledError):
        await sweeper
    await app.state.registry.close()
    await app.state.identity.close()
    logger.info("Gateway stopped")


def create_app(
    settings: Settings | None = None,
    *,
    identity: WeChatIdentityExchange | None = None,
    transport: httpx.AsyncBaseTransport | None = None,
    sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep,
) -> FastAPI:
    """Build the gateway. Raises ConfigurationError on unsafe configuration.

    ``identity``, ``transport`` and ``sleep`` are seams for tests: a fake
    WeChat exchange, an httpx transport standing in for the providers, and
    a backoff sleep that does not wait.
    """
    settings = settings or get_settings()
    settings.validate_for_startup()

    app = FastAPI(
        title="HookedLee Gateway",
        description="Authenticated, rate-limited proxy for HookedLee AI requests",
        version=VERSION,
        lifespan=lifespan,
    )

    registry = ProviderRegistry.from_settings(settings, transport=transport)
    app.state.settings = settings
    app.state.token_service = TokenService(settings.jwt_secret, settings.token_ttl_days * 24 * 3600)
    app.state.identity = identity or WeChatIdentityExchange(
        settings.wechat_app_id, settings.wechat_app_secret, settings.wechat_session_url
    )
    app.state.user_limiter = RateLimiterStore()
    app.state.ip_limiter = RateLimiterStore()
    app.state.registry = registry
    app.state.dispatcher = Dispatcher(registry, settings, sleep=sleep)

    # Registration order is innermost first: the limiter only sees requests
    # that passed the size check, and CORS wraps every answer including 429s.
    @app.middleware("http")
    async def global_rate_limit(request: Request, call_next):
        if request.method != "OPTIONS" and request.url.path.startswith(GLOBAL_LIMIT_PREFIX):
            ip = client_ip(request, settings.trust_proxy)
            result = await app.state.ip_limiter.check_and_record(
                ip, settings.global_rate_limit_max, settings.global_rate_limit_window_seconds
            )
            if not result.allowed:
                get_audit_logger().warning(
                    "Global rate limit exceeded",
                    extra={"audit_data": {"client_ip": ip, "path": request.url.path}},
                )
                return JSONResponse(status_code=429, content={"error": GLOBAL_LIMIT_MESSAGE})
        return await call_next(request)

    @app.middleware("http")
    async def request_guard(request: Request, call_next):
        rid = generate_request_id()
        request_id_var.set(rid)

        error = _oversized_body(request, settings.max_body_bytes)
        if error is not None:
            get_audit_logger().warning(
                "Request body rejected",
                extra={"audit_data": {"path": request.url.path, "status": error.status_code}},
            )
            response = JSONResponse(status_code=error.status_code, content=error.to_body())
        else:
            response = await call_next(request)

        for name, value in SECURITY_HEADERS.items():
            response.headers.setdefault(name, value)
        response.headers["X-Request-Id"] = rid
        return response

    app.add_middleware(
        CORSMiddleware,
        allow_origins=settings.cors_origins_list,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    _register_error_handlers(app)
    _register_routes(app)
    return app


def _oversized_body(request: Request, max_bytes: int) -> GatewayError | None:
    declared = request.headers.get("content-length")
    if declared is None:
        return None
    try:
        size = int(declared)
    except ValueError:
        return InvalidRequestError("Invalid request", "Content-Length must be an integer")
    if size > max_bytes:
        return PayloadTooLargeError()
    return None


def _register_error_handlers(app: FastAPI) -> None:
    logger = get_audit_logger()

    @app.exception_handler(GatewayError)
    async def gateway_error(request: Request, exc: GatewayError):
        headers = {}
        retry_after = getattr(exc, "retry_after", 0)
        if retry_after:
            headers["Retry-After"] = str(retry_after)

        if isinstance(exc, UpstreamError):
            # Upstream bodies are for operators, not for the mini-program
            logger.error(
                "Upstream request failed",
                extra={"audit_data": {
                    "path": request.url.path,
                    "upstream_status": exc.upstream_status,
                    "upstream_body": sanitize_log_output(str(exc.upstream_body))[:1000],
                }},
            )
        elif exc.status_code >= 500:
            logger.error(
                "Request failed",
                extra={"audit_data": {"path": request.url.path, "error": exc.error, "detail": str(exc)}},
            )

        return JSONResponse(status_code=exc.status_code, content=exc.to_body(), headers=headers)

    @app.exception_handler(StarletteHTTPException)
    async def http_error(request: Request, exc: StarletteHTTPException):
        if exc.status_code == 404:
            content = {"error": "Endpoint not found", "path": request.url.path}
        else:
            content = {"error": str(exc.detail)}
        return JSONResponse(status_code=exc.status_code, content=content, headers=exc.headers)

    @app.exception_handler(RequestValidationError)
    async def validation_error(request: Request, exc: RequestValidationError):
        details = [{"loc": list(e.get("loc", ())), "msg": e.get("msg", "")} for e in exc.errors()]
        return JSONResponse(status_code=400, content={"error": "Invalid request", "details": details})

    @app.exception_handler(Exception)
    async def unexpected_error(request: Request, exc: Exception):
        logger.exception("Unhandled server error", extra={"audit_data": {"path": request.url.path}})
        return JSONResponse(status_code=500, content={"error": "Internal server error"})


def _register_routes(app: FastAPI) -> None:
    logger = get_audit_logger()

    @app.get("/api/health")
    async def health():
        return {
            "status": "ok",
            "timestamp": datetime.now(timezone.utc).isoformat(),
            "version": VERSION,
            "providersConfigured": app.state.settings.providers_configured,
        }

    @app.get("/api/models")
    async def models(user: AuthenticatedUser | None = Depends(optional_user)):
        logger.debug(
            "Model list requested",
            extra={"audit_data": {"user": mask_identifier(user.subject) if user else "anonymous"}},
        )
        return {"models": app.state.registry.list_models()}

    @app.post("/api/auth/login")
    async def login(body: LoginRequest):
        if not body.code:
            raise InvalidRequestError("Missing code", "WeChat login code is required")

        openid = await app.state.identity.exchange(body.code)
        if not openid:
            raise AuthenticationError("Invalid WeChat login code")

        token = app.state.token_service.issue(openid)
        logger.info("User logged in", extra={"audit_data": {"user": mask_identifier(openid)}})
        return {"token": token, "subjectId": openid}

    # Fixed routes must be declared before the provider alias route

    @app.post("/api/proxy/chat")
    async def proxy_chat(body: ChatRequest, user: AuthenticatedUser = Depends(require_user)):
        if not body.model:
            raise InvalidRequestError("Model is required")
        return await _proxy_chat(app, body, body.model, user)

    @app.post("/api/proxy/image")
    async def proxy_image(body: ImageRequest, user: AuthenticatedUser = Depends(require_user)):
        with RequestTimer() as timer:
            result = await app.state.dispatcher.dispatch_image(body.prompt, body.size, body.is_hero)
        logger.info(
            "Image proxied",
            extra={"audit_data": {
                "user": mask_identifier(user.subject),
                "is_hero": body.is_hero,
                "latency_ms": timer.elapsed_ms,
            }},
        )
        return JSONResponse(status_code=result.status_code, content=result.body)

    @app.post("/api/proxy/{provider_name}")
    async def proxy_provider(
        provider_name: str, body: ChatRequest, user: AuthenticatedUser = Depends(require_user)
    ):
        provider = catalog.canonical_provider(provider_name)
        if provider is None:
            raise StarletteHTTPException(status_code=404)

        model_id = body.model or catalog.DEFAULT_CHAT_MODEL[provider]
        model = catalog.find_chat_model(model_id)
        if model is None or model.provider != provider:
            raise UnknownModelError(f"Model '{model_id}' is not served by {provider}")
        return await _proxy_chat(app, body, model_id, user)


async def _proxy_chat(app: FastAPI, body: ChatRequest, model_id: str, user: AuthenticatedUser):
    logger = get_audit_logger()
    dispatcher: Dispatcher = app.state.dispatcher
    payload = body.model_dump(exclude={"model"})

    if body.stream:
        stream = await dispatcher.stream_chat(model_id, payload)
        return StreamingResponse(
            _sse_events(stream),
            media_type="text/event-stream",
            headers={"Cache-Control": "no-cache"},
        )

    with RequestTimer() as timer:
        result = await dispatcher.dispatch_chat(model_id, payload)

    logger.info(
        "Request proxied",
        extra={"audit_data": {
            "user": mask_identifier(user.subject),
            "model": model_id,
            "upstream_status": result.status_code,
            "latency_ms": timer.elapsed_ms,
        }},
    )
    return JSONResponse(status_code=result.status_code, content=result.body)


async def _sse_events(stream: AsyncIterator[str]) -> AsyncIterator[str]:
    try:
        async for payload in stream:
            yield f"data: {payload}\n\n"
    except GatewayError as e:
        get_audit_logger().error(
            "Stream interrupted", extra={"audit_data": {"error": e.error}}
        )
        yield f"data: {json.dumps({'error': e.error})}\n\n"
