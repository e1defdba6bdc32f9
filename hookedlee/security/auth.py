"""Session authentication for mini-program users.

Validates the ``Authorization: Bearer <token>`` header (or a ``token``
query parameter), enforces the per-user rate limit, and attaches the
verified openid to ``request.state.user``.
"""

from dataclasses import dataclass

from fastapi import Request, Security
from fastapi.security import HTTPAuthorizationCredentials, HTTPBearer

from hookedlee.errors import AuthenticationError, RateLimitError
from hookedlee.logging.audit import get_audit_logger, mask_identifier

bearer_scheme = HTTPBearer(auto_error=False)


@dataclass(frozen=True)
class AuthenticatedUser:
    subject: str


def _extract_token(request: Request, credentials: HTTPAuthorizationCredentials | None) -> str | None:
    if credentials is not None and credentials.credentials:
        return credentials.credentials
    return request.query_params.get("token") or None


def _verify(request: Request, token: str) -> AuthenticatedUser | None:
    claims = request.app.state.token_service.verify(token)
    if claims is None:
        return None
    return AuthenticatedUser(subject=claims.subject)


async def require_user(
    request: Request,
    credentials: HTTPAuthorizationCredentials | None = Security(bearer_scheme),
) -> AuthenticatedUser:
    """FastAPI dependency for protected routes.

    401 for a missing or invalid token (one generic message for every
    failure mode), 429 once the user exceeds their per-minute allowance.
    """
    token = _extract_token(request, credentials)
    if token is None:
        raise AuthenticationError("Please login first")

    user = _verify(request, token)
    if user is None:
        raise AuthenticationError("Token expired or invalid")

    settings = request.app.state.settings
    result = await request.app.state.user_limiter.check_and_record(
        user.subject,
        settings.user_rate_limit_max,
        settings.user_rate_limit_window_seconds,
    )
    if not result.allowed:
        get_audit_logger().warning(
            "User rate limit exceeded",
            extra={"audit_data": {
                "user": mask_identifier(user.subject),
                "rate_limit": result.limit,
                "retry_after": result.retry_after_seconds,
            }},
        )
        raise RateLimitError(result.retry_after_seconds)

    request.state.user = user
    return user


async def optional_user(
    request: Request,
    credentials: HTTPAuthorizationCredentials | None = Security(bearer_scheme),
) -> AuthenticatedUser | None:
    """Like ``require_user`` but anonymous requests pass through unthrottled."""
    token = _extract_token(request, credentials)
    user = _verify(request, token) if token else None
    request.state.user = user
    return user
