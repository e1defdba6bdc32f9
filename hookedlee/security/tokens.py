"""Signed session tokens bound to a WeChat openid.

HS256 JWTs with a fixed lifetime. Verification returns ``None`` for every
failure mode so callers cannot tell a bad signature from an expired token.
"""

import time
from collections.abc import Callable
from dataclasses import dataclass

import jwt

ALGORITHM = "HS256"
DEFAULT_TTL_SECONDS = 30 * 24 * 3600


@dataclass(frozen=True)
class TokenClaims:
    subject: str
    issued_at: int
    expires_at: int


class TokenService:
    def __init__(
        self,
        secret: str,
        ttl_seconds: int = DEFAULT_TTL_SECONDS,
        clock: Callable[[], float] = time.time,
    ):
        if not secret:
            raise ValueError("Token secret must not be empty")
        self._secret = secret
        self._ttl = ttl_seconds
        self._clock = clock

    def issue(self, subject: str) -> str:
        if not subject:
            raise ValueError("Token subject must not be empty")
        now = int(self._clock())
        payload = {"sub": subject, "iat": now, "exp": now + self._ttl}
        return jwt.encode(payload, self._secret, algorithm=ALGORITHM)

    def verify(self, token: str) -> TokenClaims | None:
        # Expiry is checked against the injected clock, not PyJWT's.
        try:
            claims = jwt.decode(
                token,
                self._secret,
                algorithms=[ALGORITHM],
                options={
                    "verify_exp": False,
                    "verify_iat": False,
                    "require": ["sub", "iat", "exp"],
                },
            )
        except jwt.InvalidTokenError:
            return None

        subject = claims.get("sub")
        expires_at = claims.get("exp")
        issued_at = claims.get("iat")
        if not isinstance(subject, str) or not subject:
            return None
        if not isinstance(expires_at, int) or not isinstance(issued_at, int):
            return None
        if self._clock() >= expires_at:
            return None

        return TokenClaims(subject=subject, issued_at=issued_at, expires_at=expires_at)
