"""Error taxonomy shared by the gateway and the client controller.

Every error carries an HTTP status and a public message that is safe to
return to the mini-program. Upstream bodies stay on the exception for
server-side logging only.
"""

from typing import Any


class GatewayError(Exception):
    status_code: int = 500
    error: str = "Internal server error"

    def __init__(self, message: str = "", details: Any = None):
        super().__init__(message or self.error)
        self.message = message
        self.details = details

    def to_body(self) -> dict:
        body: dict[str, Any] = {"error": self.error}
        if self.message:
            body["message"] = self.message
        if self.details is not None:
            body["details"] = self.details
        return body


class ConfigurationError(GatewayError):
    """Missing backend URL on the client, or missing credentials at startup."""

    status_code = 500
    error = "Configuration error"


class InvalidRequestError(GatewayError):
    status_code = 400
    error = "Invalid request"

    def __init__(self, error: str, message: str = "", details: Any = None):
        super().__init__(message, details)
        self.error = error


class AuthenticationError(GatewayError):
    status_code = 401
    error = "Authentication required"


class PayloadTooLargeError(GatewayError):
    status_code = 413
    error = "Request entity too large"


class RateLimitError(GatewayError):
    status_code = 429
    error = "Rate limit exceeded"

    def __init__(self, retry_after: int, message: str = ""):
        super().__init__(message or f"Too many requests. Try again in {retry_after} seconds.")
        self.retry_after = retry_after

    def to_body(self) -> dict:
        body = super().to_body()
        body["retryAfter"] = self.retry_after
        return body


class UnknownModelError(GatewayError):
    status_code = 400
    error = "Unknown model"


class ProviderUnavailableError(GatewayError):
    """The model is known but its provider has no server-side credential."""

    status_code = 400
    error = "Provider not configured"


class UpstreamError(GatewayError):
    """Base for failures reported by a third-party provider."""

    status_code = 502
    error = "Upstream provider error"

    def __init__(self, upstream_status: int, upstream_body: Any = None, message: str = ""):
        super().__init__(message or "Service temporarily unavailable, please try again.")
        self.upstream_status = upstream_status
        self.upstream_body = upstream_body

    def to_body(self) -> dict:
        return {
            "error": self.error,
            "message": self.message,
            "details": {"upstreamStatus": self.upstream_status},
        }


class UpstreamTransientError(UpstreamError):
    """HTTP 429 from a provider. Retried; surfaced only once retries run out."""

    status_code = 429
    error = "Upstream rate limit exceeded"

    def __init__(self, upstream_body: Any = None, retry_after: int = 0):
        super().__init__(429, upstream_body)
        self.retry_after = retry_after

    def to_body(self) -> dict:
        body = super().to_body()
        body["retryAfter"] = self.retry_after
        return body


class UpstreamFatalError(UpstreamError):
    """Any non-429 error status from a provider. Never retried."""


class NetworkError(GatewayError):
    """Provider (or backend, on the client side) unreachable."""

    status_code = 502
    error = "Upstream unreachable"


class UpstreamTimeoutError(GatewayError):
    status_code = 504
    error = "Upstream timed out"
