"""Application settings loaded from environment variables."""

from functools import lru_cache

from pydantic_settings import BaseSettings

from hookedlee.errors import ConfigurationError


class Settings(BaseSettings):
    # Session tokens
    # No built-in fallback: the server refuses to start without a secret.
    jwt_secret: str = ""
    token_ttl_days: int = 30

    # WeChat identity exchange (code -> openid)
    wechat_app_id: str = ""
    wechat_app_secret: str = ""
    wechat_session_url: str = "https://api.weixin.qq.com/sns/jscode2session"

    # Upstream providers (server-held credentials)
    bigmodel_api_key: str = ""
    deepseek_api_key: str = ""
    bigmodel_base_url: str = "https://open.bigmodel.cn/api/paas/v4"
    deepseek_base_url: str = "https://api.deepseek.com/v1"
    image_model_default: str = "cogview-3-flash"
    image_model_hero: str = "cogview-4"

    # Generation defaults applied when the caller omits them
    default_temperature: float = 0.8
    default_top_p: float = 0.95
    default_max_tokens: int = 8192
    default_image_size: str = "1024x1024"

    # Upstream retry policy (HTTP 429 only)
    retry_max_attempts: int = 3
    retry_initial_delay_seconds: float = 2.0
    chat_timeout_seconds: float = 300.0
    image_timeout_seconds: float = 60.0

    # Per-user limiter (behind authentication)
    user_rate_limit_max: int = 20
    user_rate_limit_window_seconds: float = 60.0

    # Global IP limiter (ahead of everything under /api/)
    global_rate_limit_max: int = 100
    global_rate_limit_window_seconds: float = 900.0
    rate_limit_sweep_interval_seconds: float = 3600.0
    rate_limit_max_idle_seconds: float = 3600.0

    # Server
    http_port: int = 3000
    https_port: int = 3443
    ssl_key_path: str = "ssl/key.pem"
    ssl_cert_path: str = "ssl/cert.pem"
    ssl_ca_path: str = "ssl/ca.pem"
    trust_proxy: bool = True  # honor X-Forwarded-For from one reverse proxy hop
    cors_origins: str = "*"
    max_body_bytes: int = 10 * 1024 * 1024  # declared Content-Length cap

    # Logging
    log_level: str = "INFO"
    audit_log_file: str = ""  # Empty = stdout only

    model_config = {"env_file": ".env", "env_file_encoding": "utf-8"}

    @property
    def providers_configured(self) -> dict[str, bool]:
        return {
            "bigmodel": bool(self.bigmodel_api_key),
            "deepseek": bool(self.deepseek_api_key),
        }

    @property
    def cors_origins_list(self) -> list[str]:
        return [o.strip() for o in self.cors_origins.split(",") if o.strip()]

    def validate_for_startup(self) -> None:
        """Raise ConfigurationError if the server cannot safely start."""
        if not any(self.providers_configured.values()):
            raise ConfigurationError(
                "At least one chat provider key must be set "
                "(BIGMODEL_API_KEY and/or DEEPSEEK_API_KEY)"
            )
        if not self.jwt_secret:
            raise ConfigurationError("JWT_SECRET must be set to sign session tokens")


@lru_cache
def get_settings() -> Settings:
    return Settings()
