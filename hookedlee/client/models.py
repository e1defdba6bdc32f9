"""Client-side configuration for the mini-program's request layer."""

from dataclasses import dataclass, field

from hookedlee.providers import catalog


@dataclass
class ClientConfig:
    backend_url: str = ""  # empty = backend proxy disabled, always go direct
    api_keys: dict[str, str] = field(default_factory=dict)  # provider -> user's own key
    base_urls: dict[str, str] = field(default_factory=lambda: dict(catalog.DEFAULT_BASE_URLS))
    health_cache_seconds: float = 60.0
    backend_timeout_seconds: float = 120.0
    login_timeout_seconds: float = 10.0
    chat_timeout_seconds: float = 90.0
    image_timeout_seconds: float = 60.0
    temperature: float = 0.8
    top_p: float = 0.95
    max_tokens: int = 4096
    image_size: str = "1024x1024"
    image_model_default: str = "cogview-3-flash"
    image_model_hero: str = "cogview-4"
    # Throttle on the user's own key, shared by every direct call
    direct_rate_limit_per_minute: int = 20
    direct_rate_limit_per_hour: int = 100
    max_concurrent_requests: int = 3
