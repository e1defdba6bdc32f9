"""Provider registry: model id -> provider instance holding the server key."""

import httpx

from hookedlee.config.settings import Settings
from hookedlee.errors import ProviderUnavailableError, UnknownModelError
from hookedlee.providers import catalog
from hookedlee.providers.base import HTTPProvider, ProviderConfig
from hookedlee.providers.catalog import ModelInfo


class ProviderRegistry:
    """Read-only after construction; shared by all requests without locking."""

    def __init__(self, configs: list[ProviderConfig], transport: httpx.AsyncBaseTransport | None = None):
        self._providers: dict[str, HTTPProvider] = {
            config.name: HTTPProvider(config, transport=transport) for config in configs
        }

    @classmethod
    def from_settings(
        cls, settings: Settings, transport: httpx.AsyncBaseTransport | None = None
    ) -> "ProviderRegistry":
        return cls(
            [
                ProviderConfig(catalog.BIGMODEL, settings.bigmodel_base_url, settings.bigmodel_api_key),
                ProviderConfig(catalog.DEEPSEEK, settings.deepseek_base_url, settings.deepseek_api_key),
            ],
            transport=transport,
        )

    def is_configured(self, provider_name: str) -> bool:
        provider = self._providers.get(provider_name)
        return provider is not None and provider.config.configured

    def get_provider(self, provider_name: str) -> HTTPProvider:
        """Get a configured provider by name or route alias."""
        name = catalog.canonical_provider(provider_name)
        if name is None or name not in self._providers:
            raise ValueError(f"Unknown provider: {provider_name}")
        provider = self._providers[name]
        if not provider.config.configured:
            raise ProviderUnavailableError(f"Provider '{name}' is not configured on this server")
        return provider

    def resolve_chat(self, model_id: str) -> tuple[ModelInfo, HTTPProvider]:
        """Map a chat model id to its provider. Never touches the network."""
        model = catalog.find_chat_model(model_id)
        if model is None:
            raise UnknownModelError(f"Unknown model: {model_id}")
        return model, self.get_provider(model.provider)

    def image_provider(self) -> HTTPProvider:
        return self.get_provider(catalog.IMAGE_PROVIDER)

    def list_models(self) -> list[dict]:
        return [
            {
                "id": model.id,
                "name": model.name,
                "provider": model.provider,
                "available": self.is_configured(model.provider),
            }
            for model in catalog.CHAT_MODELS
        ]

    async def close(self) -> None:
        """Gracefully shut down all provider connections."""
        for provider in self._providers.values():
            await provider.close()
