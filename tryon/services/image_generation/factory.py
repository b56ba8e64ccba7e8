"""
Factory for creating image generation providers based on configuration.
"""
from typing import Optional
import logging

import httpx

from tryon.services.image_generation.base import ImageGenerationProvider
from tryon.services.image_generation.fetcher import ImageFetcher
from tryon.services.image_generation.providers.gemini import GeminiProvider
from tryon.services.image_generation.providers.piapi import PiAPIProvider
from tryon.services.image_generation.transport import RetryPolicy

logger = logging.getLogger(__name__)


class ImageProviderFactory:
    """Factory for creating image generation providers."""

    PROVIDERS: dict[str, type[ImageGenerationProvider]] = {
        "gemini": GeminiProvider,
        "piapi": PiAPIProvider,
    }

    @classmethod
    def create(
        cls,
        provider_name: str,
        config: dict,
        client: httpx.AsyncClient,
        fetcher: ImageFetcher | None = None,
    ) -> ImageGenerationProvider:
        """
        Create provider instance by name.

        Args:
            provider_name: Name of provider (gemini, piapi)
            config: Provider-specific configuration dict
            client: Shared outbound HTTP client
            fetcher: Image fetcher for remote result URLs (piapi)

        Returns:
            Initialized provider instance

        Raises:
            ValueError: If provider name is unknown
        """
        name = provider_name.strip().lower()
        provider_class = cls.PROVIDERS.get(name)

        if not provider_class:
            available = ", ".join(cls.PROVIDERS.keys())
            raise ValueError(
                f"Unknown provider: {provider_name}. "
                f"Available providers: {available}"
            )

        logger.info("image_provider_created", extra={"provider": name})
        if provider_class is PiAPIProvider:
            provider = PiAPIProvider(config, client, fetcher=fetcher)
        else:
            provider = provider_class(config, client)

        if not provider.is_available():
            logger.warning("image_provider_not_configured", extra={"provider": name})

        return provider

    @classmethod
    def create_from_settings(
        cls,
        settings,
        client: httpx.AsyncClient,
        fetcher: ImageFetcher | None = None,
        provider_override: Optional[str] = None,
    ) -> ImageGenerationProvider:
        """
        Create provider from application settings.

        Args:
            settings: Application settings object
            client: Shared outbound HTTP client
            fetcher: Image fetcher for remote result URLs
            provider_override: If set, use this provider name instead of settings.tryon_provider
                (the clothing path passes settings.clothing_provider)
        """
        provider_name = ((provider_override or "").strip() or settings.tryon_provider).lower()

        if provider_name == "gemini":
            config = {
                "api_key": settings.gemini_api_key,
                "api_endpoint": settings.gemini_api_endpoint,
                "model": settings.gemini_image_model,
                "retry_policy": RetryPolicy.from_settings(settings, settings.gemini_timeout),
            }
        elif provider_name == "piapi":
            config = {
                "api_key": settings.piapi_api_key,
                "base_url": settings.piapi_base_url,
                "upload_url": settings.piapi_upload_url,
                "poll_interval": settings.piapi_poll_interval,
                "poll_timeout": settings.piapi_poll_timeout,
                "retry_policy": RetryPolicy.from_settings(settings, settings.piapi_request_timeout),
            }
        else:
            raise ValueError(f"Provider {provider_name} not supported in settings")

        return cls.create(provider_name, config, client, fetcher=fetcher)
