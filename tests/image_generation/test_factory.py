"""Tests for provider selection from settings."""
from unittest.mock import MagicMock

import pytest

from tryon.core.config import Settings
from tryon.services.image_generation.cache import LocalDirectoryTier
from tryon.services.image_generation.factory import ImageProviderFactory
from tryon.services.image_generation.orchestrator import build_orchestrator
from tryon.services.image_generation.providers.gemini import GeminiProvider
from tryon.services.image_generation.providers.piapi import PiAPIProvider


def _settings(**overrides) -> Settings:
    values = {"gemini_api_key": "g-key", "piapi_api_key": "p-key"}
    values.update(overrides)
    return Settings(**values)


def test_default_provider_is_gemini():
    provider = ImageProviderFactory.create_from_settings(_settings(), client=MagicMock())
    assert isinstance(provider, GeminiProvider)
    assert provider.is_available()
    assert provider.policy.timeout_seconds == 70.0
    assert provider.policy.max_retries == 2


def test_piapi_selected_with_poll_settings():
    provider = ImageProviderFactory.create_from_settings(
        _settings(tryon_provider="PiAPI", piapi_poll_timeout=45), client=MagicMock()
    )
    assert isinstance(provider, PiAPIProvider)
    assert provider.poll_timeout == 45.0
    assert provider.poll_interval == 2.5


def test_unknown_provider_rejected():
    with pytest.raises(ValueError):
        ImageProviderFactory.create("dalle", {}, client=MagicMock())


def test_missing_key_still_builds_unavailable_provider():
    provider = ImageProviderFactory.create_from_settings(_settings(gemini_api_key=""), client=MagicMock())
    assert not provider.is_available()


def test_invalid_cache_backend_rejected():
    with pytest.raises(ValueError):
        _settings(cache_backend="memcached")


def test_build_orchestrator_routes_kinds_separately(tmp_path):
    settings = _settings(tryon_provider="piapi", cache_backend="local", cache_dir=str(tmp_path))
    orchestrator = build_orchestrator(settings, MagicMock())
    assert isinstance(orchestrator.tryon_provider, PiAPIProvider)
    assert isinstance(orchestrator.clothing_provider, GeminiProvider)
    assert isinstance(orchestrator.cache.durable, LocalDirectoryTier)
    assert orchestrator.fetcher.relays == settings.image_fetch_relay_list
    assert orchestrator.limits.max_image_bytes == 3_000_000
    assert orchestrator.fetcher.max_bytes == 3_000_000
