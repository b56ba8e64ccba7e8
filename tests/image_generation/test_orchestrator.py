"""Tests for GenerationOrchestrator: validation order, caching, provider dispatch."""
import asyncio

from tryon.services.image_generation.base import (
    GenerationFailure,
    GenerationOutcome,
    ImageGenerationError,
    ImageGenerationProvider,
)
from tryon.services.image_generation.cache import ResultCache
from tryon.services.image_generation.codec import ImageFetchError, ImagePayload, ImageTooLargeError
from tryon.services.image_generation.failure_types import MESSAGES, ErrorKind
from tryon.services.image_generation.orchestrator import GenerationOrchestrator, RequestLimits

RESULT = ImagePayload.from_bytes(b"generated", "image/png")


class ScriptedProvider(ImageGenerationProvider):
    """Returns queued results (images or exceptions), counting calls."""

    name = "scripted"

    def __init__(self, *results):
        super().__init__({}, client=None)
        self.results = list(results) or [RESULT]
        self.requests = []

    def is_available(self) -> bool:
        return True

    async def _generate(self, request, on_progress=None):
        self.requests.append(request)
        result = self.results.pop(0) if len(self.results) > 1 else self.results[0]
        if isinstance(result, Exception):
            raise result
        return result


class CountingCache(ResultCache):
    def __init__(self):
        super().__init__()
        self.lookups = 0

    async def get(self, key):
        self.lookups += 1
        return await super().get(key)


class FakeFetcher:
    def __init__(self, fail: bool = False, error: ImageFetchError | None = None):
        self.error = error or (ImageFetchError("Cannot load image") if fail else None)
        self.urls = []

    async def fetch(self, url):
        self.urls.append(url)
        if self.error is not None:
            raise self.error
        return ImagePayload.from_bytes(b"fetched-" + url.encode(), "image/jpeg")


def _orchestrator(provider=None, clothing_provider=None, cache=None, fetcher=None):
    provider = provider or ScriptedProvider()
    return GenerationOrchestrator(
        tryon_provider=provider,
        clothing_provider=clothing_provider or provider,
        cache=cache or CountingCache(),
        fetcher=fetcher or FakeFetcher(),
        limits=RequestLimits(),
    )


def _img(data: bytes, mime: str = "image/png") -> ImagePayload:
    return ImagePayload.from_bytes(data, mime)


class TestTryOnCaching:
    def test_repeat_request_served_from_cache(self):
        provider = ScriptedProvider()
        orch = _orchestrator(provider)

        first = asyncio.run(orch.generate_try_on(_img(b"person"), _img(b"shirt")))
        second = asyncio.run(orch.generate_try_on(_img(b"person"), _img(b"shirt")))

        assert first.ok and not first.cached
        assert second.ok and second.cached
        assert second.image.data == first.image.data
        assert len(provider.requests) == 1

    def test_mime_tag_ignored_for_cache_identity(self):
        provider = ScriptedProvider()
        orch = _orchestrator(provider)
        asyncio.run(orch.generate_try_on(_img(b"person", "image/png"), _img(b"shirt", "image/png")))
        again = asyncio.run(orch.generate_try_on(_img(b"person", "image/jpeg"), _img(b"shirt", "image/webp")))
        assert again.cached
        assert len(provider.requests) == 1

    def test_swapped_images_are_a_new_request(self):
        provider = ScriptedProvider()
        orch = _orchestrator(provider)
        asyncio.run(orch.generate_try_on(_img(b"person"), _img(b"shirt")))
        swapped = asyncio.run(orch.generate_try_on(_img(b"shirt"), _img(b"person")))
        assert not swapped.cached
        assert len(provider.requests) == 2

    def test_failures_are_not_cached(self):
        provider = ScriptedProvider(ImageGenerationError("boom", kind=ErrorKind.TRANSIENT), RESULT)
        orch = _orchestrator(provider)

        failed = asyncio.run(orch.generate_try_on(_img(b"person"), _img(b"shirt")))
        retried = asyncio.run(orch.generate_try_on(_img(b"person"), _img(b"shirt")))

        assert failed.error.kind == ErrorKind.TRANSIENT
        assert failed.error.status_code == 502
        assert retried.ok and not retried.cached
        assert len(provider.requests) == 2


class TestTryOnValidation:
    def test_oversized_image_rejected_before_cache_and_provider(self):
        provider = ScriptedProvider()
        cache = CountingCache()
        orch = _orchestrator(provider, cache=cache)

        outcome = asyncio.run(orch.generate_try_on(_img(b"x" * 3_000_001), _img(b"shirt")))

        assert outcome.error.kind == ErrorKind.INVALID_INPUT
        assert outcome.error.status_code == 413
        assert outcome.error.message == MESSAGES["too_large"]
        assert provider.requests == []
        assert cache.lookups == 0

    def test_image_at_cap_accepted(self):
        provider = ScriptedProvider()
        outcome = asyncio.run(_orchestrator(provider).generate_try_on(_img(b"x" * 3_000_000), _img(b"shirt")))
        assert outcome.ok

    def test_combined_cap(self):
        provider = ScriptedProvider()
        outcome = asyncio.run(
            _orchestrator(provider).generate_try_on(_img(b"x" * 2_900_000), _img(b"y" * 2_700_000))
        )
        assert outcome.error.status_code == 413
        assert provider.requests == []

    def test_empty_image_rejected(self):
        provider = ScriptedProvider()
        outcome = asyncio.run(_orchestrator(provider).generate_try_on(_img(b""), _img(b"shirt")))
        assert outcome.error.status_code == 400
        assert outcome.error.message == MESSAGES["missing_images"]
        assert provider.requests == []

    def test_url_inputs_fetched_before_keying(self):
        provider = ScriptedProvider()
        fetcher = FakeFetcher()
        orch = _orchestrator(provider, fetcher=fetcher)
        outcome = asyncio.run(
            orch.generate_try_on(ImagePayload.from_uri("https://x/p.jpg"), _img(b"shirt"))
        )
        assert outcome.ok
        assert fetcher.urls == ["https://x/p.jpg"]
        assert provider.requests[0].person.data == b"fetched-https://x/p.jpg"
        assert provider.requests[0].person.mime_type == "image/jpeg"

    def test_unloadable_url_is_invalid_input(self):
        provider = ScriptedProvider()
        orch = _orchestrator(provider, fetcher=FakeFetcher(fail=True))
        outcome = asyncio.run(orch.generate_try_on(ImagePayload.from_uri("https://x/p.jpg"), _img(b"shirt")))
        assert outcome.error.status_code == 400
        assert outcome.error.message == MESSAGES["cannot_load_image"]
        assert provider.requests == []

    def test_oversized_download_is_413(self):
        provider = ScriptedProvider()
        cache = CountingCache()
        fetcher = FakeFetcher(error=ImageTooLargeError("Image exceeds 3000000 bytes"))
        orch = _orchestrator(provider, cache=cache, fetcher=fetcher)
        outcome = asyncio.run(orch.generate_try_on(ImagePayload.from_uri("https://x/huge.png"), _img(b"shirt")))
        assert outcome.error.status_code == 413
        assert outcome.error.message == MESSAGES["too_large"]
        assert provider.requests == []
        assert cache.lookups == 0


class TestClothing:
    def test_prompt_trimmed_and_cached(self):
        tryon = ScriptedProvider()
        clothing = ScriptedProvider()
        orch = _orchestrator(tryon, clothing_provider=clothing)

        first = asyncio.run(orch.generate_clothing("  red dress "))
        second = asyncio.run(orch.generate_clothing("red dress"))

        assert first.ok and second.cached
        assert clothing.requests[0].prompt == "red dress"
        assert len(clothing.requests) == 1
        assert tryon.requests == []

    def test_blank_prompt_rejected(self):
        provider = ScriptedProvider()
        outcome = asyncio.run(_orchestrator(provider).generate_clothing("   "))
        assert outcome.error.status_code == 400
        assert outcome.error.message == MESSAGES["missing_prompt"]
        assert provider.requests == []

    def test_prompt_length_cap(self):
        provider = ScriptedProvider()
        orch = _orchestrator(provider)
        assert asyncio.run(orch.generate_clothing("a" * 1000)).ok
        too_long = asyncio.run(orch.generate_clothing("a" * 1001))
        assert too_long.error.message == MESSAGES["prompt_too_long"]


def test_unexpected_provider_exception_becomes_terminal():
    provider = ScriptedProvider(KeyError("candidates"))
    outcome = asyncio.run(_orchestrator(provider).generate_try_on(_img(b"p"), _img(b"c")))
    assert outcome.error == GenerationFailure.of(ErrorKind.TERMINAL)


def test_progress_callback_forwarded():
    seen = []

    class ReportingProvider(ScriptedProvider):
        async def _generate(self, request, on_progress=None):
            on_progress("working")
            return RESULT

    outcome = asyncio.run(
        _orchestrator(ReportingProvider()).generate_try_on(_img(b"p"), _img(b"c"), on_progress=seen.append)
    )
    assert outcome == GenerationOutcome.success(RESULT)
    assert seen == ["working"]
