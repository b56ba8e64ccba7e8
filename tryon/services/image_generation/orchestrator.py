"""
Generation orchestrator: the public entry point of the pipeline.

Order per request: resolve inputs -> validate sizes / prompt -> cache lookup -> exactly one
provider -> write-through on success. Invalid requests never touch the cache or a provider;
failures are never cached.
"""
import logging
import time
from dataclasses import dataclass
from typing import Any

from tryon.services.image_generation.base import (
    ClothingRequest,
    GenerationFailure,
    GenerationOutcome,
    GenerationRequest,
    ImageGenerationProvider,
    ProgressCallback,
    TryOnRequest,
)
from tryon.services.image_generation.cache import ResultCache, build_cache_from_settings, cache_key_for
from tryon.services.image_generation.codec import (
    ImageFetchError,
    ImagePayload,
    ImageTooLargeError,
    to_transport_shape,
)
from tryon.services.image_generation.factory import ImageProviderFactory
from tryon.services.image_generation.failure_types import ErrorKind
from tryon.services.image_generation.fetcher import ImageFetcher
from tryon.utils.metrics import generation_duration_seconds, generation_requests_total

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class RequestLimits:
    max_image_bytes: int = 3_000_000
    max_total_bytes: int = 5_500_000
    max_prompt_chars: int = 1000

    @classmethod
    def from_settings(cls, settings: Any) -> "RequestLimits":
        return cls(
            max_image_bytes=settings.max_image_bytes,
            max_total_bytes=settings.max_total_bytes,
            max_prompt_chars=settings.max_prompt_chars,
        )


def _invalid(message_key: str, status_code: int = 400) -> GenerationOutcome:
    return GenerationOutcome.failure(
        GenerationFailure.of(ErrorKind.INVALID_INPUT, message_key, status_code=status_code)
    )


class GenerationOrchestrator:
    """Validates, consults the cache, and dispatches to one configured provider."""

    def __init__(
        self,
        tryon_provider: ImageGenerationProvider,
        clothing_provider: ImageGenerationProvider,
        cache: ResultCache,
        fetcher: ImageFetcher,
        limits: RequestLimits | None = None,
    ) -> None:
        self.tryon_provider = tryon_provider
        self.clothing_provider = clothing_provider
        self.cache = cache
        self.fetcher = fetcher
        self.limits = limits or RequestLimits()

    def _check_sizes(self, person: ImagePayload, clothing: ImagePayload) -> GenerationOutcome | None:
        if person.size == 0 or clothing.size == 0:
            return _invalid("missing_images")
        too_large = (
            person.size > self.limits.max_image_bytes
            or clothing.size > self.limits.max_image_bytes
            or person.size + clothing.size > self.limits.max_total_bytes
        )
        if too_large:
            logger.info(
                "generation_rejected_too_large",
                extra={"request_kind": TryOnRequest.kind, "error": f"person={person.size} clothing={clothing.size}"},
            )
            return _invalid("too_large", status_code=413)
        return None

    async def generate_try_on(
        self,
        person: ImagePayload,
        clothing: ImagePayload,
        on_progress: ProgressCallback | None = None,
    ) -> GenerationOutcome:
        try:
            person = await to_transport_shape(person, self.fetcher)
            clothing = await to_transport_shape(clothing, self.fetcher)
        except ImageTooLargeError as e:
            logger.info("generation_rejected_too_large", extra={"request_kind": TryOnRequest.kind, "error": str(e)})
            return self._record(TryOnRequest.kind, _invalid("too_large", status_code=413))
        except ImageFetchError as e:
            logger.warning("generation_input_fetch_failed", extra={"request_kind": TryOnRequest.kind, "error": str(e)})
            return self._record(TryOnRequest.kind, _invalid("cannot_load_image"))

        rejected = self._check_sizes(person, clothing)
        if rejected is not None:
            return self._record(TryOnRequest.kind, rejected)

        request = TryOnRequest(person=person, clothing=clothing)
        return await self._run(request, self.tryon_provider, on_progress)

    async def generate_clothing(self, prompt: str) -> GenerationOutcome:
        prompt = (prompt or "").strip()
        if not prompt:
            return self._record(ClothingRequest.kind, _invalid("missing_prompt"))
        if len(prompt) > self.limits.max_prompt_chars:
            return self._record(ClothingRequest.kind, _invalid("prompt_too_long"))
        return await self._run(ClothingRequest(prompt=prompt), self.clothing_provider, None)

    async def _run(
        self,
        request: GenerationRequest,
        provider: ImageGenerationProvider,
        on_progress: ProgressCallback | None,
    ) -> GenerationOutcome:
        key = cache_key_for(request)
        cached = await self.cache.get(key)
        if cached is not None:
            logger.info("generation_cache_hit", extra={"request_kind": request.kind, "cache_key": key})
            generation_requests_total.labels(request_kind=request.kind, outcome="cache_hit").inc()
            return GenerationOutcome.success(cached, cached=True)

        start = time.monotonic()
        outcome = await provider.generate(request, on_progress)
        elapsed = time.monotonic() - start
        generation_duration_seconds.labels(provider=provider.name).observe(elapsed)

        if outcome.ok:
            await self.cache.put(key, outcome.image)
        logger.info(
            "generation_completed",
            extra={
                "request_kind": request.kind,
                "provider": provider.name,
                "cache_key": key,
                "failure_type": outcome.error.kind.value if outcome.error else None,
                "status_code": outcome.error.status_code if outcome.error else 200,
                "elapsed_seconds": round(elapsed, 2),
            },
        )
        return self._record(request.kind, outcome)

    @staticmethod
    def _record(request_kind: str, outcome: GenerationOutcome) -> GenerationOutcome:
        label = "success" if outcome.ok else outcome.error.kind.value
        generation_requests_total.labels(request_kind=request_kind, outcome=label).inc()
        return outcome


def build_orchestrator(settings: Any, client: Any) -> GenerationOrchestrator:
    """Wire fetcher, cache and providers from settings around one shared httpx.AsyncClient."""
    fetcher = ImageFetcher(
        client,
        settings.image_fetch_relay_list,
        timeout=settings.image_fetch_timeout,
        max_bytes=settings.max_image_bytes,
    )
    return GenerationOrchestrator(
        tryon_provider=ImageProviderFactory.create_from_settings(settings, client, fetcher),
        clothing_provider=ImageProviderFactory.create_from_settings(
            settings, client, fetcher, provider_override=settings.clothing_provider
        ),
        cache=build_cache_from_settings(settings),
        fetcher=fetcher,
        limits=RequestLimits.from_settings(settings),
    )
