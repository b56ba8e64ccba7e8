"""
Remote image fetch with a fixed-priority relay fallback chain.
Used for client-supplied image URLs and for provider output URLs.
Bodies are streamed and abandoned as soon as they exceed max_bytes.
"""
import logging
from urllib.parse import quote, urlsplit

import httpx

from tryon.services.image_generation.codec import (
    ImageFetchError,
    ImagePayload,
    ImageTooLargeError,
    normalize_mime_type,
)
from tryon.utils.metrics import image_fetch_total

logger = logging.getLogger(__name__)


class ImageFetcher:
    """Direct GET first, then each relay template in order; first success wins."""

    def __init__(
        self,
        client: httpx.AsyncClient,
        relays: list[str] | None = None,
        timeout: float = 20.0,
        max_bytes: int | None = None,
    ) -> None:
        self.client = client
        self.relays = list(relays or [])
        self.timeout = timeout
        self.max_bytes = max_bytes

    def _routes(self, url: str) -> list[tuple[str, str]]:
        encoded = quote(url, safe="")
        routes = [("direct", url)]
        for template in self.relays:
            routes.append((urlsplit(template).netloc or template, template.replace("{url}", encoded)))
        return routes

    def _too_large(self, size: int) -> bool:
        return self.max_bytes is not None and size > self.max_bytes

    async def _get(self, target: str) -> ImagePayload:
        async with self.client.stream("GET", target, timeout=self.timeout, follow_redirects=True) as resp:
            resp.raise_for_status()
            declared = resp.headers.get("content-length", "")
            if declared.isdigit() and self._too_large(int(declared)):
                raise ImageTooLargeError(f"Image is {declared} bytes, limit is {self.max_bytes}")
            chunks: list[bytes] = []
            received = 0
            async for chunk in resp.aiter_bytes():
                received += len(chunk)
                if self._too_large(received):
                    raise ImageTooLargeError(f"Image exceeds {self.max_bytes} bytes")
                chunks.append(chunk)
            content_type = resp.headers.get("content-type")
        if not received:
            raise ImageFetchError("Empty response body")
        return ImagePayload.from_bytes(b"".join(chunks), normalize_mime_type(content_type))

    async def fetch(self, url: str) -> ImagePayload:
        """
        Raises ImageTooLargeError without trying further routes when the image is over
        max_bytes, ImageFetchError once every route has failed.
        """
        last_error: Exception | None = None
        for route, target in self._routes(url):
            try:
                image = await self._get(target)
            except ImageTooLargeError:
                image_fetch_total.labels(route=route, status="too_large").inc()
                raise
            except (httpx.HTTPError, ImageFetchError) as e:
                last_error = e
                image_fetch_total.labels(route=route, status="error").inc()
                logger.warning(
                    "image_fetch_failed",
                    extra={"relay": route, "error": f"{type(e).__name__}: {e}"},
                )
                continue
            image_fetch_total.labels(route=route, status="success").inc()
            if route != "direct":
                logger.info("image_fetch_via_relay", extra={"relay": route})
            return image
        raise ImageFetchError(
            "Cannot load image. Please download it and upload the file instead."
        ) from last_error
