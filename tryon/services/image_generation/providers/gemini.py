"""
Gemini provider (Google AI generateContent image generation).
Single call per attempt: two inline images + instruction for try-on, one text part for clothing.
200 OK without an image is never a silent success.
"""
import base64
import binascii
import logging
from typing import Any

import httpx

from tryon.services.image_generation.base import (
    ClothingRequest,
    GenerationRequest,
    ImageGenerationError,
    ImageGenerationProvider,
    ProgressCallback,
    TryOnRequest,
    build_gemini_error_detail,
    sanitize_response_for_log,
)
from tryon.services.image_generation.codec import ImagePayload
from tryon.services.image_generation.failure_types import ErrorKind
from tryon.services.image_generation.transport import RetryPolicy, call_with_policy
from tryon.utils.metrics import provider_requests_total

logger = logging.getLogger(__name__)

DEFAULT_MODEL = "gemini-2.5-flash-image"

TRY_ON_INSTRUCTION = (
    "Generate a realistic, high-quality full-body photo of the person in the first image "
    "wearing the clothing shown in the second image. Maintain the person's identity, facial "
    "features, pose, and body shape exactly. Replace their original outfit with the new "
    "clothing naturally. The background should be simple and clean."
)

CLOTHING_PROMPT_TEMPLATE = (
    "A high-quality, flat-lay or mannequin style product photography of a piece of clothing: "
    "{prompt}. White background, studio lighting, clear details."
)


def _inline_part(image: ImagePayload) -> dict[str, Any]:
    return {
        "inlineData": {
            "mimeType": image.mime_type,
            "data": base64.standard_b64encode(image.data).decode("ascii"),
        },
    }


def build_parts(request: GenerationRequest) -> list[dict[str, Any]]:
    """Ordered parts: [person, clothing, instruction] or [enhanced prompt]."""
    if isinstance(request, TryOnRequest):
        return [
            _inline_part(request.person),
            _inline_part(request.clothing),
            {"text": TRY_ON_INSTRUCTION},
        ]
    if isinstance(request, ClothingRequest):
        return [{"text": CLOTHING_PROMPT_TEMPLATE.format(prompt=request.prompt)}]
    raise TypeError(f"Unsupported request: {type(request).__name__}")


def extract_first_image(result: dict[str, Any]) -> ImagePayload | None:
    """First inline image over all candidates and parts."""
    for candidate in result.get("candidates") or []:
        content = candidate.get("content") or {}
        for part in content.get("parts") or []:
            inline = part.get("inlineData") or part.get("inline_data")
            if not inline or not isinstance(inline.get("data"), str):
                continue
            try:
                data = base64.standard_b64decode(inline["data"])
            except (binascii.Error, ValueError):
                continue
            mime = inline.get("mimeType") or inline.get("mime_type")
            return ImagePayload.from_bytes(data, mime)
    return None


class GeminiProvider(ImageGenerationProvider):
    """Gemini image generation via Google AI generateContent API."""

    name = "gemini"

    def __init__(self, config: dict, client: httpx.AsyncClient) -> None:
        super().__init__(config, client)
        self.api_key = (config.get("api_key") or "").strip()
        endpoint = (config.get("api_endpoint") or "https://generativelanguage.googleapis.com").rstrip("/")
        self.base_url = f"{endpoint}/v1beta/models"
        self.model_name = (config.get("model") or DEFAULT_MODEL).strip()
        self.policy: RetryPolicy = config.get("retry_policy") or RetryPolicy(
            timeout_seconds=float(config.get("timeout", 70.0))
        )

    def is_available(self) -> bool:
        return bool(self.api_key)

    async def _post(self, payload: dict[str, Any]) -> dict[str, Any]:
        url = f"{self.base_url}/{self.model_name}:generateContent"
        resp = await self.client.post(
            url,
            params={"key": self.api_key},
            json=payload,
            timeout=self.policy.timeout_seconds,
        )
        provider_requests_total.labels(provider=self.name, status=str(resp.status_code)).inc()
        if resp.status_code >= 400:
            try:
                err_body = resp.json()
            except ValueError:
                err_body = {}
            logger.warning(
                "gemini_error_response",
                extra={
                    "provider": self.name,
                    "status_code": resp.status_code,
                    "error": (err_body.get("error") or {}).get("message") if isinstance(err_body, dict) else None,
                },
            )
        resp.raise_for_status()
        return resp.json()

    async def _generate(
        self,
        request: GenerationRequest,
        on_progress: ProgressCallback | None = None,
    ) -> ImagePayload:
        payload = {
            "contents": [{"role": "user", "parts": build_parts(request)}],
            "generationConfig": {"responseModalities": ["TEXT", "IMAGE"]},
        }

        result = await call_with_policy(lambda: self._post(payload), self.policy, label=self.name)

        prompt_feedback = result.get("promptFeedback") or {}
        if prompt_feedback.get("blockReason"):
            detail = build_gemini_error_detail(result)
            raise ImageGenerationError(
                f"Request blocked: {prompt_feedback['blockReason']}",
                kind=ErrorKind.TERMINAL,
                detail=detail,
                user_message="no_image",
            )

        image = extract_first_image(result)
        if image is None:
            detail = build_gemini_error_detail(result)
            logger.warning(
                "gemini_no_image",
                extra={"provider": self.name, "request_kind": request.kind, "error": str(sanitize_response_for_log(result))[:2000]},
            )
            raise ImageGenerationError(
                "No image in Gemini response",
                kind=ErrorKind.TERMINAL,
                detail=detail,
                user_message="no_image",
            )
        return image
