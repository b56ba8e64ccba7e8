"""
Base classes and types for image generation providers.
Used by the factory, the orchestrator and all providers (gemini, piapi).
"""
import logging
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Callable

import httpx

from tryon.services.image_generation.codec import ImagePayload
from tryon.services.image_generation.failure_types import (
    ErrorKind,
    MESSAGES,
    STATUS_CODES,
)

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class TryOnRequest:
    """Dress the person in the first image with the garment in the second."""
    person: ImagePayload
    clothing: ImagePayload

    kind = "try_on"


@dataclass(frozen=True)
class ClothingRequest:
    """Render a garment from a text description."""
    prompt: str

    kind = "clothing"


GenerationRequest = TryOnRequest | ClothingRequest


class ImageGenerationError(Exception):
    """
    Raised inside providers and the transport when generation fails.
    kind may be left None for the classifier to decide from detail (http_status, block reasons).
    """

    def __init__(
        self,
        message: str,
        kind: ErrorKind | None = None,
        detail: dict[str, Any] | None = None,
        status_code: int | None = None,
        user_message: str | None = None,
    ):
        super().__init__(message)
        self.kind = kind
        self.detail = detail or {}
        self.status_code = status_code
        self.user_message = user_message


@dataclass(frozen=True)
class GenerationFailure:
    kind: ErrorKind
    status_code: int
    message: str
    detail: dict[str, Any] = field(default_factory=dict)

    @classmethod
    def of(cls, kind: ErrorKind, message_key: str | None = None, status_code: int | None = None,
           detail: dict[str, Any] | None = None) -> "GenerationFailure":
        if message_key is None:
            message_key = "timeout" if kind == ErrorKind.TIMEOUT else "failed"
        return cls(
            kind=kind,
            status_code=status_code or STATUS_CODES[kind],
            message=MESSAGES[message_key],
            detail=detail or {},
        )


@dataclass(frozen=True)
class GenerationOutcome:
    """Either an image (success) or a classified failure."""
    image: ImagePayload | None = None
    error: GenerationFailure | None = None
    cached: bool = False

    @property
    def ok(self) -> bool:
        return self.error is None

    @classmethod
    def success(cls, image: ImagePayload, cached: bool = False) -> "GenerationOutcome":
        return cls(image=image, cached=cached)

    @classmethod
    def failure(cls, error: GenerationFailure) -> "GenerationOutcome":
        return cls(error=error)


class TaskState(str, Enum):
    """Observable states of an asynchronous provider job."""
    UPLOADING = "uploading"
    TASK_CREATED = "task_created"
    POLLING = "polling"
    SUCCEEDED = "succeeded"
    FAILED = "failed"
    POLL_TIMED_OUT = "poll_timed_out"


@dataclass(frozen=True)
class JobProgress:
    state: TaskState
    elapsed_seconds: float = 0.0
    task_id: str | None = None


ProgressCallback = Callable[[JobProgress], None]


def build_gemini_error_detail(result: dict[str, Any]) -> dict[str, Any]:
    """
    Extract error-related fields from raw Gemini API response for logging and classification.
    Normalized keys: prompt_feedback, block_reason, finish_reason, finish_message.
    """
    detail: dict[str, Any] = {}
    if not result:
        return detail
    prompt_feedback = result.get("promptFeedback") or {}
    if prompt_feedback:
        detail["prompt_feedback"] = prompt_feedback
        if prompt_feedback.get("blockReason"):
            detail["block_reason"] = prompt_feedback.get("blockReason")
    candidates = result.get("candidates") or []
    if candidates:
        c0 = candidates[0]
        if "finishReason" in c0:
            detail["finish_reason"] = c0["finishReason"]
        if "finishMessage" in c0:
            detail["finish_message"] = c0["finishMessage"]
    return detail


def _sanitize_value(value: Any) -> Any:
    """Recursively replace base64 data with placeholder."""
    if value is None:
        return None
    if isinstance(value, dict):
        if "data" in value and "mimeType" in value:
            return {"mimeType": value.get("mimeType"), "data": "[REDACTED]"}
        return {k: _sanitize_value(v) for k, v in value.items()}
    if isinstance(value, list):
        return [_sanitize_value(v) for v in value]
    if isinstance(value, str) and value.startswith("data:"):
        return value[:32] + "...[REDACTED]"
    return value


def sanitize_response_for_log(result: Any) -> dict[str, Any]:
    """Return a copy of a provider response safe for logging (no base64 image data)."""
    if not result:
        return {}
    out = _sanitize_value(result)
    return out if isinstance(out, dict) else {"value": out}


class ImageGenerationProvider(ABC):
    """Base class for image generation providers."""

    name = "base"

    def __init__(self, config: dict, client: httpx.AsyncClient) -> None:
        self.config = config
        self.client = client

    @abstractmethod
    def is_available(self) -> bool:
        """Check if provider is configured (credentials present)."""
        pass

    def supports(self, request: GenerationRequest) -> bool:
        """Override if provider handles only some request kinds."""
        return True

    @abstractmethod
    async def _generate(
        self,
        request: GenerationRequest,
        on_progress: ProgressCallback | None = None,
    ) -> ImagePayload:
        """Produce an inline image. Raises ImageGenerationError on failure."""
        pass

    async def generate(
        self,
        request: GenerationRequest,
        on_progress: ProgressCallback | None = None,
    ) -> GenerationOutcome:
        """Run the provider and convert its errors into a typed outcome."""
        if not self.is_available():
            logger.error("provider_not_configured", extra={"provider": self.name})
            return GenerationOutcome.failure(
                GenerationFailure.of(ErrorKind.TERMINAL, "not_configured", status_code=500)
            )
        if not self.supports(request):
            logger.error(
                "provider_unsupported_request",
                extra={"provider": self.name, "request_kind": request.kind},
            )
            return GenerationOutcome.failure(
                GenerationFailure.of(ErrorKind.TERMINAL, "not_configured", status_code=500)
            )
        try:
            image = await self._generate(request, on_progress)
        except ImageGenerationError as e:
            kind = e.kind or ErrorKind.TERMINAL
            logger.warning(
                "provider_generation_failed",
                extra={
                    "provider": self.name,
                    "request_kind": request.kind,
                    "failure_type": kind.value,
                    "error": str(e),
                },
            )
            return GenerationOutcome.failure(
                GenerationFailure.of(kind, e.user_message, status_code=e.status_code, detail=e.detail)
            )
        except Exception as e:
            logger.exception(
                "provider_unexpected_error",
                extra={"provider": self.name, "request_kind": request.kind, "error": type(e).__name__},
            )
            return GenerationOutcome.failure(GenerationFailure.of(ErrorKind.TERMINAL))
        return GenerationOutcome.success(image)
