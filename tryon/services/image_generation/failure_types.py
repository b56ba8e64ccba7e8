"""
Failure taxonomy for the generation pipeline.
Classifies API and transport failures for retry policy, status mapping and observability.
"""
import asyncio
from enum import Enum
from typing import Any

import httpx


class ErrorKind(str, Enum):
    """User-facing failure classes."""

    INVALID_INPUT = "invalid_input"  # missing / oversized / malformed request, 4xx
    TRANSIENT = "transient"  # 429, 5xx, network blip; retried, 502 after exhaustion
    TERMINAL = "terminal"  # explicit rejection, no usable image, missing credential
    TIMEOUT = "timeout"  # per-attempt deadline or poll budget, 504


# Short localized messages returned to callers; provider bodies never are.
MESSAGES = {
    "missing_images": "Missing images",
    "missing_prompt": "Missing prompt",
    "prompt_too_long": "Prompt is too long",
    "invalid_image": "Image could not be read, please upload another file",
    "cannot_load_image": "Cannot load image, please download it and upload the file instead",
    "too_large": "Image too large, please compress",
    "failed": "Generation failed, please retry",
    "timeout": "Generation timed out, please retry",
    "no_image": "No image generated, please retry",
    "not_configured": "Server configuration error: API key missing",
}

STATUS_CODES = {
    ErrorKind.INVALID_INPUT: 400,
    ErrorKind.TRANSIENT: 502,
    ErrorKind.TERMINAL: 502,
    ErrorKind.TIMEOUT: 504,
}

# finishReason values that mean the model refused; never retried
BLOCKING_FINISH_REASONS = frozenset({
    "SAFETY",
    "BLOCKLIST",
    "SPII",
    "PROHIBITED_CONTENT",
    "RECITATION",
    "IMAGE_SAFETY",
    "OTHER",
})


def classify_failure(
    http_status: int | None,
    detail: dict[str, Any],
) -> tuple[ErrorKind, bool]:
    """
    Classify failure from HTTP status and provider detail.
    Returns (kind, retry_allowed).
    """
    if http_status is not None:
        if http_status == 429:
            return (ErrorKind.TRANSIENT, True)
        if 500 <= http_status < 600:
            return (ErrorKind.TRANSIENT, True)
        if 400 <= http_status < 500:
            return (ErrorKind.TERMINAL, False)

    prompt_feedback = detail.get("prompt_feedback") or {}
    if detail.get("block_reason") or prompt_feedback.get("blockReason"):
        return (ErrorKind.TERMINAL, False)

    finish_reason = (detail.get("finish_reason") or "").strip().upper()
    if finish_reason in BLOCKING_FINISH_REASONS:
        return (ErrorKind.TERMINAL, False)
    if finish_reason and finish_reason != "STOP":
        return (ErrorKind.TERMINAL, False)

    # Provider answered but with nothing usable (no candidates, no image)
    if detail:
        return (ErrorKind.TERMINAL, False)

    # No status, no detail: network-level failure
    return (ErrorKind.TRANSIENT, True)


def classify_exception(exc: BaseException) -> tuple[ErrorKind, bool, int | None]:
    """
    Map an exception raised by one upstream attempt onto (kind, retry_allowed, http_status).
    Deadline and httpx transport errors are retryable; HTTP status errors follow classify_failure.
    """
    # Local import: base imports this module
    from tryon.services.image_generation.base import ImageGenerationError

    if isinstance(exc, asyncio.TimeoutError):
        return (ErrorKind.TIMEOUT, True, None)
    if isinstance(exc, httpx.TimeoutException):
        return (ErrorKind.TIMEOUT, True, None)
    if isinstance(exc, httpx.HTTPStatusError):
        status = exc.response.status_code
        kind, retry_allowed = classify_failure(status, {})
        return (kind, retry_allowed, status)
    if isinstance(exc, (httpx.NetworkError, httpx.RemoteProtocolError, httpx.ProxyError)):
        return (ErrorKind.TRANSIENT, True, None)
    if isinstance(exc, ImageGenerationError):
        status = exc.detail.get("http_status")
        if exc.kind is not None:
            return (exc.kind, exc.kind in (ErrorKind.TRANSIENT, ErrorKind.TIMEOUT), status)
        kind, retry_allowed = classify_failure(status, exc.detail)
        return (kind, retry_allowed, status)
    return (ErrorKind.TERMINAL, False, None)
