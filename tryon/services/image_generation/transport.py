"""
Resilient transport: one upstream operation under a hard per-attempt deadline,
retried with exponential backoff and jitter on transient failures only.
Terminal failures are never retried; exhaustion is reported as TIMEOUT (504) when the
last attempt hit the deadline, TRANSIENT (502) otherwise.
"""
import asyncio
import logging
import random
from dataclasses import dataclass
from typing import Any, Awaitable, Callable, TypeVar

import httpx

from tryon.services.image_generation.base import ImageGenerationError
from tryon.services.image_generation.failure_types import ErrorKind, classify_exception
from tryon.utils.metrics import upstream_retries_total

logger = logging.getLogger(__name__)

T = TypeVar("T")


@dataclass(frozen=True)
class RetryPolicy:
    timeout_seconds: float
    max_retries: int = 2
    backoff_base_seconds: float = 0.7
    jitter_seconds: float = 0.2
    retry_after_max_seconds: float = 10.0

    @classmethod
    def from_settings(cls, settings: Any, timeout_seconds: float) -> "RetryPolicy":
        return cls(
            timeout_seconds=timeout_seconds,
            max_retries=getattr(settings, "generation_max_retries", 2),
            backoff_base_seconds=getattr(settings, "generation_backoff_base_seconds", 0.7),
            jitter_seconds=getattr(settings, "generation_backoff_jitter_seconds", 0.2),
            retry_after_max_seconds=getattr(settings, "generation_retry_after_max_seconds", 10.0),
        )

    def backoff(self, attempt: int) -> float:
        """Delay before retry number attempt+1 (attempt is zero-based)."""
        return self.backoff_base_seconds * (2 ** attempt) + random.uniform(0, self.jitter_seconds)


def _retry_after_seconds(exc: BaseException) -> float | None:
    if not isinstance(exc, httpx.HTTPStatusError) or exc.response.status_code != 429:
        return None
    value = exc.response.headers.get("Retry-After")
    if value is None:
        return None
    try:
        return float(value)
    except (TypeError, ValueError):
        return None


async def call_with_policy(
    operation: Callable[[], Awaitable[T]],
    policy: RetryPolicy,
    *,
    label: str = "upstream",
    sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep,
) -> T:
    """
    Await operation() with policy.timeout_seconds per attempt and up to policy.max_retries retries.
    Raises ImageGenerationError with kind TIMEOUT, TRANSIENT or TERMINAL.
    """
    attempts = policy.max_retries + 1
    for attempt in range(attempts):
        try:
            return await asyncio.wait_for(operation(), timeout=policy.timeout_seconds)
        except Exception as e:
            kind, retry_allowed, http_status = classify_exception(e)
            detail = dict(e.detail) if isinstance(e, ImageGenerationError) else {}
            if http_status is not None:
                detail["http_status"] = http_status
            detail["attempts"] = attempt + 1

            if not retry_allowed:
                logger.warning(
                    "upstream_terminal_failure",
                    extra={
                        "provider": label,
                        "attempt": attempt + 1,
                        "failure_type": kind.value,
                        "status_code": http_status,
                        "error": f"{type(e).__name__}: {e}",
                    },
                )
                if isinstance(e, ImageGenerationError):
                    e.kind = kind
                    e.detail = detail
                    raise
                raise ImageGenerationError(str(e), kind=kind, detail=detail) from e

            if attempt + 1 >= attempts:
                logger.warning(
                    "upstream_retries_exhausted",
                    extra={
                        "provider": label,
                        "attempt": attempt + 1,
                        "max_attempts": attempts,
                        "failure_type": kind.value,
                        "status_code": http_status,
                        "error": f"{type(e).__name__}: {e}",
                    },
                )
                final_kind = ErrorKind.TIMEOUT if kind == ErrorKind.TIMEOUT else ErrorKind.TRANSIENT
                raise ImageGenerationError(
                    f"{label} failed after {attempts} attempts: {type(e).__name__}: {e}",
                    kind=final_kind,
                    detail=detail,
                ) from e

            delay = policy.backoff(attempt)
            retry_after = _retry_after_seconds(e)
            if retry_after is not None and retry_after > delay:
                delay = max(delay, min(retry_after, policy.retry_after_max_seconds))
            upstream_retries_total.labels(label=label, failure_type=kind.value).inc()
            logger.info(
                "upstream_retry_scheduled",
                extra={
                    "provider": label,
                    "attempt": attempt + 1,
                    "max_attempts": attempts,
                    "delay_seconds": round(delay, 2),
                    "failure_type": kind.value,
                    "status_code": http_status,
                },
            )
            await sleep(delay)

    raise RuntimeError("call_with_policy: no result and no error")
