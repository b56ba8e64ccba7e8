"""
Image generation pipeline: codec, result cache, resilient transport, providers, orchestrator.
"""
from .base import (
    ClothingRequest,
    GenerationFailure,
    GenerationOutcome,
    GenerationRequest,
    ImageGenerationError,
    ImageGenerationProvider,
    JobProgress,
    TaskState,
    TryOnRequest,
)
from .cache import ResultCache, cache_key_for, fingerprint
from .codec import (
    ImageFetchError,
    ImagePayload,
    ImageTooLargeError,
    InvalidImageError,
    decode_data_uri,
    encode_data_uri,
    find_first_image_reference,
    to_transport_shape,
)
from .factory import ImageProviderFactory
from .failure_types import ErrorKind, classify_exception, classify_failure
from .fetcher import ImageFetcher
from .orchestrator import GenerationOrchestrator, RequestLimits, build_orchestrator
from .transport import RetryPolicy, call_with_policy

__all__ = [
    "ClothingRequest",
    "GenerationFailure",
    "GenerationOutcome",
    "GenerationRequest",
    "ImageGenerationError",
    "ImageGenerationProvider",
    "JobProgress",
    "TaskState",
    "TryOnRequest",
    "ResultCache",
    "cache_key_for",
    "fingerprint",
    "ImageFetchError",
    "ImagePayload",
    "ImageTooLargeError",
    "InvalidImageError",
    "decode_data_uri",
    "encode_data_uri",
    "find_first_image_reference",
    "to_transport_shape",
    "ImageProviderFactory",
    "ErrorKind",
    "classify_exception",
    "classify_failure",
    "ImageFetcher",
    "GenerationOrchestrator",
    "RequestLimits",
    "build_orchestrator",
    "RetryPolicy",
    "call_with_policy",
]
