"""
Image codec: data-URIs, bare base64, provider transport shape, and reference search
over free-form provider payloads.
"""
from __future__ import annotations

import base64
import binascii
import re
from collections import deque
from dataclasses import dataclass
from typing import TYPE_CHECKING, Any
from urllib.parse import urlsplit

if TYPE_CHECKING:
    from tryon.services.image_generation.fetcher import ImageFetcher

DEFAULT_MIME_TYPE = "image/png"
SUPPORTED_MIME_TYPES = frozenset({"image/png", "image/jpeg", "image/webp"})
MIME_ALIASES = {"image/jpg": "image/jpeg", "image/pjpeg": "image/jpeg"}
MIME_EXTENSIONS = {"image/png": "png", "image/jpeg": "jpg", "image/webp": "webp"}

VIDEO_EXTENSIONS = (".mp4", ".mov", ".webm", ".m4v", ".avi", ".mkv")
IMAGE_EXTENSIONS = (".png", ".jpg", ".jpeg", ".webp", ".gif", ".bmp", ".tiff")

_DATA_URI_RE = re.compile(r"^data:(?P<mime>[\w.+-]+/[\w.+-]+)?(?:;[^,;]*)*;base64,", re.IGNORECASE)


class InvalidImageError(ValueError):
    """Raised when an image value cannot be decoded into bytes."""


class ImageFetchError(Exception):
    """Raised when a remote image cannot be loaded by any route."""


class ImageTooLargeError(ImageFetchError):
    """Raised when a remote image exceeds the byte cap while downloading."""


def normalize_mime_type(value: str | None) -> str:
    """Map a declared content type onto the supported set; png when undetermined."""
    if not value:
        return DEFAULT_MIME_TYPE
    mime = value.split(";", 1)[0].strip().lower()
    mime = MIME_ALIASES.get(mime, mime)
    return mime if mime in SUPPORTED_MIME_TYPES else DEFAULT_MIME_TYPE


def extension_for(mime_type: str) -> str:
    return MIME_EXTENSIONS.get(normalize_mime_type(mime_type), "png")


@dataclass(frozen=True)
class ImagePayload:
    """An image either held as bytes (with MIME type) or referenced by URI. Exactly one is set."""

    data: bytes | None = None
    mime_type: str = DEFAULT_MIME_TYPE
    uri: str | None = None

    def __post_init__(self) -> None:
        if (self.data is None) == (self.uri is None):
            raise ValueError("ImagePayload needs exactly one of data or uri")
        object.__setattr__(self, "mime_type", normalize_mime_type(self.mime_type))

    @classmethod
    def from_bytes(cls, data: bytes, mime_type: str | None = None) -> ImagePayload:
        return cls(data=data, mime_type=mime_type or DEFAULT_MIME_TYPE)

    @classmethod
    def from_uri(cls, uri: str) -> ImagePayload:
        return cls(uri=uri)

    @classmethod
    def from_client_value(cls, value: str) -> ImagePayload:
        """Build from what a client sends: an http(s) URL, a data-URI, or bare base64."""
        value = value.strip()
        if is_http_url(value):
            return cls.from_uri(value)
        mime_type, data = decode_data_uri(value)
        return cls.from_bytes(data, mime_type)

    @property
    def is_inline(self) -> bool:
        return self.data is not None

    @property
    def size(self) -> int:
        return len(self.data) if self.data is not None else 0

    def to_data_uri(self) -> str:
        if self.data is None:
            raise ValueError("URI payload has no inline bytes; resolve it first")
        return encode_data_uri(self.mime_type, self.data)


def is_http_url(value: str) -> bool:
    return value[:8].lower().startswith(("http://", "https://"))


def split_data_uri(value: str) -> tuple[str, str]:
    """
    Return (mime_type, base64_body). Input without a recognized data-URI header
    passes through unchanged as the body, with the default MIME type.
    """
    match = _DATA_URI_RE.match(value)
    if not match:
        return DEFAULT_MIME_TYPE, value
    return normalize_mime_type(match.group("mime")), value[match.end():]


def decode_data_uri(value: str) -> tuple[str, bytes]:
    """Decode a data-URI (or bare base64) into (mime_type, raw bytes)."""
    mime_type, body = split_data_uri(value)
    body = "".join(body.split())
    try:
        return mime_type, base64.b64decode(body + "=" * (-len(body) % 4))
    except (binascii.Error, ValueError) as e:
        raise InvalidImageError("Image is not valid base64") from e


def encode_data_uri(mime_type: str, data: bytes) -> str:
    b64 = base64.standard_b64encode(data).decode("ascii")
    return f"data:{normalize_mime_type(mime_type)};base64,{b64}"


def estimate_decoded_size(value: str) -> int:
    """Cheap size estimate (3 bytes per 4 base64 chars) without decoding."""
    _, body = split_data_uri(value)
    return len(body) * 3 // 4


async def to_transport_shape(payload: ImagePayload, fetcher: ImageFetcher) -> ImagePayload:
    """
    Return the payload in inline-bytes form. URI payloads are fetched; the declared
    content type is recorded (png when absent). Raises ImageFetchError on failure.
    """
    if payload.is_inline:
        return payload
    return await fetcher.fetch(payload.uri)


def _looks_like_image_reference(value: str) -> bool:
    if value[:11].lower() == "data:image/":
        return True
    if not is_http_url(value):
        return False
    path = urlsplit(value).path.lower()
    if path.endswith(VIDEO_EXTENSIONS):
        return False
    return path.endswith(IMAGE_EXTENSIONS)


def find_first_image_reference(value: Any) -> str | None:
    """
    Breadth-first search of an arbitrarily nested dict/list/str structure for the first
    string that looks like an image (image data-URI or http(s) URL with an image extension).
    Each container is visited at most once, so cyclic structures terminate.
    """
    queue: deque[Any] = deque([value])
    seen: set[int] = set()
    while queue:
        current = queue.popleft()
        if current is None:
            continue
        if isinstance(current, str):
            if _looks_like_image_reference(current):
                return current
            continue
        if not isinstance(current, (dict, list, tuple)):
            continue
        if id(current) in seen:
            continue
        seen.add(id(current))
        if isinstance(current, dict):
            queue.extend(current.values())
        else:
            queue.extend(current)
    return None
