"""Tests for GeminiProvider against a mocked generateContent endpoint."""
import asyncio
import base64
import json

import httpx

from tryon.services.image_generation.base import ClothingRequest, TryOnRequest
from tryon.services.image_generation.codec import ImagePayload
from tryon.services.image_generation.failure_types import MESSAGES, ErrorKind
from tryon.services.image_generation.providers.gemini import GeminiProvider, extract_first_image
from tryon.services.image_generation.transport import RetryPolicy

PERSON = ImagePayload.from_bytes(b"person-bytes", "image/jpeg")
CLOTHING = ImagePayload.from_bytes(b"clothing-bytes", "image/png")
RESULT_BYTES = b"result-image"


def _image_response() -> dict:
    return {
        "candidates": [{
            "content": {"parts": [
                {"text": "Here is the result"},
                {"inlineData": {"mimeType": "image/png", "data": base64.b64encode(RESULT_BYTES).decode()}},
            ]},
            "finishReason": "STOP",
        }],
    }


class Upstream:
    """Replays queued (status, body) pairs and records request bodies."""

    def __init__(self, *responses):
        self.responses = list(responses)
        self.requests = []

    def __call__(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(request)
        status, body = self.responses.pop(0) if len(self.responses) > 1 else self.responses[0]
        return httpx.Response(status, json=body)


def _generate(upstream: Upstream, request, api_key: str = "test-key"):
    async def run():
        async with httpx.AsyncClient(transport=httpx.MockTransport(upstream)) as client:
            provider = GeminiProvider(
                {
                    "api_key": api_key,
                    "model": "gemini-2.5-flash-image",
                    "retry_policy": RetryPolicy(timeout_seconds=5.0, backoff_base_seconds=0.0, jitter_seconds=0.0),
                },
                client,
            )
            return await provider.generate(request)

    return asyncio.run(run())


class TestTryOn:
    def test_success_sends_ordered_parts(self):
        upstream = Upstream((200, _image_response()))
        outcome = _generate(upstream, TryOnRequest(PERSON, CLOTHING))

        assert outcome.ok
        assert outcome.image.data == RESULT_BYTES
        assert outcome.image.mime_type == "image/png"

        request = upstream.requests[0]
        assert request.url.path == "/v1beta/models/gemini-2.5-flash-image:generateContent"
        assert request.url.params["key"] == "test-key"
        parts = json.loads(request.content)["contents"][0]["parts"]
        assert base64.b64decode(parts[0]["inlineData"]["data"]) == b"person-bytes"
        assert parts[0]["inlineData"]["mimeType"] == "image/jpeg"
        assert base64.b64decode(parts[1]["inlineData"]["data"]) == b"clothing-bytes"
        assert "wearing the clothing shown in the second image" in parts[2]["text"]

    def test_rate_limited_twice_then_success(self):
        upstream = Upstream(
            (429, {"error": {"message": "quota"}}),
            (429, {"error": {"message": "quota"}}),
            (200, _image_response()),
        )
        outcome = _generate(upstream, TryOnRequest(PERSON, CLOTHING))
        assert outcome.ok
        assert len(upstream.requests) == 3

    def test_not_found_not_retried(self):
        upstream = Upstream((404, {"error": {"message": "model not found"}}))
        outcome = _generate(upstream, TryOnRequest(PERSON, CLOTHING))
        assert outcome.error.kind == ErrorKind.TERMINAL
        assert outcome.error.status_code == 502
        assert outcome.error.message == MESSAGES["failed"]
        assert len(upstream.requests) == 1

    def test_server_errors_exhausted_transient(self):
        upstream = Upstream((503, {}))
        outcome = _generate(upstream, TryOnRequest(PERSON, CLOTHING))
        assert outcome.error.kind == ErrorKind.TRANSIENT
        assert outcome.error.status_code == 502
        assert len(upstream.requests) == 3

    def test_ok_without_image_is_terminal(self):
        body = {"candidates": [{"content": {"parts": [{"text": "I cannot do that"}]}, "finishReason": "STOP"}]}
        upstream = Upstream((200, body))
        outcome = _generate(upstream, TryOnRequest(PERSON, CLOTHING))
        assert outcome.error.kind == ErrorKind.TERMINAL
        assert outcome.error.message == MESSAGES["no_image"]
        assert len(upstream.requests) == 1

    def test_blocked_prompt_is_terminal(self):
        upstream = Upstream((200, {"promptFeedback": {"blockReason": "SAFETY"}}))
        outcome = _generate(upstream, TryOnRequest(PERSON, CLOTHING))
        assert outcome.error.kind == ErrorKind.TERMINAL
        assert outcome.error.detail["block_reason"] == "SAFETY"

    def test_missing_api_key_makes_no_request(self):
        upstream = Upstream((200, _image_response()))
        outcome = _generate(upstream, TryOnRequest(PERSON, CLOTHING), api_key="")
        assert outcome.error.status_code == 500
        assert outcome.error.message == MESSAGES["not_configured"]
        assert upstream.requests == []


def test_clothing_prompt_wrapped_in_template():
    upstream = Upstream((200, _image_response()))
    outcome = _generate(upstream, ClothingRequest("red silk dress"))
    assert outcome.ok
    parts = json.loads(upstream.requests[0].content)["contents"][0]["parts"]
    assert len(parts) == 1
    assert "red silk dress" in parts[0]["text"]
    assert "White background" in parts[0]["text"]


def test_extract_first_image_scans_all_candidates():
    encoded = base64.b64encode(b"second").decode()
    result = {
        "candidates": [
            {"content": {"parts": [{"text": "no image here"}]}},
            {"content": {"parts": [{"inline_data": {"mime_type": "image/webp", "data": encoded}}]}},
        ],
    }
    image = extract_first_image(result)
    assert image.data == b"second"
    assert image.mime_type == "image/webp"
    assert extract_first_image({}) is None
