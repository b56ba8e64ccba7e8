"""
Generation API: try-on (person + clothing) and clothing-from-text.
Success: {"output": data-uri}. Failure: {"error": short message} with a status code
from the pipeline's failure taxonomy (400, 413, 500, 502, 504).
"""
import logging
import time

from fastapi import APIRouter, Depends, Request
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse

from tryon.core.config import settings
from tryon.schemas.generation import ClothingBody, GenerationErrorBody, GenerationResult, TryOnBody
from tryon.services.image_generation import (
    GenerationOrchestrator,
    GenerationOutcome,
    ImagePayload,
    InvalidImageError,
)
from tryon.services.image_generation.codec import estimate_decoded_size, is_http_url
from tryon.services.image_generation.failure_types import MESSAGES

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/api", tags=["generation"])

ERROR_RESPONSES = {
    code: {"model": GenerationErrorBody}
    for code in (400, 413, 500, 502, 504)
}


def get_orchestrator(request: Request) -> GenerationOrchestrator:
    """Orchestrator built in the app lifespan; overridden in tests."""
    return request.app.state.orchestrator


def _error(status_code: int, message: str) -> JSONResponse:
    return JSONResponse(status_code=status_code, content={"error": message})


async def validation_error_handler(request: Request, exc: RequestValidationError) -> JSONResponse:
    """Malformed or mistyped bodies get the same 400 {"error"} shape as other bad input."""
    logger.info(
        "generation_request_malformed",
        extra={"path": request.url.path, "method": request.method, "status_code": 400, "error": str(exc.errors())[:500]},
    )
    if request.url.path.endswith("/generate-clothing"):
        return _error(400, MESSAGES["missing_prompt"])
    return _error(400, MESSAGES["invalid_image"])


def _respond(outcome: GenerationOutcome, request: Request, started: float) -> JSONResponse | GenerationResult:
    status_code = 200 if outcome.ok else outcome.error.status_code
    logger.info(
        "generation_request_finished",
        extra={
            "path": request.url.path,
            "method": request.method,
            "status_code": status_code,
            "latency_ms": int((time.monotonic() - started) * 1000),
            "request_id": request.headers.get(settings.request_id_header),
        },
    )
    if not outcome.ok:
        return _error(outcome.error.status_code, outcome.error.message)
    return GenerationResult(output=outcome.image.to_data_uri(), cached=outcome.cached)


def _oversized(value: str) -> bool:
    return not is_http_url(value) and estimate_decoded_size(value) > settings.max_image_bytes * 2


@router.post("/generate-try-on", response_model=GenerationResult, responses=ERROR_RESPONSES)
async def generate_try_on(
    body: TryOnBody,
    request: Request,
    orchestrator: GenerationOrchestrator = Depends(get_orchestrator),
):
    started = time.monotonic()
    if not body.person_image or not body.clothing_image:
        return _error(400, MESSAGES["missing_images"])
    # Skip decoding bodies far beyond the cap; exact check happens on decoded bytes
    if _oversized(body.person_image) or _oversized(body.clothing_image):
        return _error(413, MESSAGES["too_large"])
    try:
        person = ImagePayload.from_client_value(body.person_image)
        clothing = ImagePayload.from_client_value(body.clothing_image)
    except InvalidImageError:
        return _error(400, MESSAGES["invalid_image"])

    outcome = await orchestrator.generate_try_on(person, clothing)
    return _respond(outcome, request, started)


@router.post("/generate-clothing", response_model=GenerationResult, responses=ERROR_RESPONSES)
async def generate_clothing(
    body: ClothingBody,
    request: Request,
    orchestrator: GenerationOrchestrator = Depends(get_orchestrator),
):
    started = time.monotonic()
    if not body.prompt or not body.prompt.strip():
        return _error(400, MESSAGES["missing_prompt"])
    outcome = await orchestrator.generate_clothing(body.prompt)
    return _respond(outcome, request, started)
