from fastapi import APIRouter, Request, Response

from tryon.services.image_generation.cache import RedisTier


router = APIRouter()


@router.get("/health")
def health() -> dict:
    """Liveness probe - always returns 200 if app is running."""
    return {"status": "ok"}


@router.get("/ready")
async def readiness(request: Request, response: Response) -> dict:
    """Readiness probe - returns 503 if the redis cache tier is configured but unreachable."""
    orchestrator = getattr(request.app.state, "orchestrator", None)
    if orchestrator is None:
        response.status_code = 503
        return {"status": "not_ready", "error": "orchestrator not initialized"}
    durable = orchestrator.cache.durable
    try:
        if isinstance(durable, RedisTier):
            await durable.ping()
        return {
            "status": "ready",
            "tryon_provider": orchestrator.tryon_provider.name,
            "tryon_provider_configured": orchestrator.tryon_provider.is_available(),
            "clothing_provider": orchestrator.clothing_provider.name,
            "clothing_provider_configured": orchestrator.clothing_provider.is_available(),
        }
    except Exception as e:
        response.status_code = 503
        return {"status": "not_ready", "error": str(e)}
