"""
Main FastAPI application for the Try-On generation API.
Serves health, generation routes and metrics.
"""
from contextlib import asynccontextmanager

import httpx
from fastapi import FastAPI
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware

from tryon.core.config import settings
from tryon.core.logging import configure_logging
from tryon.api.routes import generation, health
from tryon.services.image_generation import build_orchestrator
from tryon.utils.metrics import router as metrics_router


@asynccontextmanager
async def lifespan(app: FastAPI):
    configure_logging()
    # outbound_proxy is a development-only override
    async with httpx.AsyncClient(proxy=settings.outbound_proxy or None, timeout=settings.gemini_timeout) as client:
        app.state.orchestrator = build_orchestrator(settings, client)
        yield
        await app.state.orchestrator.cache.aclose()


app = FastAPI(
    title="Try-On Generation API",
    description="Person + clothing try-on and clothing-from-text image generation",
    version="1.0.0",
    lifespan=lifespan,
)

# CORS
origins = [o.strip() for o in settings.cors_origins.split(",") if o.strip()]
if not origins:
    origins = ["http://localhost:3000", "http://127.0.0.1:3000", "http://localhost:5173"]
app.add_middleware(
    CORSMiddleware,
    allow_origins=origins,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

# Routers
app.include_router(health.router, tags=["health"])
app.include_router(generation.router)
app.add_exception_handler(RequestValidationError, generation.validation_error_handler)
app.include_router(metrics_router)
