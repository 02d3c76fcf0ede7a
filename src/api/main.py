"""FastAPI application entry point."""

from contextlib import asynccontextmanager

from dotenv import load_dotenv
from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

# Load environment variables before importing runtime config/services.
load_dotenv()

from .logging_config import setup_logging

setup_logging()

import logging

from .config import settings
from .errors import AppError
from .routers import ai, rag_config
from .services.ai_service_bootstrap import bootstrap_ai_service

logger = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Build the answer pipeline once per process and release the cache client on shutdown."""
    logger.info("=== Application startup initialization ===")
    bundle = bootstrap_ai_service()
    app.state.rag_config_service = bundle.config_service
    app.state.health = bundle.health
    app.state.rag_cache = bundle.cache
    app.state.document_store = bundle.document_store
    app.state.rag_service = bundle.rag_service
    app.state.ai_service = bundle.ai_service
    logger.info("RAG config: %s", bundle.config_service.config_path)
    logger.info("Context cache: %s", "enabled" if bundle.cache.is_configured() else "disabled")
    try:
        yield
    finally:
        await bundle.cache.close()
        logger.info("=== Application shutdown complete ===")


app = FastAPI(
    title="RAG Answer API",
    description="Multi-tenant retrieval-augmented question answering over documents and the web",
    version="1.0.0",
    lifespan=lifespan,
)

# Configure CORS
app.add_middleware(
    CORSMiddleware,
    allow_origins=settings.cors_origins,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

# Register routers
app.include_router(ai.router)
app.include_router(rag_config.router)

logger.info("=" * 80)
logger.info("FastAPI Application Started")
logger.info("CORS Origins: %s", settings.cors_origins)
logger.info("=" * 80)


@app.exception_handler(AppError)
async def app_error_handler(request: Request, exc: AppError):
    if exc.status_code >= 500:
        logger.error("%s %s failed: [%s] %s", request.method, request.url.path, exc.code, exc.message)
    return JSONResponse(status_code=exc.status_code, content=exc.to_dict())


@app.get("/api/health")
async def health_check(request: Request):
    """Health check endpoint."""
    health = getattr(request.app.state, "health", None)
    if health is None:
        return {"status": "ok"}
    snapshot = health.snapshot()
    return {"status": "ok", "degradation_level": snapshot["degradation_level"]}
