"""
FastAPI application for the CRM assistant.
"""

from contextlib import asynccontextmanager

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware

from .assistant import reset_dependencies, router as assistant_router
from .schemas import HealthResponse
from ..core.background import shutdown_background_queue
from ..core.config import CORS_ORIGINS, VERSION, debug_enabled, validate_config
from ..core.db import health_check, init_db
from ..util.logging import logger


@asynccontextmanager
async def lifespan(app: FastAPI):
    init_db()
    for issue in validate_config():
        logger.warning(f"Configuration issue: {issue}")
    logger.info(f"CRM assistant {VERSION} started")
    yield
    shutdown_background_queue(wait=True)
    reset_dependencies()
    logger.info("CRM assistant stopped")


# Initialize the FastAPI application
app = FastAPI(
    title="CRM Assistant API",
    version=VERSION,
    description="Conversational assistant over owner-scoped CRM records",
    docs_url="/docs" if debug_enabled() else None,
    redoc_url="/redoc" if debug_enabled() else None,
    lifespan=lifespan
)

app.add_middleware(
    CORSMiddleware,
    allow_origins=CORS_ORIGINS,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

app.include_router(assistant_router)


@app.get("/health", response_model=HealthResponse)
def health_check_endpoint():
    """Check system health."""
    db_health = health_check()

    return HealthResponse(
        status="healthy" if db_health else "unhealthy",
        version=VERSION,
        db_health=db_health
    )
