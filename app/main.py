"""FastAPI application entry point."""

from collections.abc import AsyncGenerator
from contextlib import asynccontextmanager

from fastapi import FastAPI
from fastapi.responses import JSONResponse

from app.api import router as api_router
from app.core.config import get_settings
from app.core.logging import get_logger
from app.services.intelligence_runner import get_intelligence_runner

logger = get_logger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI) -> AsyncGenerator[None, None]:
    logger.info(f"CRM Intelligence Engine starting (env={get_settings().INTEL_ENGINE_ENV})")
    yield
    # In-flight runs are abandoned with the process; their rows stay pending/running
    active = get_intelligence_runner().active_runs
    if active:
        logger.warning(f"Shutting down with {active} analysis run(s) in flight")


app = FastAPI(
    title="CRM Intelligence Engine",
    description="Agentic contact, company and deal analysis with versioned job history",
    version="0.1.0",
    lifespan=lifespan,
)


@app.get("/health")
async def health_check() -> JSONResponse:
    """Health check endpoint."""
    return JSONResponse(content={"status": "ok"}, status_code=200)


# Include v1 API router
app.include_router(api_router, prefix="/v1", tags=["v1"])
