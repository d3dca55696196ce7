"""API router for v1 endpoints."""

from fastapi import APIRouter

from app.api import intelligence

router = APIRouter()

# Intelligence job submission, status, cancellation and entity timelines
router.include_router(intelligence.router, tags=["intelligence"])
