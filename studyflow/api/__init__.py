"""
API routes initialization.

This module aggregates all API routers and provides a single router
to include in the main application.
"""

from fastapi import APIRouter

from studyflow.api.routes import jobs, units

# Create main API router
api_router = APIRouter()

# Content unit routes (creation, ingestion, pipeline status)
api_router.include_router(units.router)

# Job routes
api_router.include_router(jobs.router)
