"""Main API router that aggregates all route modules."""

from fastapi import APIRouter

from jobqueue.api.routes import jobs

api_router = APIRouter()

api_router.include_router(jobs.router, prefix="/jobs", tags=["jobs"])
