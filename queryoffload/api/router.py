from fastapi import APIRouter
from queryoffload.api.endpoints import health, jobs

api_router = APIRouter()

# Combine all sub-routers into one
api_router.include_router(jobs.router)
api_router.include_router(health.router)
