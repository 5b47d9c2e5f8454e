from fastapi import APIRouter

from .v1.endpoints import diagnostics, health

api_router = APIRouter()
api_router.include_router(health.router, tags=["health"])
api_router.include_router(diagnostics.router, prefix="/api/v1/diagnostics", tags=["diagnostics"])
