"""API routes."""

from fastapi import APIRouter

from salesync.api.routes import conflicts, sales

api_router = APIRouter()

api_router.include_router(conflicts.router, prefix="/sales", tags=["conflicts"])
api_router.include_router(sales.router, prefix="/sales", tags=["sales"])
