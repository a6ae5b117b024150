"""API Routes module"""
from fastapi import APIRouter

from .requests import router as requests_router
from .admin_m365 import router as admin_m365_router

# Main API router
api_router = APIRouter()

api_router.include_router(requests_router, prefix="/requests", tags=["Requests"])
api_router.include_router(admin_m365_router, prefix="/admin/m365", tags=["Mail Integration"])

__all__ = ["api_router"]
