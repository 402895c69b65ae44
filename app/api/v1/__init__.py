"""
API v1 router initialization and setup.
"""
from fastapi import APIRouter
from .endpoints import imports

api_router = APIRouter()

api_router.include_router(
    imports.router,
    prefix="/imports",
    tags=["imports"]
)
