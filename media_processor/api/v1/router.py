"""
API router configuration
"""

from fastapi import APIRouter
from media_processor.api.v1.endpoints import health

router = APIRouter()

router.include_router(health.router)
