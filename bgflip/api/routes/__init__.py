"""
API Router Module

All endpoints are prefixed with /api/

- GET    /api/health
- POST   /api/upload
- GET    /api/download/{id}
- DELETE /api/delete?imageId=
- GET    /api/images/{id}
- GET    /api/metrics
"""

from fastapi import APIRouter

from bgflip.api.routes.health import router as health_router
from bgflip.api.routes.images import router as images_router
from bgflip.api.routes.metrics import router as metrics_router

api_router = APIRouter(prefix="/api")

api_router.include_router(health_router, tags=["health"])
api_router.include_router(images_router, tags=["images"])
api_router.include_router(metrics_router, tags=["metrics"])
