"""
API v1 Router Module - Print Framing Service

All v1 endpoints are prefixed with /api/v1/

- /api/v1/batches/*  - Upload, dispatch, status and delivery
- /api/v1/images/*   - Resubmit, delete and download single images
- /api/v1/frames/*   - Frame previews
- /api/v1/metrics    - Prometheus metrics
"""

from fastapi import APIRouter

from src.api.v1.batches import router as batches_router
from src.api.v1.images import router as images_router
from src.api.v1.frames import router as frames_router
from src.api.v1.metrics import router as metrics_router

# Main v1 router
api_v1_router = APIRouter(prefix="/api/v1")

api_v1_router.include_router(batches_router, prefix="/batches", tags=["batches"])
api_v1_router.include_router(images_router, prefix="/images", tags=["images"])
api_v1_router.include_router(frames_router, prefix="/frames", tags=["frames"])
api_v1_router.include_router(metrics_router, tags=["metrics"])
