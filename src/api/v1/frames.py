"""
Frame Preview Endpoint

POST /api/v1/frames/preview - Render a small framed preview of an upload
"""

import asyncio
import json
from typing import Optional

from fastapi import APIRouter, File, Form, Response, UploadFile

from src.core.config import settings
from src.core.exceptions import ValidationError
from src.engines.compositor.frame import render_preview

router = APIRouter()

MIN_PREVIEW_WIDTH = 100
MAX_PREVIEW_WIDTH = 1200


@router.post("/preview")
async def preview(
    file: UploadFile = File(...),
    width: int = Form(default=400),
    crop: Optional[str] = Form(default=None)
):
    """
    Framed preview with default adjustments, JPEG quality 80.

    The optional crop is a JSON object {x, y, width, height} in source pixels.
    """
    if not MIN_PREVIEW_WIDTH <= width <= MAX_PREVIEW_WIDTH:
        raise ValidationError(
            f"width must be between {MIN_PREVIEW_WIDTH} and {MAX_PREVIEW_WIDTH}"
        )

    data = await file.read()
    if len(data) > settings.MAX_IMAGE_SIZE_BYTES:
        raise ValidationError("Image exceeds maximum allowed size")

    crop_region = None
    if crop:
        try:
            crop_region = json.loads(crop)
        except ValueError:
            raise ValidationError("crop must be a JSON object")

    content = await asyncio.to_thread(render_preview, data, width, crop_region=crop_region)
    return Response(content=content, media_type="image/jpeg")
