"""
Batch Endpoints

POST   /api/v1/batches                     - Finalize an upload (multipart)
GET    /api/v1/batches                     - Owner's batches with photo counts
GET    /api/v1/batches/{id}                - Batch with its images
DELETE /api/v1/batches/{id}                - Cascade delete
POST   /api/v1/batches/{id}/dispatch       - Trigger pipeline runs
GET    /api/v1/batches/{id}/status         - Aggregate status counts
GET    /api/v1/batches/{id}/download.zip   - Framed images as ZIP
GET    /api/v1/batches/{id}/download.pdf   - Print-ready PDF
"""

import asyncio
import io
import json
import os
import uuid
from datetime import datetime
from typing import List, Optional, Dict, Any

from fastapi import APIRouter, Depends, File, Form, Response, UploadFile
from PIL import Image as PILImage, UnidentifiedImageError
from pydantic import BaseModel
from sqlalchemy.ext.asyncio import AsyncSession

from src.api.dependencies import get_enqueuer, get_owner_id
from src.core.config import settings
from src.core.database import get_session
from src.core.exceptions import InvalidCropError, NotFoundError, ValidationError
from src.core.logging import get_logger, LogContext
from src.core.storage import IStorage, get_storage, image_storage_key
from src.engines.compositor.frame import upright_size
from src.modules.framing import queries
from src.modules.framing.delivery import build_pdf, build_zip, framed_filename
from src.modules.framing.models import AggregateStatus, CropRegion, Image, ImageStatus
from src.pipeline.dispatcher import DispatchResult, Enqueue, dispatch_batch

MAX_IMAGE_SIZE_BYTES = settings.MAX_IMAGE_SIZE_BYTES
MAX_IMAGE_SIZE_MB = MAX_IMAGE_SIZE_BYTES / (1024 * 1024)

ALLOWED_FORMATS = {"JPEG": "jpg", "PNG": "png", "WEBP": "webp"}

logger = get_logger(__name__)
router = APIRouter()


# =============================================================================
# Response Schemas
# =============================================================================

class ImageResponse(BaseModel):
    id: str
    batch_id: str
    original_url: str
    original_filename: Optional[str]
    processed_url: Optional[str]
    status: str
    crop_region: Optional[Dict[str, Any]]
    error_message: Optional[str]
    error_step: Optional[str]
    created_at: datetime

    @classmethod
    def from_record(cls, image: Image) -> "ImageResponse":
        return cls(
            id=image.id,
            batch_id=image.batch_id,
            original_url=image.original_url,
            original_filename=image.original_filename,
            processed_url=image.processed_url,
            status=image.status,
            crop_region=image.crop_region,
            error_message=image.error_message,
            error_step=image.error_step,
            created_at=image.created_at,
        )


class BatchResponse(BaseModel):
    id: str
    owner_id: str
    created_at: datetime
    photo_count: int


class BatchDetailResponse(BatchResponse):
    images: List[ImageResponse]
    status: AggregateStatus


# =============================================================================
# Upload helpers
# =============================================================================

def _parse_crops(crops: Optional[str], file_count: int) -> List[Optional[CropRegion]]:
    if not crops:
        return [None] * file_count

    try:
        raw = json.loads(crops)
    except ValueError:
        raise ValidationError("crops must be a JSON list")
    if not isinstance(raw, list) or len(raw) != file_count:
        raise ValidationError(f"crops must be a JSON list with one entry per file ({file_count})")

    parsed = []
    for position, entry in enumerate(raw):
        if entry is None:
            parsed.append(None)
            continue
        try:
            parsed.append(CropRegion.model_validate(entry))
        except ValueError as e:
            raise InvalidCropError(f"Invalid crop for file {position + 1}: {e}", crop=entry if isinstance(entry, dict) else None)
    return parsed


def _inspect_image(data: bytes, filename: str):
    """Format extension and pixel size of an uploaded file."""
    if len(data) > MAX_IMAGE_SIZE_BYTES:
        raise ValidationError(
            f"{filename} ({len(data) / (1024 * 1024):.2f}MB) exceeds maximum allowed size "
            f"({MAX_IMAGE_SIZE_MB:.0f}MB)"
        )
    try:
        with PILImage.open(io.BytesIO(data)) as img:
            image_format, size = img.format, upright_size(img)
    except (UnidentifiedImageError, OSError):
        raise ValidationError(f"{filename} is not a readable image")

    if image_format not in ALLOWED_FORMATS:
        raise ValidationError(f"{filename}: unsupported format {image_format}")
    return ALLOWED_FORMATS[image_format], size


def _content_type(ext: str) -> str:
    return "image/jpeg" if ext == "jpg" else f"image/{ext}"


async def _framed_images(session: AsyncSession, storage: IStorage, batch_id: str) -> List[bytes]:
    images = await queries.list_images(session, batch_id, statuses=[ImageStatus.COMPLETED.value])
    keys = [image.processed_storage_key for image in images if image.processed_storage_key]
    if not keys:
        raise NotFoundError(f"Batch {batch_id} has no completed images")
    return [await storage.download(key) for key in keys]


# =============================================================================
# Endpoints
# =============================================================================

@router.post("", response_model=BatchDetailResponse, status_code=201)
async def create_batch(
    files: List[UploadFile] = File(...),
    crops: Optional[str] = Form(default=None),
    owner_id: str = Depends(get_owner_id),
    session: AsyncSession = Depends(get_session),
    storage: IStorage = Depends(get_storage)
):
    """
    Finalize an upload session.

    Stores every original at {owner}/{batch}/{image}_original.<ext> and
    creates one pending image per file. Crops are validated against each
    file's pixel bounds before anything is stored.
    """
    if not files:
        raise ValidationError("At least one file is required")

    crop_regions = _parse_crops(crops, len(files))

    uploads = []
    for upload, crop in zip(files, crop_regions):
        filename = upload.filename or "upload"
        data = await upload.read()
        ext, (width, height) = _inspect_image(data, filename)
        if crop is not None and not crop.fits_within(width, height):
            raise InvalidCropError(
                f"Crop for {filename} is outside the {width}x{height} image",
                crop=crop.model_dump()
            )
        uploads.append((filename, data, ext, crop))

    batch = await queries.create_batch(session, owner_id)

    with LogContext(batch_id=batch.id):
        images = []
        for filename, data, ext, crop in uploads:
            image_id = str(uuid.uuid4())
            key = image_storage_key(owner_id, batch.id, image_id, "original", ext)
            await storage.upload(data, key, content_type=_content_type(ext))
            image = await queries.add_image(
                session,
                batch.id,
                original_url=key,
                original_filename=os.path.basename(filename),
                crop_region=crop.model_dump() if crop else None,
                image_id=image_id
            )
            images.append(image)

        await session.commit()
        logger.info("batch_created", owner_id=owner_id, photo_count=len(images))

    return BatchDetailResponse(
        id=batch.id,
        owner_id=batch.owner_id,
        created_at=batch.created_at,
        photo_count=len(images),
        images=[ImageResponse.from_record(image) for image in images],
        status=AggregateStatus.from_statuses(image.status for image in images),
    )


@router.get("", response_model=List[BatchResponse])
async def list_batches(
    owner_id: str = Depends(get_owner_id),
    session: AsyncSession = Depends(get_session)
):
    rows = await queries.list_batches(session, owner_id)
    return [
        BatchResponse(id=batch.id, owner_id=batch.owner_id, created_at=batch.created_at, photo_count=count)
        for batch, count in rows
    ]


@router.get("/{batch_id}", response_model=BatchDetailResponse)
async def get_batch(
    batch_id: str,
    owner_id: str = Depends(get_owner_id),
    session: AsyncSession = Depends(get_session)
):
    batch = await queries.get_batch(session, batch_id, owner_id)
    images = await queries.list_images(session, batch_id)
    return BatchDetailResponse(
        id=batch.id,
        owner_id=batch.owner_id,
        created_at=batch.created_at,
        photo_count=len(images),
        images=[ImageResponse.from_record(image) for image in images],
        status=AggregateStatus.from_statuses(image.status for image in images),
    )


@router.delete("/{batch_id}", status_code=204)
async def delete_batch(
    batch_id: str,
    owner_id: str = Depends(get_owner_id),
    session: AsyncSession = Depends(get_session),
    storage: IStorage = Depends(get_storage)
):
    """Delete the batch, its images, their checkpoints and stored objects."""
    batch = await queries.get_batch(session, batch_id, owner_id)
    images = await queries.delete_batch(session, batch)
    await session.commit()

    for image in images:
        keys = [
            image_storage_key(owner_id, batch_id, image.id, "upscaled"),
            image_storage_key(owner_id, batch_id, image.id, "framed"),
        ]
        if not image.original_url.startswith(("http://", "https://")):
            keys.append(image.original_url)
        for key in keys:
            await storage.delete(key)

    logger.info("batch_deleted", batch_id=batch_id, image_count=len(images))
    return Response(status_code=204)


@router.post("/{batch_id}/dispatch", response_model=DispatchResult)
async def dispatch(
    batch_id: str,
    owner_id: str = Depends(get_owner_id),
    session: AsyncSession = Depends(get_session),
    enqueue: Enqueue = Depends(get_enqueuer)
):
    """
    Trigger one pipeline run per pending or failed image.

    Returns as soon as every run is enqueued; poll /status for progress.
    """
    await queries.get_batch(session, batch_id, owner_id)
    return await dispatch_batch(session, batch_id, enqueue=enqueue, owner_id=owner_id)


@router.get("/{batch_id}/status", response_model=AggregateStatus)
async def batch_status(
    batch_id: str,
    owner_id: str = Depends(get_owner_id),
    session: AsyncSession = Depends(get_session)
):
    await queries.get_batch(session, batch_id, owner_id)
    return await queries.get_aggregate_status(session, batch_id)


@router.get("/{batch_id}/download.zip")
async def download_zip(
    batch_id: str,
    owner_id: str = Depends(get_owner_id),
    session: AsyncSession = Depends(get_session),
    storage: IStorage = Depends(get_storage)
):
    await queries.get_batch(session, batch_id, owner_id)
    framed = await _framed_images(session, storage, batch_id)
    archive = build_zip(
        (framed_filename(position), data) for position, data in enumerate(framed, start=1)
    )
    return Response(
        content=archive,
        media_type="application/zip",
        headers={"Content-Disposition": f'attachment; filename="batch-{batch_id}.zip"'}
    )


@router.get("/{batch_id}/download.pdf")
async def download_pdf(
    batch_id: str,
    owner_id: str = Depends(get_owner_id),
    session: AsyncSession = Depends(get_session),
    storage: IStorage = Depends(get_storage)
):
    await queries.get_batch(session, batch_id, owner_id)
    framed = await _framed_images(session, storage, batch_id)
    document = await asyncio.to_thread(build_pdf, framed)
    return Response(
        content=document,
        media_type="application/pdf",
        headers={"Content-Disposition": f'attachment; filename="batch-{batch_id}.pdf"'}
    )
