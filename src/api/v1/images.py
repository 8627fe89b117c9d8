"""
Image Endpoints

POST   /api/v1/images/{id}/resubmit  - Re-run a failed image
DELETE /api/v1/images/{id}           - Delete one image
GET    /api/v1/images/{id}/download  - Framed JPEG
"""

from fastapi import APIRouter, Depends, Response
from pydantic import BaseModel
from sqlalchemy.ext.asyncio import AsyncSession

from src.api.dependencies import get_enqueuer, get_owner_id
from src.core.database import get_session
from src.core.exceptions import NotFoundError
from src.core.logging import get_logger
from src.core.storage import IStorage, get_storage, image_storage_key
from src.modules.framing import queries
from src.modules.framing.models import ImageStatus
from src.pipeline.dispatcher import Enqueue, resubmit_image

logger = get_logger(__name__)
router = APIRouter()


class ResubmitResponse(BaseModel):
    image_id: str
    status: str
    run_id: str


@router.post("/{image_id}/resubmit", response_model=ResubmitResponse)
async def resubmit(
    image_id: str,
    owner_id: str = Depends(get_owner_id),
    session: AsyncSession = Depends(get_session),
    enqueue: Enqueue = Depends(get_enqueuer)
):
    """Reset a failed image to pending and enqueue a fresh run. 409 otherwise."""
    trigger = await resubmit_image(session, image_id, enqueue=enqueue, owner_id=owner_id)
    return ResubmitResponse(image_id=image_id, status=ImageStatus.PENDING.value, run_id=trigger.run_id)


@router.delete("/{image_id}", status_code=204)
async def delete_image(
    image_id: str,
    owner_id: str = Depends(get_owner_id),
    session: AsyncSession = Depends(get_session),
    storage: IStorage = Depends(get_storage)
):
    image = await queries.get_image(session, image_id, owner_id)
    batch_id, original_url = image.batch_id, image.original_url

    await queries.delete_image(session, image)
    await session.commit()

    keys = [
        image_storage_key(owner_id, batch_id, image_id, "upscaled"),
        image_storage_key(owner_id, batch_id, image_id, "framed"),
    ]
    if not original_url.startswith(("http://", "https://")):
        keys.append(original_url)
    for key in keys:
        await storage.delete(key)

    logger.info("image_deleted", image_id=image_id, batch_id=batch_id)
    return Response(status_code=204)


@router.get("/{image_id}/download")
async def download_image(
    image_id: str,
    owner_id: str = Depends(get_owner_id),
    session: AsyncSession = Depends(get_session),
    storage: IStorage = Depends(get_storage)
):
    image = await queries.get_image(session, image_id, owner_id)
    if image.status != ImageStatus.COMPLETED.value or not image.processed_storage_key:
        raise NotFoundError(f"Image {image_id} has no framed result yet", image_id=image_id)

    data = await storage.download(image.processed_storage_key)
    return Response(
        content=data,
        media_type="image/jpeg",
        headers={"Content-Disposition": f'attachment; filename="{image_id}_framed.jpg"'}
    )
