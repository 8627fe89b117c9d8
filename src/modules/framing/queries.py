"""
Async record access for the HTTP API and the batch dispatcher.
"""

from typing import List, Optional, Tuple, Dict, Any

from sqlalchemy import func, delete
from sqlalchemy.ext.asyncio import AsyncSession
from sqlmodel import select

from src.core.exceptions import NotFoundError
from src.modules.framing.models import (
    Batch,
    Image,
    ImageStatus,
    StepCheckpoint,
    AggregateStatus,
)


async def create_batch(session: AsyncSession, owner_id: str) -> Batch:
    batch = Batch(owner_id=owner_id)
    session.add(batch)
    await session.flush()
    return batch


async def add_image(
    session: AsyncSession,
    batch_id: str,
    original_url: str,
    original_filename: Optional[str] = None,
    crop_region: Optional[Dict[str, Any]] = None,
    image_id: Optional[str] = None
) -> Image:
    image = Image(
        batch_id=batch_id,
        original_url=original_url,
        original_filename=original_filename,
        crop_region=crop_region
    )
    if image_id:
        image.id = image_id
    session.add(image)
    await session.flush()
    return image


async def get_batch(session: AsyncSession, batch_id: str, owner_id: Optional[str] = None) -> Batch:
    """Fetch a batch, hiding batches that belong to another owner."""
    batch = await session.get(Batch, batch_id)
    if batch is None or (owner_id is not None and batch.owner_id != owner_id):
        raise NotFoundError(f"Batch {batch_id} not found")
    return batch


async def list_batches(session: AsyncSession, owner_id: str) -> List[Tuple[Batch, int]]:
    """Owner's batches, newest first, with their image counts."""
    statement = (
        select(Batch, func.count(Image.id))
        .outerjoin(Image, Image.batch_id == Batch.id)
        .where(Batch.owner_id == owner_id)
        .group_by(Batch.id)
        .order_by(Batch.created_at.desc())
    )
    result = await session.execute(statement)
    return [(batch, count) for batch, count in result.all()]


async def list_images(
    session: AsyncSession,
    batch_id: str,
    statuses: Optional[List[str]] = None
) -> List[Image]:
    statement = select(Image).where(Image.batch_id == batch_id)
    if statuses:
        statement = statement.where(Image.status.in_(statuses))
    statement = statement.order_by(Image.created_at, Image.id)
    result = await session.execute(statement)
    return list(result.scalars().all())


async def get_image(session: AsyncSession, image_id: str, owner_id: Optional[str] = None) -> Image:
    image = await session.get(Image, image_id)
    if image is None:
        raise NotFoundError(f"Image {image_id} not found", image_id=image_id)
    if owner_id is not None:
        await get_batch(session, image.batch_id, owner_id)
    return image


async def get_aggregate_status(session: AsyncSession, batch_id: str) -> AggregateStatus:
    """Count images per status. Always a fresh query."""
    statement = (
        select(Image.status, func.count(Image.id))
        .where(Image.batch_id == batch_id)
        .group_by(Image.status)
    )
    result = await session.execute(statement)
    return AggregateStatus.from_counts({status: count for status, count in result.all()})


async def eligible_images(session: AsyncSession, batch_id: str) -> List[Image]:
    """Images the dispatcher should (re)run."""
    return await list_images(
        session,
        batch_id,
        statuses=[ImageStatus.PENDING.value, ImageStatus.FAILED.value]
    )


async def delete_image(session: AsyncSession, image: Image):
    await session.execute(delete(StepCheckpoint).where(StepCheckpoint.image_id == image.id))
    await session.delete(image)
    await session.flush()


async def delete_batch(session: AsyncSession, batch: Batch) -> List[Image]:
    """
    Delete a batch with its images and their checkpoints.

    Returns:
        The deleted images, so the caller can remove their stored objects
    """
    images = await list_images(session, batch.id)
    for image in images:
        await delete_image(session, image)
    await session.delete(batch)
    await session.flush()
    return images
