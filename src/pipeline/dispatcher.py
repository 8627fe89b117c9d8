"""
Batch Dispatcher

Hands one pipeline run per eligible image (pending or failed) to the
orchestration layer and returns once all of them are enqueued. It never
waits for processing; clients observe progress through the status query.
"""

import uuid
from typing import Callable, List, Optional, Any, Dict, Tuple

from pydantic import BaseModel, Field
from sqlalchemy.ext.asyncio import AsyncSession

from src.core.exceptions import DispatchError, InvalidStatusTransition, NotFoundError
from src.core.logging import get_logger
from src.core.metrics import record_dispatch
from src.modules.framing import queries
from src.modules.framing.models import CropRegion, Image, ImageStatus, PipelineTrigger

logger = get_logger(__name__)

Enqueue = Callable[[PipelineTrigger], Any]


class DispatchResult(BaseModel):
    success: bool
    processed_count: int = 0
    errors: List[str] = Field(default_factory=list)


def default_enqueue(trigger: PipelineTrigger):
    """Send the run to the Celery worker. The run_id doubles as task id."""
    from src.pipeline.tasks import process_image

    return process_image.apply_async(
        args=[trigger.model_dump(mode="json")],
        task_id=trigger.run_id
    )


def build_trigger(
    image_id: str,
    batch_id: str,
    owner_id: str,
    source_uri: str,
    crop_region: Optional[Dict[str, Any]] = None
) -> PipelineTrigger:
    """Fresh trigger with a new run_id, so every step runs again."""
    return PipelineTrigger(
        image_id=image_id,
        batch_id=batch_id,
        owner_id=owner_id,
        source_uri=source_uri,
        crop_region=CropRegion.model_validate(crop_region) if crop_region else None,
        run_id=str(uuid.uuid4()),
    )


async def _reset_failed(session: AsyncSession, image_id: str) -> Tuple[Optional[str], Optional[str]]:
    """
    failed -> pending, committed before the run is enqueued.

    Returns:
        The cleared (error_message, error_step), for _restore_failed
    """
    image = await session.get(Image, image_id)
    if image is None:
        raise NotFoundError(f"Image {image_id} not found", image_id=image_id)
    previous_error = (image.error_message, image.error_step)
    image.reset_for_resubmit()
    session.add(image)
    await session.commit()
    logger.info("image_resubmitted", image_id=image_id)
    return previous_error


async def _restore_failed(
    session: AsyncSession,
    image_id: str,
    error_message: Optional[str],
    error_step: Optional[str]
) -> None:
    """Put a reset image back to failed after its enqueue did not go through."""
    image = await session.get(Image, image_id)
    image.undo_resubmit(error_message, error_step)
    session.add(image)
    await session.commit()
    logger.warning("image_resubmit_reverted", image_id=image_id)


def _error_message(error: Exception) -> str:
    return getattr(error, "message", None) or str(error)


async def dispatch_batch(
    session: AsyncSession,
    batch_id: str,
    enqueue: Optional[Enqueue] = None,
    owner_id: Optional[str] = None
) -> DispatchResult:
    """
    Trigger one pipeline run per pending or failed image in the batch.

    A failure for one image is recorded in errors and does not stop the
    others.
    """
    enqueue = enqueue or default_enqueue

    try:
        batch = await queries.get_batch(session, batch_id, owner_id)
    except NotFoundError as e:
        return DispatchResult(success=False, errors=[e.message])

    batch_owner = batch.owner_id
    eligible = [
        (image.id, image.status, image.original_url, image.crop_region)
        for image in await queries.eligible_images(session, batch_id)
    ]
    result = DispatchResult(success=True)

    logger.info("batch_dispatch_started", batch_id=batch_id, eligible=len(eligible))

    for image_id, status, source_uri, crop_region in eligible:
        previous_error = None
        try:
            if status == ImageStatus.FAILED.value:
                previous_error = await _reset_failed(session, image_id)
            enqueue(build_trigger(image_id, batch_id, batch_owner, source_uri, crop_region))
        except Exception as e:
            await session.rollback()
            if previous_error is not None:
                await _restore_failed(session, image_id, *previous_error)
            message = _error_message(e)
            result.errors.append(f"Image {image_id}: {message}")
            record_dispatch("error")
            logger.error("image_dispatch_failed", batch_id=batch_id, image_id=image_id, error=message)
            continue

        result.processed_count += 1
        record_dispatch("success")

    result.success = len(result.errors) == 0

    logger.info(
        "batch_dispatch_completed",
        batch_id=batch_id,
        processed_count=result.processed_count,
        error_count=len(result.errors)
    )
    return result


async def resubmit_image(
    session: AsyncSession,
    image_id: str,
    enqueue: Optional[Enqueue] = None,
    owner_id: Optional[str] = None
) -> PipelineTrigger:
    """
    Resubmit a single failed image.

    Raises:
        NotFoundError: If the image does not exist
        InvalidStatusTransition: If the image is not failed
        DispatchError: If the run could not be enqueued; the image stays failed
    """
    enqueue = enqueue or default_enqueue

    image = await queries.get_image(session, image_id, owner_id)
    if image.status != ImageStatus.FAILED.value:
        raise InvalidStatusTransition(image.status, ImageStatus.PENDING.value, image_id=image_id)

    batch = await queries.get_batch(session, image.batch_id)
    trigger = build_trigger(image.id, batch.id, batch.owner_id, image.original_url, image.crop_region)

    previous_error = await _reset_failed(session, image_id)
    try:
        enqueue(trigger)
    except Exception as e:
        await session.rollback()
        await _restore_failed(session, image_id, *previous_error)
        message = _error_message(e)
        record_dispatch("error")
        logger.error("image_resubmit_failed", image_id=image_id, error=message)
        raise DispatchError(f"Image {image_id} could not be enqueued: {message}", image_id=image_id)

    record_dispatch("success")
    logger.info("image_resubmit_dispatched", image_id=image_id, run_id=trigger.run_id)
    return trigger
