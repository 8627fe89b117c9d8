"""
Image Record Store - synchronous access used by the pipeline worker.

Every write opens its own short transaction so a status change is visible
to pollers as soon as the call returns.
"""

from typing import Callable, Optional, Dict, Any

from sqlalchemy.exc import IntegrityError
from sqlmodel import Session, select

from src.core.database import get_sync_session
from src.core.exceptions import NotFoundError, InvalidStatusTransition
from src.core.logging import get_logger
from src.modules.framing.models import Image, ImageStatus, StepCheckpoint, utc_now

logger = get_logger(__name__)


class ImageRecordStore:
    """Per-image status and result persistence."""

    def __init__(self, session_factory: Callable[[], Session] = get_sync_session):
        self._session_factory = session_factory

    def _load(self, session: Session, image_id: str) -> Image:
        image = session.get(Image, image_id)
        if image is None:
            raise NotFoundError(f"Image {image_id} not found", image_id=image_id)
        return image

    def get(self, image_id: str) -> Image:
        with self._session_factory() as session:
            return self._load(session, image_id)

    def set_status(self, image_id: str, status: str) -> bool:
        """
        Move the image to status.

        Returns:
            False when the image already had that status
        """
        with self._session_factory() as session:
            image = self._load(session, image_id)
            previous = image.status
            changed = image.transition_to(status)
            if changed:
                session.add(image)
                session.commit()
                logger.info(
                    "image_status_updated",
                    image_id=image_id,
                    previous=previous,
                    status=status
                )
            return changed

    def complete(self, image_id: str, processed_url: str, processed_storage_key: str):
        """Write the result location and status=completed in one transaction."""
        with self._session_factory() as session:
            image = self._load(session, image_id)
            image.mark_completed(processed_url, processed_storage_key)
            image.updated_at = utc_now()
            session.add(image)
            session.commit()

        logger.info(
            "image_status_updated",
            image_id=image_id,
            status=ImageStatus.COMPLETED.value,
            processed_storage_key=processed_storage_key
        )

    def mark_failed(self, image_id: str, error_message: str, error_step: Optional[str]) -> bool:
        """
        Record a terminal failure.

        Only a processing image can fail. Anything else is left alone and
        False is returned.
        """
        with self._session_factory() as session:
            image = self._load(session, image_id)
            try:
                image.mark_failed(error_message, error_step)
            except InvalidStatusTransition:
                logger.warning(
                    "mark_failed_skipped",
                    image_id=image_id,
                    current_status=image.status,
                    error=error_message
                )
                return False
            session.add(image)
            session.commit()

        logger.info(
            "image_status_updated",
            image_id=image_id,
            status=ImageStatus.FAILED.value,
            error_step=error_step
        )
        return True


class CheckpointStore:
    """Durable record of finished steps, keyed by (run_id, step)."""

    def __init__(self, session_factory: Callable[[], Session] = get_sync_session):
        self._session_factory = session_factory

    def get(self, run_id: str, step: str) -> Optional[Dict[str, Any]]:
        with self._session_factory() as session:
            statement = select(StepCheckpoint).where(
                StepCheckpoint.run_id == run_id,
                StepCheckpoint.step == step
            )
            checkpoint = session.exec(statement).first()
            return dict(checkpoint.result) if checkpoint else None

    def save(self, run_id: str, image_id: str, step: str, result: Dict[str, Any]) -> Dict[str, Any]:
        """
        Persist a step result. If another delivery of the same run already
        saved one, that result wins and is returned.
        """
        with self._session_factory() as session:
            session.add(StepCheckpoint(
                run_id=run_id,
                image_id=image_id,
                step=step,
                result=result
            ))
            try:
                session.commit()
                return result
            except IntegrityError:
                session.rollback()

        existing = self.get(run_id, step)
        logger.info("checkpoint_already_saved", run_id=run_id, step=step)
        return existing if existing is not None else result

    def completed_steps(self, run_id: str) -> list:
        with self._session_factory() as session:
            statement = select(StepCheckpoint.step).where(StepCheckpoint.run_id == run_id)
            return list(session.exec(statement).all())
