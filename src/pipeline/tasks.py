"""
Celery Tasks for the Framing Pipeline

One task per pipeline run:
- Exponential backoff between attempts of the whole run
- Step checkpoints so a retry resumes after the last finished step
- Permanent errors fail the image at once, without retrying
"""

import asyncio
import traceback
from typing import Any, Dict, Optional

from src.core.celery_app import celery_app
from src.core.config import settings
from src.core.exceptions import is_permanent, NotFoundError
from src.core.logging import get_logger, set_image_context, clear_image_context
from src.core.metrics import record_run_completion
from src.core.storage import StorageFactory
from src.engines.color.client import ColorAnalysisClient
from src.engines.upscale.client import UpscaleClient
from src.modules.framing.models import PipelineTrigger
from src.modules.framing.repository import CheckpointStore, ImageRecordStore
from src.pipeline.orchestrator import PipelineOrchestrator

logger = get_logger(__name__)


def build_orchestrator() -> PipelineOrchestrator:
    """Wire the orchestrator with the configured providers and stores."""
    return PipelineOrchestrator(
        records=ImageRecordStore(),
        checkpoints=CheckpointStore(),
        storage=StorageFactory.get_storage(),
        color_client=ColorAnalysisClient(),
        upscale_client=UpscaleClient(),
    )


def retry_countdown(retries: int) -> int:
    """Seconds to wait before the next attempt: base * 2**retries."""
    return settings.PIPELINE_RETRY_BASE_DELAY * (2 ** retries)


def fail_image(image_id: str, error: BaseException, step: Optional[str]):
    """Mark the image failed, keeping the error for operators."""
    message = getattr(error, "message", None) or str(error) or type(error).__name__
    try:
        ImageRecordStore().mark_failed(image_id, message, step)
    except NotFoundError:
        logger.warning("failed_image_missing", image_id=image_id)
    record_run_completion("failed", failure_step=step or "unknown")


@celery_app.task(
    bind=True,
    name="src.pipeline.tasks.process_image",
    max_retries=settings.PIPELINE_MAX_ATTEMPTS - 1,
    acks_late=True
)
def process_image(self, trigger: Dict[str, Any]) -> Dict[str, Any]:
    """
    Celery task running one pipeline for one image.

    Args:
        trigger: PipelineTrigger as JSON

    Returns:
        Run summary with processed_url
    """
    run = PipelineTrigger.model_validate(trigger)
    set_image_context(run.image_id, batch_id=run.batch_id)
    attempt = self.request.retries + 1

    try:
        logger.info(
            "task_pipeline_started",
            run_id=run.run_id,
            attempt=attempt,
            max_attempts=self.max_retries + 1
        )

        orchestrator = build_orchestrator()

        loop = asyncio.new_event_loop()
        asyncio.set_event_loop(loop)
        try:
            return loop.run_until_complete(orchestrator.run(run))
        finally:
            loop.close()

    except Exception as e:
        step = getattr(e, "stage", None)

        if is_permanent(e):
            logger.error(
                "task_pipeline_permanent_failure",
                run_id=run.run_id,
                step=step,
                error=str(e),
                error_type=type(e).__name__
            )
            fail_image(run.image_id, e, step)
            raise

        if self.request.retries >= self.max_retries:
            logger.error(
                "task_pipeline_retries_exhausted",
                run_id=run.run_id,
                step=step,
                attempts=attempt,
                error=str(e),
                traceback=traceback.format_exc()
            )
            fail_image(run.image_id, e, step)
            raise

        countdown = retry_countdown(self.request.retries)
        logger.warning(
            "task_pipeline_retry_scheduled",
            run_id=run.run_id,
            step=step,
            attempt=attempt,
            countdown=countdown,
            error=str(e)
        )
        raise self.retry(exc=e, countdown=countdown)

    finally:
        clear_image_context()
