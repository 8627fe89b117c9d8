"""
Pipeline Orchestrator

Drives one image through four ordered steps:
1. mark-processing      - status pending -> processing
2. analyze-color        - degradable, falls back to neutral adjustments
3. upscale              - degradable, skipped on any problem
4. compose-and-persist  - frame, upload, status -> completed

Every finished step is checkpointed under (run_id, step). A redelivered
or retried run returns stored results instead of repeating side effects.
"""

import asyncio
import mimetypes
import time
from typing import Any, Awaitable, Callable, Dict, Optional

import httpx

from src.core.config import settings
from src.core.exceptions import FramingBaseException, PipelineStageError, StorageError
from src.core.logging import get_logger, LogContext, set_step
from src.core.metrics import (
    active_runs_gauge,
    record_degraded_step,
    record_run_completion,
    track_step_latency,
)
from src.core.storage import IStorage, image_storage_key
from src.engines.color.client import ColorAnalysisClient
from src.engines.color.schemas import ColorAdjustment
from src.engines.compositor.frame import FrameConfig, compose, image_size, normalize_orientation, scale_crop
from src.engines.upscale.client import UpscaleClient
from src.modules.framing.models import ImageStatus, PipelineStep, PipelineTrigger
from src.modules.framing.repository import CheckpointStore, ImageRecordStore

logger = get_logger(__name__)


class PipelineOrchestrator:
    """Checkpointed, step-sequenced run for a single image."""

    def __init__(
        self,
        records: ImageRecordStore,
        checkpoints: CheckpointStore,
        storage: IStorage,
        color_client: ColorAnalysisClient,
        upscale_client: UpscaleClient,
        frame_config: Optional[FrameConfig] = None,
        scale_factor: Optional[int] = None,
        url_expires_in: Optional[int] = None
    ):
        self.records = records
        self.checkpoints = checkpoints
        self.storage = storage
        self.color_client = color_client
        self.upscale_client = upscale_client
        self.frame_config = frame_config or FrameConfig.from_settings()
        self.scale_factor = scale_factor or settings.UPSCALE_FACTOR
        self.url_expires_in = url_expires_in or settings.SIGNED_URL_EXPIRES_SECONDS

    # =========================================================================
    # Run
    # =========================================================================

    async def run(self, trigger: PipelineTrigger) -> Dict[str, Any]:
        """
        Execute (or resume) the run identified by trigger.run_id.

        Raises:
            FramingBaseException: With .stage set to the failing step
        """
        start = time.time()
        active_runs_gauge.inc()

        try:
            with LogContext(image_id=trigger.image_id, batch_id=trigger.batch_id):
                logger.info("pipeline_started", run_id=trigger.run_id)

                await self._step(trigger, PipelineStep.MARK_PROCESSING, self._mark_processing)
                adjustments = await self._step(trigger, PipelineStep.ANALYZE_COLOR, self._analyze_color)
                upscaled = await self._step(trigger, PipelineStep.UPSCALE, self._upscale)
                persisted = await self._step(
                    trigger,
                    PipelineStep.COMPOSE_AND_PERSIST,
                    lambda t: self._compose_and_persist(t, adjustments, upscaled)
                )

                duration_ms = int((time.time() - start) * 1000)
                record_run_completion("completed")
                logger.info(
                    "pipeline_completed",
                    run_id=trigger.run_id,
                    duration_ms=duration_ms,
                    upscaled=not upscaled.get("skipped", True)
                )

                return {
                    "image_id": trigger.image_id,
                    "run_id": trigger.run_id,
                    "status": ImageStatus.COMPLETED.value,
                    "processed_url": persisted["processed_url"],
                    "upscaled": not upscaled.get("skipped", True),
                    "adjustments": adjustments,
                    "duration_ms": duration_ms,
                }
        finally:
            active_runs_gauge.dec()

    async def _step(
        self,
        trigger: PipelineTrigger,
        step: PipelineStep,
        fn: Callable[[PipelineTrigger], Awaitable[Dict[str, Any]]]
    ) -> Dict[str, Any]:
        """Run fn once per (run_id, step); later calls get the stored result."""
        stored = self.checkpoints.get(trigger.run_id, step.value)
        if stored is not None:
            logger.info("step_resumed_from_checkpoint", step=step.value, run_id=trigger.run_id)
            return stored

        set_step(step.value)
        start = time.time()
        try:
            with track_step_latency(step.value):
                result = await fn(trigger)
        except FramingBaseException as e:
            e.stage = e.stage or step.value
            logger.error("step_failed", step=step.value, error=e.message, error_type=type(e).__name__)
            raise
        except Exception as e:
            logger.error("step_failed", step=step.value, error=str(e), error_type=type(e).__name__)
            raise PipelineStageError(f"{step.value} failed: {e}", stage=step.value) from e
        finally:
            set_step(None)

        result = self.checkpoints.save(trigger.run_id, trigger.image_id, step.value, result)
        logger.info(
            "step_completed",
            step=step.value,
            duration_ms=int((time.time() - start) * 1000)
        )
        return result

    # =========================================================================
    # Steps
    # =========================================================================

    async def _mark_processing(self, trigger: PipelineTrigger) -> Dict[str, Any]:
        changed = self.records.set_status(trigger.image_id, ImageStatus.PROCESSING.value)
        return {"status": ImageStatus.PROCESSING.value, "changed": changed}

    async def _analyze_color(self, trigger: PipelineTrigger) -> Dict[str, Any]:
        image_bytes = await self.load_source(trigger.source_uri)
        mime_type = mimetypes.guess_type(trigger.source_uri.split("?", 1)[0])[0] or "image/jpeg"
        adjustment = await self.color_client.analyze(image_bytes, mime_type=mime_type)
        return adjustment.model_dump()

    async def _upscale(self, trigger: PipelineTrigger) -> Dict[str, Any]:
        if not self.upscale_client.configured:
            return self._skip_upscale("not_configured")
        if not self.upscale_client.circuit.can_execute():
            return self._skip_upscale("circuit_open")

        try:
            original = await self.load_source(trigger.source_uri)
            source = await asyncio.to_thread(normalize_orientation, original)
            source_size = image_size(source)

            result = await self.upscale_client.upscale(source, self.scale_factor)
            enlarged = await self.upscale_client.fetch_bytes(result)
            enlarged_size = image_size(enlarged)

            storage_key = image_storage_key(
                trigger.owner_id, trigger.batch_id, trigger.image_id, "upscaled"
            )
            await self.storage.upload(enlarged, storage_key, content_type="image/jpeg")

        except Exception as e:
            return self._skip_upscale(type(e).__name__, error=str(e))

        logger.info(
            "upscale_persisted",
            storage_key=storage_key,
            mode=result.mode,
            width=enlarged_size[0],
            height=enlarged_size[1]
        )
        return {
            "skipped": False,
            "storage_key": storage_key,
            "mode": result.mode,
            "source_size": list(source_size),
            "size": list(enlarged_size),
        }

    def _skip_upscale(self, reason: str, error: Optional[str] = None) -> Dict[str, Any]:
        record_degraded_step(PipelineStep.UPSCALE.value, reason)
        logger.warning("upscale_skipped", reason=reason, error=error)
        return {"skipped": True, "reason": reason}

    async def _compose_and_persist(
        self,
        trigger: PipelineTrigger,
        adjustments: Dict[str, Any],
        upscaled: Dict[str, Any]
    ) -> Dict[str, Any]:
        crop_region = trigger.crop_region
        image_bytes = None

        if upscaled.get("storage_key"):
            try:
                image_bytes = await self.storage.download(upscaled["storage_key"])
            except StorageError as e:
                logger.warning("upscaled_image_unavailable", error=str(e))
            else:
                if crop_region is not None:
                    crop_region = scale_crop(
                        crop_region,
                        tuple(upscaled["source_size"]),
                        tuple(upscaled["size"])
                    )

        if image_bytes is None:
            crop_region = trigger.crop_region
            image_bytes = await self.load_source(trigger.source_uri)

        frame = await asyncio.to_thread(
            compose,
            image_bytes,
            ColorAdjustment(**adjustments),
            crop_region,
            self.frame_config
        )

        storage_key = image_storage_key(trigger.owner_id, trigger.batch_id, trigger.image_id, "framed")
        await self.storage.upload(frame.image_bytes, storage_key, content_type="image/jpeg")
        processed_url = await self.storage.get_access_url(storage_key, expires_in=self.url_expires_in)

        self.records.complete(trigger.image_id, processed_url, storage_key)

        return {
            "processed_url": processed_url,
            "storage_key": storage_key,
            "width": frame.width,
            "height": frame.height,
        }

    # =========================================================================
    # Helpers
    # =========================================================================

    async def load_source(self, source_uri: str) -> bytes:
        """Original bytes from an http(s) URL or a storage key."""
        if source_uri.startswith(("http://", "https://")):
            async with httpx.AsyncClient(timeout=60.0) as client:
                response = await client.get(source_uri)
            if not response.is_success:
                raise StorageError(f"Source download failed: {response.status_code}")
            return response.content
        return await self.storage.download(source_uri)
