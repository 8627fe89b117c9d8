import io

import httpx
import pytest
from PIL import Image as PILImage

from src.core.exceptions import CircuitBreaker, InvalidCropError, PipelineStageError, is_permanent
from src.engines.color.client import ColorAnalysisClient
from src.engines.color.schemas import NEUTRAL_ADJUSTMENT
from src.engines.upscale.client import UpscaleClient
from src.modules.framing.models import CropRegion, PipelineStep
from src.modules.framing.repository import CheckpointStore, ImageRecordStore
from src.pipeline import orchestrator as orchestrator_module
from src.pipeline.orchestrator import PipelineOrchestrator

ALL_STEPS = {step.value for step in PipelineStep}


def _upscale_client(handler=None, max_poll_attempts=3) -> UpscaleClient:
    async def no_sleep(seconds):
        return None

    return UpscaleClient(
        api_key="key" if handler else "",
        submit_url="https://upscale.test/enhance",
        status_url="https://upscale.test/status/{job_id}",
        max_poll_attempts=max_poll_attempts,
        circuit=CircuitBreaker("upscale-test"),
        transport=httpx.MockTransport(handler) if handler else None,
        sleep=no_sleep,
    )


@pytest.fixture
def build(storage, small_frame, fake_color):
    def _build(color_client=None, upscale_client=None) -> PipelineOrchestrator:
        return PipelineOrchestrator(
            records=ImageRecordStore(),
            checkpoints=CheckpointStore(),
            storage=storage,
            color_client=color_client or fake_color,
            upscale_client=upscale_client or _upscale_client(),
            frame_config=small_frame,
        )
    return _build


@pytest.mark.asyncio
async def test_run_completes_without_upscaling(build, seed_batch, load_image_record, storage, fake_color):
    _, (trigger,) = await seed_batch()

    summary = await build().run(trigger)

    assert summary["status"] == "completed"
    assert summary["upscaled"] is False
    assert summary["adjustments"]["brightness"] == 10
    assert fake_color.calls == 1

    image = load_image_record(trigger.image_id)
    assert image.status == "completed"
    assert image.processed_storage_key.endswith(f"{trigger.image_id}_framed.jpg")
    assert image.processed_url == f"/static/storage/{image.processed_storage_key}"

    framed = await storage.download(image.processed_storage_key)
    with PILImage.open(io.BytesIO(framed)) as result:
        assert result.size == (120, 180)

    assert set(CheckpointStore().completed_steps(trigger.run_id)) == ALL_STEPS


@pytest.mark.asyncio
async def test_color_provider_failure_uses_defaults(build, seed_batch, load_image_record):
    _, (trigger,) = await seed_batch()
    color = ColorAnalysisClient(
        api_key="key",
        base_url="https://vision.test",
        circuit=CircuitBreaker("color-test"),
        transport=httpx.MockTransport(lambda request: httpx.Response(503)),
    )

    summary = await build(color_client=color).run(trigger)

    assert summary["adjustments"] == NEUTRAL_ADJUSTMENT.model_dump()
    assert load_image_record(trigger.image_id).status == "completed"


@pytest.mark.asyncio
async def test_upscale_timeout_skips_step(build, seed_batch, load_image_record):
    _, (trigger,) = await seed_batch()

    def provider(request):
        if request.url.path == "/enhance":
            return httpx.Response(200, json={"job_id": "slow"})
        return httpx.Response(200, json={"status": "processing"})

    summary = await build(upscale_client=_upscale_client(provider)).run(trigger)

    assert summary["upscaled"] is False
    assert CheckpointStore().get(trigger.run_id, "upscale") == {"skipped": True, "reason": "UpscaleTimeoutError"}
    assert load_image_record(trigger.image_id).status == "completed"


@pytest.mark.asyncio
async def test_upscaled_image_is_framed_with_scaled_crop(build, seed_batch, storage, jpeg, monkeypatch):
    _, (trigger,) = await seed_batch(size=(300, 200))
    trigger = trigger.model_copy(update={"crop_region": CropRegion(x=100, y=50, width=100, height=100)})
    enlarged = jpeg(600, 400)

    def provider(request):
        return httpx.Response(200, content=enlarged, headers={"content-type": "image/jpeg"})

    seen = []
    real_compose = orchestrator_module.compose

    def spy_compose(image_bytes, adjustments, crop_region, config):
        seen.append(crop_region)
        return real_compose(image_bytes, adjustments, crop_region, config)

    monkeypatch.setattr(orchestrator_module, "compose", spy_compose)

    summary = await build(upscale_client=_upscale_client(provider)).run(trigger)

    assert summary["upscaled"] is True
    assert seen[0].to_box() == (200, 100, 400, 300)
    upscale_key = CheckpointStore().get(trigger.run_id, "upscale")["storage_key"]
    assert await storage.download(upscale_key) == enlarged


@pytest.mark.asyncio
async def test_rotated_photo_keeps_crop_through_upscale(build, seed_batch, load_image_record, jpeg, monkeypatch):
    _, (trigger,) = await seed_batch(size=(300, 200), orientation=6)
    trigger = trigger.model_copy(update={"crop_region": CropRegion(x=0, y=150, width=200, height=150)})
    enlarged = jpeg(400, 600)

    def provider(request):
        return httpx.Response(200, content=enlarged, headers={"content-type": "image/jpeg"})

    seen = []
    real_compose = orchestrator_module.compose

    def spy_compose(image_bytes, adjustments, crop_region, config):
        seen.append(crop_region)
        return real_compose(image_bytes, adjustments, crop_region, config)

    monkeypatch.setattr(orchestrator_module, "compose", spy_compose)

    summary = await build(upscale_client=_upscale_client(provider)).run(trigger)

    assert summary["upscaled"] is True
    assert CheckpointStore().get(trigger.run_id, "upscale")["source_size"] == [200, 300]
    assert seen[0].to_box() == (0, 300, 400, 600)
    assert load_image_record(trigger.image_id).status == "completed"


@pytest.mark.asyncio
async def test_retry_resumes_from_last_checkpoint(build, seed_batch, load_image_record, fake_color, monkeypatch):
    _, (trigger,) = await seed_batch()
    orchestrator = build()
    real_compose = orchestrator_module.compose

    def broken_compose(*args, **kwargs):
        raise RuntimeError("renderer crashed")

    monkeypatch.setattr(orchestrator_module, "compose", broken_compose)
    with pytest.raises(PipelineStageError) as exc_info:
        await orchestrator.run(trigger)

    assert exc_info.value.stage == "compose-and-persist"
    assert not is_permanent(exc_info.value)
    assert load_image_record(trigger.image_id).status == "processing"
    assert "compose-and-persist" not in CheckpointStore().completed_steps(trigger.run_id)

    monkeypatch.setattr(orchestrator_module, "compose", real_compose)
    summary = await orchestrator.run(trigger)

    assert summary["status"] == "completed"
    assert fake_color.calls == 1
    assert load_image_record(trigger.image_id).status == "completed"


@pytest.mark.asyncio
async def test_invalid_crop_is_permanent(build, seed_batch):
    _, (trigger,) = await seed_batch(size=(300, 200))
    trigger = trigger.model_copy(update={"crop_region": CropRegion(x=250, y=0, width=100, height=100)})

    with pytest.raises(InvalidCropError) as exc_info:
        await build().run(trigger)

    assert exc_info.value.stage == "compose-and-persist"
    assert is_permanent(exc_info.value)


@pytest.mark.asyncio
async def test_completed_run_is_not_repeated(build, seed_batch, fake_color, storage, load_image_record):
    _, (trigger,) = await seed_batch()
    orchestrator = build()

    first = await orchestrator.run(trigger)
    key = load_image_record(trigger.image_id).processed_storage_key
    await storage.delete(key)

    second = await orchestrator.run(trigger)

    assert second["processed_url"] == first["processed_url"]
    assert fake_color.calls == 1
    assert not await storage.exists(key)


def test_checkpoint_first_write_wins():
    checkpoints = CheckpointStore()

    assert checkpoints.save("run-dup", "img", "upscale", {"skipped": True}) == {"skipped": True}
    assert checkpoints.save("run-dup", "img", "upscale", {"skipped": False}) == {"skipped": True}
    assert checkpoints.get("run-dup", "upscale") == {"skipped": True}


@pytest.mark.asyncio
async def test_mark_failed_ignores_pending_image(seed_batch, load_image_record):
    _, (trigger,) = await seed_batch()

    assert ImageRecordStore().mark_failed(trigger.image_id, "too early", "upscale") is False
    assert load_image_record(trigger.image_id).status == "pending"


@pytest.mark.asyncio
async def test_run_completes_when_both_providers_fail(build, seed_batch, load_image_record):
    _, (trigger,) = await seed_batch()
    color = ColorAnalysisClient(
        api_key="key",
        base_url="https://vision.test",
        circuit=CircuitBreaker("color-test"),
        transport=httpx.MockTransport(lambda request: httpx.Response(500)),
    )
    upscale = _upscale_client(lambda request: httpx.Response(500, text="provider down"))

    summary = await build(color_client=color, upscale_client=upscale).run(trigger)

    assert summary["status"] == "completed"
    assert summary["upscaled"] is False
    assert summary["adjustments"] == NEUTRAL_ADJUSTMENT.model_dump()
    assert CheckpointStore().get(trigger.run_id, "upscale")["reason"] == "ExternalAPIError"
    assert load_image_record(trigger.image_id).status == "completed"
