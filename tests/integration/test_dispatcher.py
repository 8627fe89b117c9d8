import pytest

from src.core.exceptions import DispatchError, InvalidStatusTransition, NotFoundError
from src.engines.upscale.client import UpscaleClient
from src.modules.framing import queries
from src.modules.framing.models import Image
from src.modules.framing.repository import CheckpointStore, ImageRecordStore
from src.pipeline.dispatcher import dispatch_batch, resubmit_image
from src.pipeline.orchestrator import PipelineOrchestrator


async def _create_batch(session, statuses, owner_id="owner-1"):
    batch = await queries.create_batch(session, owner_id)
    images = []
    for position, status in enumerate(statuses):
        image = await queries.add_image(
            session,
            batch.id,
            original_url=f"{owner_id}/{batch.id}/{position}_original.jpg",
            crop_region={"x": 0, "y": 0, "width": 10, "height": 10} if position == 0 else None,
        )
        image.status = status
        images.append(image)
    await session.commit()
    return batch, images


@pytest.mark.asyncio
async def test_dispatch_enqueues_every_pending_image(db_session):
    batch, images = await _create_batch(db_session, ["pending", "pending", "pending"])
    enqueued = []

    result = await dispatch_batch(db_session, batch.id, enqueue=enqueued.append)

    assert result.success is True
    assert result.processed_count == 3
    assert result.errors == []
    assert {trigger.image_id for trigger in enqueued} == {image.id for image in images}
    assert len({trigger.run_id for trigger in enqueued}) == 3
    assert all(trigger.owner_id == "owner-1" for trigger in enqueued)

    first = next(trigger for trigger in enqueued if trigger.image_id == images[0].id)
    assert first.crop_region.width == 10
    assert first.source_uri == images[0].original_url


@pytest.mark.asyncio
async def test_dispatch_skips_running_and_finished_images(db_session):
    batch, images = await _create_batch(db_session, ["processing", "completed", "failed", "pending"])
    enqueued = []

    result = await dispatch_batch(db_session, batch.id, enqueue=enqueued.append)

    assert result.processed_count == 2
    assert {trigger.image_id for trigger in enqueued} == {images[2].id, images[3].id}

    failed_image = await db_session.get(Image, images[2].id)
    assert failed_image.status == "pending"
    assert failed_image.error_message is None


@pytest.mark.asyncio
async def test_dispatch_continues_past_enqueue_errors(db_session):
    batch, images = await _create_batch(db_session, ["pending", "pending", "pending"])
    broken_id = images[1].id
    enqueued = []

    def enqueue(trigger):
        if trigger.image_id == broken_id:
            raise ConnectionError("broker unavailable")
        enqueued.append(trigger)

    result = await dispatch_batch(db_session, batch.id, enqueue=enqueue)

    assert result.success is False
    assert result.processed_count == 2
    assert result.errors == [f"Image {broken_id}: broker unavailable"]
    assert len(enqueued) == 2


@pytest.mark.asyncio
async def test_dispatch_unknown_batch(db_session):
    result = await dispatch_batch(db_session, "missing-batch", enqueue=lambda trigger: None)

    assert result.success is False
    assert result.processed_count == 0
    assert result.errors == ["Batch missing-batch not found"]


@pytest.mark.asyncio
async def test_dispatch_hides_other_owners_batches(db_session):
    batch, _ = await _create_batch(db_session, ["pending"], owner_id="owner-a")

    result = await dispatch_batch(db_session, batch.id, enqueue=lambda trigger: None, owner_id="owner-b")
    assert result.success is False


@pytest.mark.asyncio
async def test_empty_batch_dispatch_succeeds_with_nothing_to_do(db_session):
    batch, _ = await _create_batch(db_session, [])

    result = await dispatch_batch(db_session, batch.id, enqueue=lambda trigger: None)
    assert result.success is True
    assert result.processed_count == 0


@pytest.mark.asyncio
async def test_resubmit_only_from_failed(db_session):
    _, images = await _create_batch(db_session, ["failed", "completed"])
    enqueued = []

    trigger = await resubmit_image(db_session, images[0].id, enqueue=enqueued.append, owner_id="owner-1")

    assert enqueued == [trigger]
    assert (await db_session.get(Image, images[0].id)).status == "pending"

    with pytest.raises(InvalidStatusTransition):
        await resubmit_image(db_session, images[0].id, enqueue=enqueued.append)
    with pytest.raises(InvalidStatusTransition):
        await resubmit_image(db_session, images[1].id, enqueue=enqueued.append)
    assert len(enqueued) == 1


@pytest.mark.asyncio
async def test_failed_image_stays_failed_when_enqueue_breaks(db_session):
    batch, images = await _create_batch(db_session, ["failed"])
    images[0].error_message = "provider down"
    images[0].error_step = "compose-and-persist"
    await db_session.commit()

    def enqueue(trigger):
        raise ConnectionError("broker unavailable")

    result = await dispatch_batch(db_session, batch.id, enqueue=enqueue)

    assert result.success is False
    assert result.processed_count == 0
    image = await db_session.get(Image, images[0].id)
    assert image.status == "failed"
    assert image.error_message == "provider down"
    assert image.error_step == "compose-and-persist"


@pytest.mark.asyncio
async def test_resubmit_reports_enqueue_failure(db_session):
    _, images = await _create_batch(db_session, ["failed"])
    images[0].error_message = "provider down"
    await db_session.commit()

    def enqueue(trigger):
        raise ConnectionError("broker unavailable")

    with pytest.raises(DispatchError) as exc_info:
        await resubmit_image(db_session, images[0].id, enqueue=enqueue)

    assert exc_info.value.code == 503
    assert "broker unavailable" in exc_info.value.message
    image = await db_session.get(Image, images[0].id)
    assert image.status == "failed"
    assert image.error_message == "provider down"

    enqueued = []
    await resubmit_image(db_session, images[0].id, enqueue=enqueued.append)
    assert len(enqueued) == 1


@pytest.mark.asyncio
async def test_resubmit_missing_image(db_session):
    with pytest.raises(NotFoundError):
        await resubmit_image(db_session, "nope", enqueue=lambda trigger: None)


@pytest.mark.asyncio
async def test_aggregate_status_query(db_session):
    batch, _ = await _create_batch(db_session, ["completed", "failed", "processing", "completed"])

    status = await queries.get_aggregate_status(db_session, batch.id)

    assert status.total == 4
    assert status.completed == 2
    assert status.progress == 50
    assert status.is_complete is False


@pytest.mark.asyncio
async def test_dispatched_batch_runs_to_completion(db_session, seed_batch, storage, fake_color, small_frame):
    batch, _ = await seed_batch(count=3)
    enqueued = []

    result = await dispatch_batch(db_session, batch.id, enqueue=enqueued.append)
    assert result.processed_count == 3

    orchestrator = PipelineOrchestrator(
        records=ImageRecordStore(),
        checkpoints=CheckpointStore(),
        storage=storage,
        color_client=fake_color,
        upscale_client=UpscaleClient(api_key=""),
        frame_config=small_frame,
    )
    for trigger in enqueued:
        await orchestrator.run(trigger)

    status = await queries.get_aggregate_status(db_session, batch.id)
    assert status.completed == 3
    assert status.total == 3
    assert status.is_complete is True
    assert status.progress == 100
