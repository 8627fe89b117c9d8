import asyncio

import httpx
import pytest

from src.client.poller import BatchProcessingSession, BatchStatusPoller, FrameFixClient
from src.modules.framing.models import AggregateStatus
from src.pipeline.dispatcher import DispatchResult


def _scripted(*statuses):
    """Fetcher returning the given statuses in order, repeating the last one."""
    remaining = list(statuses)
    calls = []

    async def fetch(batch_id):
        calls.append(batch_id)
        item = remaining.pop(0) if len(remaining) > 1 else remaining[0]
        if isinstance(item, Exception):
            raise item
        return item

    fetch.calls = calls
    return fetch


RUNNING = AggregateStatus(total=2, pending=1, processing=1)
DONE = AggregateStatus(total=2, completed=1, failed=1)


@pytest.mark.asyncio
async def test_polls_until_complete():
    completed = []
    updates = []
    poller = BatchStatusPoller(
        "b1",
        _scripted(RUNNING, RUNNING, DONE),
        polling_interval=0.01,
        on_complete=completed.append,
        on_update=updates.append,
    )

    poller.start()
    await poller.wait()

    assert completed == [DONE]
    assert len(updates) == 3
    assert poller.fetch_count == 3
    assert poller.is_polling is False
    assert poller.timed_out is False


@pytest.mark.asyncio
async def test_times_out_without_completing():
    completed = []
    timeouts = []

    async def on_timeout():
        timeouts.append(True)

    poller = BatchStatusPoller(
        "b1",
        _scripted(RUNNING),
        polling_interval=0.01,
        max_polling_time=0.05,
        on_complete=completed.append,
        on_timeout=on_timeout,
    )

    poller.start()
    await poller.wait()

    assert timeouts == [True]
    assert completed == []
    assert poller.timed_out is True
    assert poller.status == RUNNING


@pytest.mark.asyncio
async def test_fetch_errors_are_kept_and_polling_continues():
    completed = []
    poller = BatchStatusPoller(
        "b1",
        _scripted(RuntimeError("network down"), DONE),
        polling_interval=0.01,
        on_complete=completed.append,
    )

    assert await poller.refetch() is False
    assert poller.error == "network down"

    poller.start()
    await poller.wait()
    assert completed == [DONE]
    assert poller.error is None


@pytest.mark.asyncio
async def test_stop_invokes_no_callbacks():
    calls = []
    poller = BatchStatusPoller(
        "b1",
        _scripted(RUNNING),
        polling_interval=0.01,
        on_complete=lambda status: calls.append("complete"),
        on_timeout=lambda: calls.append("timeout"),
    )

    poller.start()
    await asyncio.sleep(0.03)
    poller.stop()
    await poller.wait()

    assert calls == []
    assert poller.is_polling is False


@pytest.mark.asyncio
async def test_start_is_idempotent():
    poller = BatchStatusPoller("b1", _scripted(DONE), polling_interval=0.01)
    first = poller.start()
    assert poller.start() is first
    await poller.wait()


@pytest.mark.asyncio
async def test_session_does_not_poll_after_failed_dispatch():
    fetch = _scripted(RUNNING)

    async def dispatch(batch_id):
        return DispatchResult(success=False, errors=["Image i1: broker unavailable", "Image i2: broker unavailable"])

    session = BatchProcessingSession("b1", dispatch, fetch, polling_interval=0.01)
    result = await session.start_processing()

    assert result.success is False
    assert session.error == "Image i1: broker unavailable, Image i2: broker unavailable"
    assert session.is_processing is False
    assert fetch.calls == []


@pytest.mark.asyncio
async def test_session_follows_batch_to_completion():
    completed = []

    async def dispatch(batch_id):
        return {"success": True, "processed_count": 2, "errors": []}

    session = BatchProcessingSession(
        "b1", dispatch, _scripted(RUNNING, DONE), polling_interval=0.01, on_complete=completed.append
    )

    result = await session.start_processing()
    await session.wait()

    assert result.processed_count == 2
    assert session.has_started is True
    assert completed == [DONE]
    assert session.status.is_complete is True
    assert session.error is None


@pytest.mark.asyncio
async def test_http_client_reads_status():
    def handler(request: httpx.Request) -> httpx.Response:
        assert request.headers["X-Owner-Id"] == "owner-1"
        assert request.url.path == "/api/v1/batches/b1/status"
        return httpx.Response(200, json=DONE.model_dump())

    async with FrameFixClient("http://api.test", owner_id="owner-1", transport=httpx.MockTransport(handler)) as api:
        status = await api.get_status("b1")

    assert status == DONE
    assert status.is_complete is True
