"""
Client-side batch status polling.

BatchStatusPoller periodically reads the aggregate status of a batch until
every image is terminal or a time budget runs out. Stopping it only stops
observation; server-side processing is never affected.

Usage:
    async with FrameFixClient("http://localhost:8000", owner_id="u1") as api:
        poller = BatchStatusPoller(batch_id, api.get_status, on_complete=done)
        poller.start()
        await poller.wait()
"""

import asyncio
import inspect
from typing import Any, Awaitable, Callable, Dict, Optional, Union

import httpx

from src.core.logging import get_logger
from src.modules.framing.models import AggregateStatus
from src.pipeline.dispatcher import DispatchResult

logger = get_logger(__name__)

StatusFetcher = Callable[[str], Awaitable[Union[AggregateStatus, Dict[str, Any]]]]
Callback = Optional[Callable[..., Any]]


async def _invoke(callback: Callback, *args):
    if callback is None:
        return
    result = callback(*args)
    if inspect.isawaitable(result):
        await result


class BatchStatusPoller:
    """
    Polls fetch_status(batch_id) every polling_interval seconds.

    Stops and calls on_complete once the batch is complete, or calls
    on_timeout once max_polling_time has elapsed. A failed fetch is kept
    in .error and polling continues.
    """

    def __init__(
        self,
        batch_id: str,
        fetch_status: StatusFetcher,
        polling_interval: float = 3.0,
        max_polling_time: float = 600.0,
        on_complete: Callback = None,
        on_timeout: Callback = None,
        on_update: Callback = None
    ):
        self.batch_id = batch_id
        self.fetch_status = fetch_status
        self.polling_interval = polling_interval
        self.max_polling_time = max_polling_time
        self.on_complete = on_complete
        self.on_timeout = on_timeout
        self.on_update = on_update

        self.status = AggregateStatus()
        self.error: Optional[str] = None
        self.is_polling = False
        self.timed_out = False
        self.fetch_count = 0
        self._task: Optional[asyncio.Task] = None

    async def refetch(self) -> bool:
        """Fetch once now. Returns whether the batch is complete."""
        self.fetch_count += 1
        try:
            result = await self.fetch_status(self.batch_id)
            status = result if isinstance(result, AggregateStatus) else AggregateStatus.model_validate(result)
        except Exception as e:
            self.error = str(e) or type(e).__name__
            logger.warning("status_fetch_failed", batch_id=self.batch_id, error=self.error)
            return False

        self.status = status
        self.error = None
        await _invoke(self.on_update, status)
        return status.is_complete

    def start(self) -> asyncio.Task:
        """Begin polling with an immediate fetch. Idempotent while running."""
        if self._task is not None and not self._task.done():
            return self._task

        self.is_polling = True
        self.timed_out = False
        self._task = asyncio.get_running_loop().create_task(self._run())
        return self._task

    def stop(self):
        """Stop polling without invoking any callback."""
        self.is_polling = False
        if self._task is not None and not self._task.done():
            self._task.cancel()

    async def wait(self):
        """Wait until polling ends by completion, timeout or stop()."""
        if self._task is None:
            return
        try:
            await self._task
        except asyncio.CancelledError:
            if not self._task.cancelled():
                raise

    async def _run(self):
        loop = asyncio.get_running_loop()
        started = loop.time()

        try:
            while self.is_polling:
                if loop.time() - started > self.max_polling_time:
                    self.is_polling = False
                    self.timed_out = True
                    logger.info("status_polling_timeout", batch_id=self.batch_id, max_polling_time=self.max_polling_time)
                    await _invoke(self.on_timeout)
                    return

                if await self.refetch():
                    self.is_polling = False
                    logger.info("status_polling_completed", batch_id=self.batch_id, progress=self.status.progress)
                    await _invoke(self.on_complete, self.status)
                    return

                await asyncio.sleep(self.polling_interval)
        finally:
            self.is_polling = False


class FrameFixClient:
    """Async HTTP client for the framing API."""

    def __init__(
        self,
        base_url: str,
        owner_id: str,
        timeout: float = 30.0,
        transport: Optional[httpx.AsyncBaseTransport] = None
    ):
        self._client = httpx.AsyncClient(
            base_url=base_url.rstrip("/"),
            headers={"X-Owner-Id": owner_id},
            timeout=timeout,
            transport=transport,
        )

    async def __aenter__(self) -> "FrameFixClient":
        return self

    async def __aexit__(self, exc_type, exc, tb):
        await self.aclose()

    async def aclose(self):
        await self._client.aclose()

    async def get_status(self, batch_id: str) -> AggregateStatus:
        response = await self._client.get(f"/api/v1/batches/{batch_id}/status")
        response.raise_for_status()
        return AggregateStatus.model_validate(response.json())

    async def dispatch(self, batch_id: str) -> DispatchResult:
        response = await self._client.post(f"/api/v1/batches/{batch_id}/dispatch")
        response.raise_for_status()
        return DispatchResult.model_validate(response.json())

    async def resubmit(self, image_id: str) -> Dict[str, Any]:
        response = await self._client.post(f"/api/v1/images/{image_id}/resubmit")
        response.raise_for_status()
        return response.json()


class BatchProcessingSession:
    """
    Dispatch a batch, then follow it with a poller.

    A dispatch that reports errors sets .error and does not start polling.
    """

    def __init__(
        self,
        batch_id: str,
        dispatch: Callable[[str], Awaitable[Union[DispatchResult, Dict[str, Any]]]],
        fetch_status: StatusFetcher,
        polling_interval: float = 2.0,
        max_polling_time: float = 600.0,
        on_complete: Callback = None,
        on_timeout: Callback = None
    ):
        self.batch_id = batch_id
        self._dispatch = dispatch
        self.poller = BatchStatusPoller(
            batch_id,
            fetch_status,
            polling_interval=polling_interval,
            max_polling_time=max_polling_time,
            on_complete=on_complete,
            on_timeout=on_timeout,
        )
        self.is_starting = False
        self.has_started = False
        self.start_error: Optional[str] = None

    @classmethod
    def from_client(cls, client: FrameFixClient, batch_id: str, **kwargs) -> "BatchProcessingSession":
        return cls(batch_id, client.dispatch, client.get_status, **kwargs)

    @property
    def status(self) -> AggregateStatus:
        return self.poller.status

    @property
    def is_processing(self) -> bool:
        return self.poller.is_polling

    @property
    def error(self) -> Optional[str]:
        return self.start_error or self.poller.error

    async def start_processing(self) -> Optional[DispatchResult]:
        self.is_starting = True
        self.start_error = None

        try:
            raw = await self._dispatch(self.batch_id)
            result = raw if isinstance(raw, DispatchResult) else DispatchResult.model_validate(raw)

            if not result.success:
                self.start_error = ", ".join(result.errors) or "Could not start processing"
                logger.warning("batch_processing_not_started", batch_id=self.batch_id, error=self.start_error)
                return result

            logger.info("batch_processing_started", batch_id=self.batch_id, processed_count=result.processed_count)
            self.has_started = True
            self.poller.start()
            await self.poller.refetch()
            return result

        except Exception as e:
            self.start_error = str(e) or type(e).__name__
            logger.warning("batch_processing_not_started", batch_id=self.batch_id, error=self.start_error)
            return None

        finally:
            self.is_starting = False

    async def wait(self):
        await self.poller.wait()

    def stop(self):
        self.poller.stop()
