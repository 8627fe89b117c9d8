"""
Upscale Client (Topaz-style enhance API)

Submits an image for enlargement and normalizes whatever comes back:
- immediate binary payload
- immediate JSON with a result URL
- asynchronous job, polled at a fixed interval up to a fixed attempt count
"""

import asyncio
import io
from typing import Optional, Callable, Awaitable, Union

import httpx
from PIL import Image as PILImage, UnidentifiedImageError

from src.core.config import settings
from src.core.exceptions import (
    CircuitBreaker,
    CircuitBreakerOpenError,
    ExternalAPIError,
    MalformedProviderResponse,
    UpscaleJobFailedError,
    UpscaleTimeoutError,
    get_circuit_breaker,
)
from src.core.logging import get_logger
from src.core.metrics import record_upscale_call
from src.engines.upscale.schemas import (
    AsyncJob,
    ImmediateBinary,
    ImmediateURL,
    UpscaleResult,
    COMPLETED_STATUSES,
    FAILED_STATUSES,
    parse_result_body,
    parse_submit_response,
)

logger = get_logger(__name__)


class UpscaleClient:
    """
    Single contract over the provider's response modes.

    Callers get an UpscaleResult or one of:
        CircuitBreakerOpenError, ExternalAPIError (transient),
        MalformedProviderResponse / UpscaleJobFailedError (permanent),
        UpscaleTimeoutError
    """

    def __init__(
        self,
        api_key: Optional[str] = None,
        submit_url: Optional[str] = None,
        status_url: Optional[str] = None,
        model: Optional[str] = None,
        poll_interval: Optional[float] = None,
        max_poll_attempts: Optional[int] = None,
        timeout: Optional[float] = None,
        circuit: Optional[CircuitBreaker] = None,
        transport: Optional[httpx.AsyncBaseTransport] = None,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep
    ):
        self.api_key = api_key if api_key is not None else settings.UPSCALE_API_KEY
        self.submit_url = submit_url or settings.UPSCALE_API_URL
        self.status_url = status_url or settings.UPSCALE_STATUS_URL
        self.model = model or settings.UPSCALE_MODEL
        self.poll_interval = settings.UPSCALE_POLL_INTERVAL_SECONDS if poll_interval is None else poll_interval
        self.max_poll_attempts = max_poll_attempts or settings.UPSCALE_MAX_POLL_ATTEMPTS
        self.timeout = timeout or settings.UPSCALE_TIMEOUT_SECONDS
        self.circuit = circuit or get_circuit_breaker("upscale")
        self._transport = transport
        self._sleep = sleep

    @property
    def configured(self) -> bool:
        return bool(self.api_key)

    def _headers(self) -> dict:
        return {"Accept": "application/json", "X-API-Key": self.api_key or ""}

    def _client(self) -> httpx.AsyncClient:
        return httpx.AsyncClient(timeout=self.timeout, transport=self._transport)

    @staticmethod
    def _target_size(image_bytes: bytes, scale_factor: int) -> dict:
        try:
            with PILImage.open(io.BytesIO(image_bytes)) as img:
                width, height = img.size
        except (UnidentifiedImageError, OSError):
            return {}
        return {
            "output_width": str(width * scale_factor),
            "output_height": str(height * scale_factor),
        }

    async def upscale(self, image_bytes: bytes, scale_factor: Optional[int] = None) -> UpscaleResult:
        scale_factor = scale_factor or settings.UPSCALE_FACTOR

        if not self.circuit.can_execute():
            raise CircuitBreakerOpenError("upscale")

        logger.info("upscale_starting", input_size=len(image_bytes), scale_factor=scale_factor)

        try:
            variant = await self._submit(image_bytes, scale_factor)

            if isinstance(variant, AsyncJob):
                logger.info("upscale_job_created", provider_job_id=variant.job_id)
                variant = await self._poll(variant.job_id)
                mode = "async"
            else:
                mode = variant.kind

        except (MalformedProviderResponse, UpscaleJobFailedError, UpscaleTimeoutError, ExternalAPIError) as e:
            self.circuit.record_failure(e)
            raise

        self.circuit.record_success()
        result = UpscaleResult.from_variant(variant, scale_factor=scale_factor, mode=mode)
        logger.info(
            "upscale_completed",
            mode=mode,
            new_width=result.dimensions.new_width,
            new_height=result.dimensions.new_height
        )
        return result

    async def _submit(self, image_bytes: bytes, scale_factor: int):
        data = {"model": self.model}
        data.update(self._target_size(image_bytes, scale_factor))

        try:
            async with self._client() as client:
                response = await client.post(
                    self.submit_url,
                    headers=self._headers(),
                    files={"image": ("image.jpg", image_bytes, "image/jpeg")},
                    data=data,
                )
        except httpx.HTTPError as e:
            record_upscale_call("error", mode="submit")
            raise ExternalAPIError(f"Upscale submit failed: {e}", service="upscale")

        if not response.is_success:
            record_upscale_call("error", mode="submit")
            raise ExternalAPIError(
                f"Upscale API error: {response.status_code} - {response.text[:500]}",
                service="upscale",
                http_status=response.status_code
            )

        record_upscale_call("success", mode="submit")

        content_type = response.headers.get("content-type", "")
        body = None
        if not content_type.lower().startswith("image/"):
            try:
                body = response.json()
            except ValueError:
                raise MalformedProviderResponse(
                    "Upscale response is neither an image nor JSON",
                    service="upscale",
                    http_status=response.status_code
                )

        return parse_submit_response(content_type, response.content, body)

    async def _poll(self, job_id: str) -> Union[ImmediateBinary, ImmediateURL]:
        status_url = self.status_url.format(job_id=job_id)

        async with self._client() as client:
            for attempt in range(1, self.max_poll_attempts + 1):
                await self._sleep(self.poll_interval)

                try:
                    response = await client.get(status_url, headers=self._headers())
                except httpx.HTTPError as e:
                    record_upscale_call("error", mode="poll")
                    logger.warning("upscale_poll_error", attempt=attempt, error=str(e))
                    continue

                if not response.is_success:
                    record_upscale_call("error", mode="poll")
                    logger.warning("upscale_poll_error", attempt=attempt, http_status=response.status_code)
                    continue

                try:
                    body = response.json()
                except ValueError:
                    logger.warning("upscale_poll_invalid_json", attempt=attempt)
                    continue
                if not isinstance(body, dict):
                    continue

                status = str(body.get("status") or "").lower()
                logger.debug("upscale_poll", attempt=attempt, job_status=status)

                if status in COMPLETED_STATUSES:
                    record_upscale_call("success", mode="poll")
                    result = parse_result_body(body)
                    if result is None:
                        raise MalformedProviderResponse(
                            "Upscale job completed without a result",
                            service="upscale"
                        )
                    return result

                if status in FAILED_STATUSES:
                    record_upscale_call("failed", mode="poll")
                    reason = body.get("error") or body.get("message") or "unknown error"
                    raise UpscaleJobFailedError(f"Upscale job failed: {reason}", service="upscale")

        record_upscale_call("timeout", mode="poll")
        raise UpscaleTimeoutError(
            f"Upscale job {job_id} did not finish after "
            f"{self.max_poll_attempts * self.poll_interval:.0f} seconds"
        )

    async def fetch_bytes(self, result: UpscaleResult) -> bytes:
        """Bytes of the enlarged image, downloading it when only a URL came back."""
        if result.image_bytes is not None:
            return result.image_bytes

        try:
            async with self._client() as client:
                response = await client.get(result.url)
        except httpx.HTTPError as e:
            raise ExternalAPIError(f"Upscaled image download failed: {e}", service="upscale")

        if not response.is_success:
            raise ExternalAPIError(
                f"Upscaled image download failed: {response.status_code}",
                service="upscale",
                http_status=response.status_code
            )
        return response.content
