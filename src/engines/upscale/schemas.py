"""
Upscale provider response variants.

The provider may answer a submit with the image itself, with a URL to the
result, or with a job to poll. Responses are resolved once into one of the
tagged variants below; nothing past the client sees the raw shapes.
"""

import base64
import binascii
from typing import Optional, Union, Literal, Dict, Any

from pydantic import BaseModel

from src.core.exceptions import MalformedProviderResponse

URL_FIELDS = ("output_url", "result_url", "url")
INLINE_FIELDS = ("image", "data")
JOB_ID_FIELDS = ("job_id", "id", "request_id")

COMPLETED_STATUSES = frozenset({"completed", "success", "done"})
FAILED_STATUSES = frozenset({"failed", "error"})


class Dimensions(BaseModel):
    original_width: int = 0
    original_height: int = 0
    new_width: int = 0
    new_height: int = 0

    @classmethod
    def from_body(cls, body: Dict[str, Any]) -> "Dimensions":
        return cls(
            original_width=_first_int(body, "original_width", "input_width"),
            original_height=_first_int(body, "original_height", "input_height"),
            new_width=_first_int(body, "output_width", "width"),
            new_height=_first_int(body, "output_height", "height"),
        )


class ImmediateBinary(BaseModel):
    kind: Literal["binary"] = "binary"
    image_bytes: bytes
    dimensions: Dimensions = Dimensions()


class ImmediateURL(BaseModel):
    kind: Literal["url"] = "url"
    url: str
    dimensions: Dimensions = Dimensions()


class AsyncJob(BaseModel):
    kind: Literal["job"] = "job"
    job_id: str


ProviderResponse = Union[ImmediateBinary, ImmediateURL, AsyncJob]


class UpscaleResult(BaseModel):
    """Enlarged image as bytes or as a URL to fetch."""
    image_bytes: Optional[bytes] = None
    url: Optional[str] = None
    dimensions: Dimensions = Dimensions()
    scale_factor: int = 2
    mode: str = "binary"

    @classmethod
    def from_variant(cls, variant: Union[ImmediateBinary, ImmediateURL], scale_factor: int, mode: str) -> "UpscaleResult":
        if isinstance(variant, ImmediateBinary):
            return cls(
                image_bytes=variant.image_bytes,
                dimensions=variant.dimensions,
                scale_factor=scale_factor,
                mode=mode
            )
        return cls(url=variant.url, dimensions=variant.dimensions, scale_factor=scale_factor, mode=mode)


def _first(body: Dict[str, Any], *fields: str):
    for field in fields:
        value = body.get(field)
        if value:
            return value
    return None


def _first_int(body: Dict[str, Any], *fields: str) -> int:
    value = _first(body, *fields)
    try:
        return int(value) if value else 0
    except (TypeError, ValueError):
        return 0


def _decode_inline(value: str) -> bytes:
    if value.startswith("data:") and "," in value:
        value = value.split(",", 1)[1]
    try:
        return base64.b64decode(value, validate=True)
    except (binascii.Error, ValueError):
        raise MalformedProviderResponse("Inline image is not valid base64", service="upscale")


def parse_result_body(body: Dict[str, Any]) -> Optional[Union[ImmediateBinary, ImmediateURL]]:
    """URL or inline image carried by a JSON body, if any."""
    dimensions = Dimensions.from_body(body)

    url = _first(body, *URL_FIELDS)
    if isinstance(url, str):
        return ImmediateURL(url=url, dimensions=dimensions)

    inline = _first(body, *INLINE_FIELDS)
    if isinstance(inline, str):
        return ImmediateBinary(image_bytes=_decode_inline(inline), dimensions=dimensions)

    return None


def parse_submit_response(content_type: str, content: bytes, body: Optional[Any] = None) -> ProviderResponse:
    """
    Resolve a submit response into a variant.

    Raises:
        MalformedProviderResponse: If the response matches no known shape
    """
    if (content_type or "").lower().startswith("image/"):
        if not content:
            raise MalformedProviderResponse("Empty image body", service="upscale")
        return ImmediateBinary(image_bytes=content)

    if not isinstance(body, dict):
        raise MalformedProviderResponse("Upscale response is not a JSON object", service="upscale")

    result = parse_result_body(body)
    if result is not None:
        return result

    job_id = _first(body, *JOB_ID_FIELDS)
    if job_id is not None:
        return AsyncJob(job_id=str(job_id))

    raise MalformedProviderResponse(
        f"Unrecognized upscale response fields: {sorted(body.keys())}",
        service="upscale"
    )
