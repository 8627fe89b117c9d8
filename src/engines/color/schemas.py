"""
Color adjustment value objects.

The analysis provider is untrusted: its payload is validated loosely and
every numeric field is clamped to [-100, 100] before anything uses it.
"""

import math
from typing import Optional

from pydantic import BaseModel, ConfigDict, Field, field_validator

ADJUSTMENT_MIN = -100.0
ADJUSTMENT_MAX = 100.0

ADJUSTMENT_FIELDS = (
    "brightness",
    "contrast",
    "saturation",
    "vibrance",
    "warmth",
    "highlights",
    "shadows",
)


def clamp(value: float, low: float, high: float) -> float:
    return min(max(value, low), high)


class ColorAdjustment(BaseModel):
    """Print-preparation adjustments, each on the bounded -100..100 scale."""
    model_config = ConfigDict(frozen=True)

    brightness: float = 5
    contrast: float = 10
    saturation: float = 5
    vibrance: float = 10
    warmth: float = 0
    highlights: float = -5
    shadows: float = 5
    recommendation: str = "Default print adjustments applied"

    @field_validator(*ADJUSTMENT_FIELDS, mode="before")
    @classmethod
    def clamp_to_range(cls, value):
        value = float(value)
        if math.isnan(value):
            raise ValueError("adjustment must be a number")
        return clamp(value, ADJUSTMENT_MIN, ADJUSTMENT_MAX)

    @classmethod
    def neutral(cls) -> "ColorAdjustment":
        return NEUTRAL_ADJUSTMENT

    @classmethod
    def from_payload(cls, payload: "ColorAnalysisPayload") -> "ColorAdjustment":
        """Fill omitted fields from the neutral default, then clamp."""
        values = payload.model_dump(exclude_none=True)
        if not values.get("recommendation"):
            values["recommendation"] = "Adjustments optimized for print"
        return cls(**values)


NEUTRAL_ADJUSTMENT = ColorAdjustment()


class ColorAnalysisPayload(BaseModel):
    """Shape expected back from the vision model."""
    model_config = ConfigDict(extra="ignore", allow_inf_nan=False)

    brightness: Optional[float] = None
    contrast: Optional[float] = None
    saturation: Optional[float] = None
    vibrance: Optional[float] = None
    warmth: Optional[float] = None
    highlights: Optional[float] = None
    shadows: Optional[float] = None
    recommendation: Optional[str] = Field(default=None, max_length=2000)
